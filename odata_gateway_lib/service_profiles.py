"""
Per-service query profiles.

A profile captures what one backend service tolerates: which validator
restrictions apply, whether it is a CDS analytical view that needs mandatory
key filters and an explicit $select, and free-text notes surfaced to callers.
Built-in profiles can be overridden or extended from a JSON file.
"""

import json
import re
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import ALL_RESTRICTIONS, DEFAULT_SERVICES
from .errors import ConfigurationError


PROFILE_KINDS = ("standard", "cds_view")


@dataclass(frozen=True)
class ServiceProfile:
    """Query policy for one backend service."""
    name: str
    service_path: str = ""
    pattern: Optional[str] = None  # Wildcard over the service path
    priority: int = 0
    kind: str = "standard"
    mandatory_filter_keys: List[str] = field(default_factory=list)
    select_required: bool = False
    default_select_fields: List[str] = field(default_factory=list)
    restrictions: List[str] = field(default_factory=lambda: list(ALL_RESTRICTIONS))
    notes: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.kind not in PROFILE_KINDS:
            raise ConfigurationError(f"Profile '{self.name}': unknown kind '{self.kind}' "
                                     f"(expected one of {', '.join(PROFILE_KINDS)})")
        unknown = [r for r in self.restrictions if r not in ALL_RESTRICTIONS]
        if unknown:
            raise ConfigurationError(f"Profile '{self.name}': unknown restriction(s) {', '.join(unknown)}")

    @property
    def is_cds_view(self) -> bool:
        return self.kind == "cds_view"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["ServiceProfile"] = None) -> "ServiceProfile":
        """Create a profile from a JSON object; keys absent from data keep base's values."""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if base is not None:
            return replace(base, **known)
        if not known.get('name'):
            raise ConfigurationError("Profile entry without a 'name'")
        return cls(**known)

    def describe(self) -> str:
        """One block of text for the gateway info tool."""
        lines = [f"{self.name} ({self.kind}): {self.service_path or '-'}"]
        if self.mandatory_filter_keys:
            lines.append(f"  Mandatory filter keys: {', '.join(self.mandatory_filter_keys)}")
        if self.select_required:
            lines.append("  $select required (derived automatically when omitted)")
        if self.default_select_fields:
            lines.append(f"  Default fields: {', '.join(self.default_select_fields)}")
        for note in self.notes:
            lines.append(f"  Note: {note}")
        return "\n".join(lines)


BUILTIN_PROFILES = (
    ServiceProfile(
        name="businesspartner",
        service_path=DEFAULT_SERVICES["businesspartner"],
        pattern="*API_BUSINESS_PARTNER*",
        kind="standard",
        notes=[
            "Use substringof('text',Field) for text search; contains() is OData V4 only.",
            "Expanded navigations come back under 'results' of each navigation property.",
        ],
    ),
    ServiceProfile(
        name="glaccount",
        service_path=DEFAULT_SERVICES["glaccount"],
        pattern="*C_GLACCOUNTBALANCE_CDS*",
        kind="cds_view",
        mandatory_filter_keys=["CompanyCode", "FiscalYear", "GLAccount"],
        select_required=True,
        default_select_fields=[
            "GLAccount", "CompanyCode", "FiscalYear", "FiscalPeriod",
            "AmountInCompanyCodeCurrency", "CompanyCodeCurrency",
        ],
        notes=[
            "Analytical CDS view: unfiltered or unselected queries abort on the backend.",
        ],
    ),
)


def matches_pattern(pattern: str, value: str) -> bool:
    """Case-insensitive wildcard match (* and ?), anchored unless the pattern starts/ends with *."""
    regex_pattern = re.escape(pattern)
    regex_pattern = regex_pattern.replace(r'\*', '.*').replace(r'\?', '.')
    if not pattern.startswith('*'):
        regex_pattern = '^' + regex_pattern
    if not pattern.endswith('*'):
        regex_pattern = regex_pattern + '$'
    return bool(re.match(regex_pattern, value, re.IGNORECASE))


class ProfileRegistry:
    """Built-in profiles plus overrides loaded from profiles.json."""

    def __init__(self, verbose: bool = False, include_builtins: bool = True):
        self.verbose = verbose
        self.profiles: Dict[str, ServiceProfile] = {}
        self.profiles_file: Optional[str] = None
        if include_builtins:
            for profile in BUILTIN_PROFILES:
                self.register(profile)

    def _log_verbose(self, message: str):
        if self.verbose:
            print(f"[ProfileRegistry] {message}", file=sys.stderr)

    def register(self, profile: ServiceProfile):
        self.profiles[profile.name] = profile

    def load_from_file(self, profiles_file: Optional[str] = None) -> bool:
        """Load profiles from a JSON file ({"profiles": [...]}).

        Without an explicit path, profiles.json next to the main script and
        in the current directory are tried. Entries naming an existing profile
        override only the keys they set. An explicit path that cannot be read
        raises ConfigurationError.
        """
        if profiles_file:
            paths_to_try = [Path(profiles_file)]
        else:
            script_dir = Path(sys.argv[0]).parent if sys.argv and sys.argv[0] else Path.cwd()
            paths_to_try = [script_dir / "profiles.json", Path.cwd() / "profiles.json"]

        for path in paths_to_try:
            if not path.exists():
                continue
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                if profiles_file:
                    raise ConfigurationError(f"Failed to load profiles from {path}: {e}") from e
                self._log_verbose(f"Failed to load profiles from {path}: {e}")
                continue

            entries = data.get('profiles', []) if isinstance(data, dict) else []
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                base = self.profiles.get(entry.get('name'))
                self.register(ServiceProfile.from_dict(entry, base=base))
            self.profiles_file = str(path)
            self._log_verbose(f"Loaded {len(entries)} profile(s) from {path}")
            return True

        if profiles_file:
            raise ConfigurationError(f"Profiles file not found: {profiles_file}")
        self._log_verbose("No profiles file found in default locations")
        return False

    def get(self, name: str) -> Optional[ServiceProfile]:
        return self.profiles.get(name)

    def find_for_path(self, service_path: str) -> Optional[ServiceProfile]:
        """Highest-priority profile whose pattern matches the service path."""
        matching = [p for p in self.profiles.values() if p.pattern and matches_pattern(p.pattern, service_path)]
        if not matching:
            return None
        return max(matching, key=lambda p: p.priority)

    def resolve(self, service_name: str, service_path: str) -> ServiceProfile:
        """
        Profile for a configured service: by name, then by path pattern,
        else a plain standard profile. The result always carries the
        configured name and path.
        """
        profile = self.get(service_name) or self.find_for_path(service_path)
        if profile is None:
            self._log_verbose(f"No profile for {service_name}, using standard defaults")
            return ServiceProfile(name=service_name, service_path=service_path)
        return replace(profile, name=service_name, service_path=service_path)

    def names(self) -> List[str]:
        return sorted(self.profiles)
