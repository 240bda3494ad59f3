"""
Pre-flight query policy: profile rules, schema checks and the validator, in one pass.
"""

import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .constants import RESTRICTION_SELECT_WITH_EXPAND, SCHEMA_LOOKUP_ERROR_MARKERS
from .models import ODataSchema, QueryOptions, ValidationWarning
from .query_builder import extract_equality_fields, guaranteed_equality_fields, mask_string_literals, split_csv
from .service_profiles import ServiceProfile
from .validator import suggest_alternatives, validate_query


_LOGICAL_OR_NOT = re.compile(r'\b(or|not)\b', re.IGNORECASE)


def is_schema_lookup_error(message: Optional[str]) -> bool:
    """True when backend error text points at a wrong entity set or property name."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in SCHEMA_LOOKUP_ERROR_MARKERS)


@dataclass
class PreparedQuery:
    """Outcome of QueryPolicy.prepare: the (possibly amended) query or the reason it must not be sent."""
    options: QueryOptions
    rejection: Optional[str] = None
    warnings: List[ValidationWarning] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)

    @property
    def rejected(self) -> bool:
        return self.rejection is not None


class QueryPolicy:
    """Applies a service profile to a query before it reaches the backend."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def _log_verbose(self, message: str):
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Policy VERBOSE] {message}", file=sys.stderr)

    def prepare(self, options: QueryOptions, profile: ServiceProfile,
                schema: Optional[ODataSchema] = None) -> PreparedQuery:
        """
        Decide whether a query may be sent.

        Rejections happen without any network call: unknown entity set
        (when the schema is known), missing mandatory key filters, an
        underivable $select or an $expand on select-required profiles, or a validator
        error. Non-blocking findings are returned as warnings.
        """
        if schema is not None and schema.entity_sets and schema.find_entity_set(options.entity_set) is None:
            available = ", ".join(es.name for es in schema.entity_sets)
            return PreparedQuery(
                options=options,
                rejection=f"Entity set '{options.entity_set}' does not exist in service '{profile.name}'.\n"
                          f"Available entity sets: {available}",
            )

        if profile.mandatory_filter_keys:
            checklist = self.check_mandatory_keys(options, profile)
            if checklist:
                return PreparedQuery(options=options, rejection=checklist)

        notices: List[str] = []
        entity_type = schema.entity_type_for_set(options.entity_set) if schema is not None else None
        known_properties = entity_type.property_names() if entity_type is not None else None

        if self.expand_conflicts_with_derived_select(options, profile):
            return PreparedQuery(
                options=options,
                rejection=f"Service '{profile.name}' always sends a $select (derived from the filter when "
                          f"omitted), and $expand cannot be combined with $select on this backend.\n"
                          f"Remove 'expand' ({options.expand}) and query the navigation's entity set "
                          f"in a separate call.",
                suggestions=suggest_alternatives(options),
            )

        if profile.select_required and not options.select:
            derived = self.derive_select(options, profile, known_properties)
            if not derived:
                return PreparedQuery(options=options, rejection=self._select_rejection(profile, known_properties))
            options = options.model_copy(update={'select': ",".join(derived)})
            notices.append(f"$select was not provided; using: {options.select}")
            self._log_verbose(f"Derived $select for {options.entity_set}: {options.select}")

        validation = validate_query(options, restrictions=profile.restrictions)
        suggestions = suggest_alternatives(options)
        if not validation.is_valid:
            return PreparedQuery(
                options=options,
                rejection="The query uses a combination this backend does not support.",
                warnings=validation.warnings,
                suggestions=suggestions,
                notices=notices,
            )

        warnings = list(validation.warnings)
        if known_properties is not None and options.select:
            unknown = [name for name in split_csv(options.select)
                       if '/' not in name and name != '*' and name not in known_properties]
            if unknown:
                warnings.append(ValidationWarning(
                    severity='warning',
                    rule='unknown_select',
                    message=f"$select names not found on {entity_type.name}: {', '.join(unknown)}",
                    suggestion=f"Known properties: {', '.join(known_properties)}",
                ))

        return PreparedQuery(options=options, warnings=warnings, suggestions=suggestions, notices=notices)

    @staticmethod
    def expand_conflicts_with_derived_select(options: QueryOptions, profile: ServiceProfile) -> bool:
        """True when a derived $select would collide with the query's $expand."""
        return bool(profile.select_required and not options.select and options.expand
                    and RESTRICTION_SELECT_WITH_EXPAND in profile.restrictions)

    @staticmethod
    def check_mandatory_keys(options: QueryOptions, profile: ServiceProfile) -> Optional[str]:
        """Field-by-field checklist when any mandatory equality clause is missing, else None."""
        present = guaranteed_equality_fields(options.filter)
        missing = [key for key in profile.mandatory_filter_keys if key not in present]
        if not missing:
            return None

        lines = [f"Service '{profile.name}' is a CDS view: the filter must contain an equality "
                 f"clause for every mandatory key field.", "", "Mandatory key checklist:"]
        for key in profile.mandatory_filter_keys:
            mark = "[x]" if key in present else "[ ] MISSING:"
            lines.append(f"  {mark} {key} eq '<value>'")
        lines.append("")
        lines.append(f"Missing: {', '.join(missing)}")
        if options.filter and _LOGICAL_OR_NOT.search(mask_string_literals(options.filter)):
            lines.append("Key clauses count only when joined with 'and' (or repeated in every 'or' "
                         "alternative) and not negated with 'not'.")
        example = " and ".join(f"{key} eq '<value>'" for key in profile.mandatory_filter_keys)
        lines.append(f"Example filter: {example}")
        return "\n".join(lines)

    @staticmethod
    def derive_select(options: QueryOptions, profile: ServiceProfile,
                      known_properties: Optional[List[str]]) -> List[str]:
        """
        $select for a query that omitted it: the filter's equality fields that
        exist in the schema, else the profile defaults that exist in the
        schema. Without a schema nothing can be verified and nothing is derived.
        """
        if known_properties is None:
            return []
        known = set(known_properties)
        derived = [name for name in extract_equality_fields(options.filter) if name in known]
        if derived:
            return derived
        return [name for name in profile.default_select_fields if name in known]

    @staticmethod
    def _select_rejection(profile: ServiceProfile, known_properties: Optional[List[str]]) -> str:
        lines = [f"Service '{profile.name}' requires an explicit $select and none could be derived."]
        if known_properties is None:
            lines.append("The service schema is not available to verify field names; pass 'select' explicitly.")
        else:
            lines.append(f"Known properties: {', '.join(known_properties)}")
        if profile.default_select_fields:
            lines.append(f"Typical fields: {', '.join(profile.default_select_fields)}")
        return "\n".join(lines)
