"""
Static checks for OData V2 queries against known SAP Gateway (S/4HANA On-Premise) restrictions.

Nothing here touches the network; validate_query is safe to call before every request.
"""

import re
from typing import Any, Iterable, List, Optional

from .constants import (
    ALL_RESTRICTIONS,
    MAX_EXPANDED_NAVIGATIONS,
    NAVIGATION_ENTITY_SETS,
    RESTRICTION_ANY_LAMBDA,
    RESTRICTION_EXPAND_BREADTH,
    RESTRICTION_NESTED_EXPAND_OPTIONS,
    RESTRICTION_SELECT_WITH_EXPAND,
)
from .models import ValidationResult, ValidationWarning
from .query_builder import mask_string_literals, split_csv


# Lambda operators follow a navigation path: to_Address/any(d: ...)
_ANY_LAMBDA = re.compile(r'/\s*any\s*\(', re.IGNORECASE)

_ALIASES = {
    'entity_set': ('entity_set', 'entitySet'),
    'select': ('select',),
    'expand': ('expand',),
    'filter': ('filter',),
}


def _option(options: Any, name: str) -> Optional[str]:
    """Read a query option from a QueryOptions, a dict or any object with matching attributes."""
    for alias in _ALIASES[name]:
        if isinstance(options, dict):
            value = options.get(alias)
        else:
            value = getattr(options, alias, None)
        if value is not None:
            return str(value) if str(value).strip() else None
    return None


def validate_query(options: Any, restrictions: Iterable[str] = ALL_RESTRICTIONS) -> ValidationResult:
    """Check a query's shape. The query is valid unless an error-severity rule fires."""
    enabled = set(restrictions)
    select = _option(options, 'select')
    expand = _option(options, 'expand')
    filter_expr = _option(options, 'filter')
    warnings: List[ValidationWarning] = []

    if RESTRICTION_SELECT_WITH_EXPAND in enabled and select and expand:
        warnings.append(ValidationWarning(
            severity='error',
            rule=RESTRICTION_SELECT_WITH_EXPAND,
            message="Combining $select and $expand on the root entity is NOT supported by this backend "
                    "(the expanded data silently disappears from the response)",
            suggestion="1. Recommended: remove 'select' and take all root fields together with the expand.\n"
                       "   2. Alternative: make two separate calls, one with $expand (no $select) for the "
                       "navigation data, one with $select (no $expand) for the specific root fields.",
        ))

    if RESTRICTION_NESTED_EXPAND_OPTIONS in enabled and expand and '(' in expand:
        warnings.append(ValidationWarning(
            severity='error',
            rule=RESTRICTION_NESTED_EXPAND_OPTIONS,
            message="Query options inside $expand (e.g. 'to_BusinessPartnerAddress($select=City)') are NOT supported",
            suggestion="1. Recommended: use a plain $expand (e.g. 'to_BusinessPartnerAddress') and pick the fields "
                       "from the result.\n"
                       "   2. Alternative: query the navigation's entity set directly, e.g. "
                       "entity_set='A_BusinessPartnerAddress', filter=\"BusinessPartner eq '1000001'\", "
                       "select='AddressID,CityName,Country'.",
        ))

    if RESTRICTION_ANY_LAMBDA in enabled and filter_expr and _ANY_LAMBDA.search(mask_string_literals(filter_expr)):
        warnings.append(ValidationWarning(
            severity='error',
            rule=RESTRICTION_ANY_LAMBDA,
            message="Lambda filters with any() over navigation properties are NOT supported in OData V2",
            suggestion="1. Recommended: $expand the navigation and filter the expanded rows from the result.\n"
                       "   2. Alternative: query the navigation's entity set directly with a flat filter, e.g. "
                       "entity_set='A_BusinessPartnerAddress', filter=\"Country eq 'ES'\"; the rows carry the "
                       "parent BusinessPartner ids.",
        ))

    if RESTRICTION_EXPAND_BREADTH in enabled and expand and len(split_csv(expand)) > MAX_EXPANDED_NAVIGATIONS:
        warnings.append(ValidationWarning(
            severity='warning',
            rule=RESTRICTION_EXPAND_BREADTH,
            message=f"Expanding more than {MAX_EXPANDED_NAVIGATIONS} navigation properties at once may cause "
                    f"large responses or timeouts",
            suggestion="Consider splitting into several more specific calls if you run into performance problems.",
        ))

    return ValidationResult(
        is_valid=not any(w.severity == 'error' for w in warnings),
        warnings=warnings,
    )


def infer_target_entity_set(navigation_property: str) -> Optional[str]:
    return NAVIGATION_ENTITY_SETS.get(navigation_property)


def suggest_alternatives(options: Any) -> List[str]:
    """Best-effort direct-query suggestions for expand+filter queries. Never raises."""
    expand = _option(options, 'expand')
    filter_expr = _option(options, 'filter')
    if not (expand and filter_expr):
        return []

    navigation_props = split_csv(expand)
    suggestions = [f"If your filter targets properties of the expanded navigations "
                   f"({', '.join(navigation_props)}), consider:"]
    for nav in navigation_props:
        target = infer_target_entity_set(nav)
        if target:
            suggestions.append(f"   - Direct call: entity_set='{target}', filter='<your_filter>'")
    return suggestions


def format_warnings(warnings: List[ValidationWarning]) -> str:
    if not warnings:
        return ""
    lines = ["VALIDATION WARNINGS:", ""]
    for index, warning in enumerate(warnings, 1):
        label = "ERROR" if warning.severity == 'error' else "WARNING"
        lines.append(f"{index}. [{label}] {warning.message}")
        lines.append(f"   {warning.suggestion}")
        lines.append("")
    return "\n".join(lines)
