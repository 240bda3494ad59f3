"""
OData V2 query fragment helpers: literals, filter builders and query-string encoding.
"""

import re
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
from urllib.parse import urlencode


_EQUALITY_CLAUSE = re.compile(
    r"(?<![\w/.])([A-Za-z_][A-Za-z0-9_]*)\s+eq\s+(?:'(?:[^']|'')*'|[^\s()]+)",
    re.IGNORECASE,
)

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")


def escape_odata_literal(value: str) -> str:
    """Escape a string for use inside a single-quoted OData literal (O'Brien -> O''Brien)."""
    return value.replace("'", "''")


def format_literal(value: Union[str, Number, bool, None]) -> str:
    """Render a Python value as an OData V2 literal: strings quoted, numbers and booleans bare."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Number):
        return str(value)
    return f"'{escape_odata_literal(str(value))}'"


def encode_query_params(params: Union[Dict[str, Any], Sequence[Tuple[str, Any]]]) -> str:
    """Encode query parameters properly for OData compatibility.

    SAP Gateway does not accept '+' for spaces in URL parameters, so spaces
    are sent as '%20'. Parameter order is preserved.
    """
    encoded = urlencode(params, doseq=True, safe='$')
    return encoded.replace('+', '%20')


def mask_string_literals(expr: str) -> str:
    """Blank out quoted literal contents, keeping positions, so "Name eq 'a eq (b'" reads as one clause."""
    return _STRING_LITERAL.sub(lambda m: "'" + "_" * (len(m.group(0)) - 2) + "'", expr)


def split_csv(value: Optional[str]) -> List[str]:
    """Split a comma-separated option ($select, $expand) into stripped, non-empty names."""
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def extract_equality_fields(filter_expr: Optional[str]) -> List[str]:
    """
    Property names compared with 'eq' in a $filter expression, in order of appearance.

    Navigation paths (to_Address/Country) and function results are ignored,
    only plain 'Name eq <literal>' clauses count.
    """
    if not filter_expr:
        return []
    fields: List[str] = []
    for match in _EQUALITY_CLAUSE.finditer(mask_string_literals(filter_expr)):
        name = match.group(1)
        if name.lower() in ("and", "or", "not", "true", "false", "null"):
            continue
        if name not in fields:
            fields.append(name)
    return fields


def _strip_outer_parens(expr: str) -> str:
    while expr.startswith('(') and expr.endswith(')'):
        depth = 0
        for index, ch in enumerate(expr):
            if ch == '(':
                depth += 1
            elif ch == ')':
                depth -= 1
            if depth == 0 and index < len(expr) - 1:
                return expr
        expr = expr[1:-1].strip()
    return expr


def _split_top_level(expr: str, keyword: str) -> List[str]:
    """Split on a logical keyword outside any parentheses."""
    separator = re.compile(rf'\s+{keyword}\s+', re.IGNORECASE)
    parts, depth, start, index = [], 0, 0, 0
    while index < len(expr):
        ch = expr[index]
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        elif depth == 0:
            match = separator.match(expr, index)
            if match:
                parts.append(expr[start:index])
                index = start = match.end()
                continue
        index += 1
    parts.append(expr[start:])
    return [part.strip() for part in parts if part.strip()]


def _guaranteed_fields(expr: str) -> Set[str]:
    expr = _strip_outer_parens(expr.strip())
    # 'and' binds tighter than 'or'
    alternatives = _split_top_level(expr, 'or')
    if len(alternatives) > 1:
        return set.intersection(*(_guaranteed_fields(alt) for alt in alternatives))
    clauses = _split_top_level(expr, 'and')
    if len(clauses) > 1:
        return set().union(*(_guaranteed_fields(clause) for clause in clauses))
    if re.match(r'not\b', expr, re.IGNORECASE):
        return set()
    return set(extract_equality_fields(expr))


def guaranteed_equality_fields(filter_expr: Optional[str]) -> Set[str]:
    """
    Properties every matching row is pinned to by a 'Name eq <literal>' clause.

    A clause counts when it is and-ed into the filter, or when every
    alternative of an 'or' carries it. Negated clauses never count.
    """
    if not filter_expr:
        return set()
    return _guaranteed_fields(mask_string_literals(filter_expr))


class BuildFilter:
    """Composable OData V2 $filter fragment constructors."""

    @staticmethod
    def eq(prop: str, value: Union[str, Number, bool]) -> str:
        return f"{prop} eq {format_literal(value)}"

    @staticmethod
    def ne(prop: str, value: Union[str, Number, bool]) -> str:
        return f"{prop} ne {format_literal(value)}"

    @staticmethod
    def gt(prop: str, value: Number) -> str:
        return f"{prop} gt {format_literal(value)}"

    @staticmethod
    def ge(prop: str, value: Number) -> str:
        return f"{prop} ge {format_literal(value)}"

    @staticmethod
    def lt(prop: str, value: Number) -> str:
        return f"{prop} lt {format_literal(value)}"

    @staticmethod
    def le(prop: str, value: Number) -> str:
        return f"{prop} le {format_literal(value)}"

    @staticmethod
    def substringof(value: str, prop: str) -> str:
        """OData V2 substring test: substringof('value',Property)."""
        return f"substringof({format_literal(str(value))},{prop})"

    @staticmethod
    def startswith(prop: str, value: str) -> str:
        return f"startswith({prop},{format_literal(str(value))})"

    @staticmethod
    def endswith(prop: str, value: str) -> str:
        return f"endswith({prop},{format_literal(str(value))})"

    @staticmethod
    def and_(*filters: str) -> str:
        return " and ".join(f for f in filters if f)

    @staticmethod
    def or_(*filters: str) -> str:
        return " or ".join(f for f in filters if f)

    @staticmethod
    def not_(filter_expr: str) -> str:
        return f"not ({filter_expr})"


# Reachable under their OData names as well: getattr(BuildFilter, "and")
setattr(BuildFilter, "and", BuildFilter.and_)
setattr(BuildFilter, "or", BuildFilter.or_)
setattr(BuildFilter, "not", BuildFilter.not_)


def build_query_pairs(pairs: Iterable[Tuple[str, Optional[Any]]]) -> List[Tuple[str, str]]:
    """Drop unset parameters, keeping the order given."""
    return [(name, str(value)) for name, value in pairs if value is not None and value != ""]
