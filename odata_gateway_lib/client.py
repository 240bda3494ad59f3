"""
Generic OData V2 query client for SAP Gateway services.
"""

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .connectivity import ServiceEndpoint, tenant_pairs
from .constants import DATA_REQUEST_TIMEOUT, DEFAULT_MAX_RESULTS, RESULT_FIELD_PREVIEW, SAP_CLIENT_PARAM
from .errors import ODataTransportError
from .models import QueryOptions, QueryResult
from .query_builder import BuildFilter, build_query_pairs


def _parse_count(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        print(f"Warning: Could not parse __count value: {raw}", file=sys.stderr)
        return None


def normalize_envelope(payload: Any, key_supplied: bool) -> QueryResult:
    """
    Turn the legacy V2 envelope ({"d": {...}} / {"d": {"results": [...], "__count": "N"}})
    into a QueryResult. Anything unrecognised yields an empty result, never an error.
    """
    body = payload.get('d') if isinstance(payload, dict) else None
    if not isinstance(body, dict):
        return QueryResult(results=[])

    if 'results' not in body:
        if key_supplied:
            return QueryResult(results=[body])
        return QueryResult(results=[])

    results = body.get('results')
    return QueryResult(
        results=results if isinstance(results, list) else [],
        count=_parse_count(body.get('__count')),
    )


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class ODataV2Client:
    """Read-only query client for one OData V2 service."""

    build_filter = BuildFilter

    def __init__(self, endpoint: ServiceEndpoint, verbose: bool = False):
        self.endpoint = endpoint
        self.verbose = verbose

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Client VERBOSE] {message}", file=sys.stderr)

    @staticmethod
    def build_query_params(options: QueryOptions, tenant: Optional[str] = None) -> List[Tuple[str, str]]:
        """Query parameters in the fixed order SAP Gateway logs and caches are keyed on."""
        return build_query_pairs([
            ('$format', 'json'),
            (SAP_CLIENT_PARAM, tenant),
            ('$filter', options.filter),
            ('$select', options.select),
            ('$expand', options.expand),
            ('$orderby', options.orderby),
            ('$top', options.top),
            ('$skip', options.skip),
            ('$inlinecount', options.inlinecount),
        ])

    @staticmethod
    def entity_path(options: QueryOptions) -> str:
        if options.key:
            return f"{options.entity_set}({options.key})"
        return options.entity_set

    def _fetch_json(self, relative_path: str, params_for_tenant) -> Tuple[Any, str]:
        connection = self.endpoint.resolve()
        params = params_for_tenant(connection)
        response, url = self.endpoint.get(connection, relative_path, params=params,
                                          accept='application/json', timeout=DATA_REQUEST_TIMEOUT)
        self._log_verbose(f"Response {response.status_code} from {url}")
        try:
            return response.json(), url
        except ValueError as e:
            raise ODataTransportError("Non-JSON response received despite Accept header", url=url,
                                      status=response.status_code, body=response.text[:500]) from e

    async def query(self, options: QueryOptions) -> QueryResult:
        """Run a query. An empty match is an empty result; only transport failures raise."""
        path = self.entity_path(options)
        self._log_verbose(f"Query: {path}")
        try:
            payload, url = await asyncio.to_thread(
                self._fetch_json, path,
                lambda connection: self.build_query_params(options, connection.tenant_param),
            )
        except ODataTransportError as e:
            enriched = e.with_context(entity_set=options.entity_set)
            print(f"ERROR: Error querying {options.entity_set}: {enriched}", file=sys.stderr)
            raise enriched from e

        result = normalize_envelope(payload, key_supplied=bool(options.key))
        self._log_verbose(f"Query completed: {len(result.results)} row(s), count={result.count}")
        return result

    async def query_raw(self, custom_path: str,
                        query_params: Optional[Union[Dict[str, str], Sequence[Tuple[str, str]]]] = None) -> Any:
        """GET an arbitrary path below the service (function imports, $count, ...) and return the decoded JSON."""
        pairs = list(query_params.items()) if isinstance(query_params, dict) else list(query_params or [])
        names = {name for name, _ in pairs}

        def with_defaults(connection):
            params = list(pairs)
            if '$format' not in names:
                params.insert(0, ('$format', 'json'))
            if SAP_CLIENT_PARAM not in names:
                params.extend(tenant_pairs(connection))
            return params

        self._log_verbose(f"Raw query: {custom_path}")
        try:
            payload, _ = await asyncio.to_thread(self._fetch_json, custom_path, with_defaults)
        except ODataTransportError as e:
            print(f"ERROR: Raw query {custom_path} failed: {e}", file=sys.stderr)
            raise
        return payload

    @staticmethod
    def format_results(results: List[Dict[str, Any]], properties: Optional[List[str]] = None,
                       max_results: int = DEFAULT_MAX_RESULTS) -> str:
        """Numbered, human-readable preview of result rows."""
        max_results = max_results or DEFAULT_MAX_RESULTS
        shown = results[:max_results]
        if not shown:
            return "No results found"

        header = f"Found {len(results)} result(s)"
        if len(results) > max_results:
            header += f" (showing first {max_results})"
        lines = [header + ":", ""]

        for index, row in enumerate(shown, 1):
            if properties:
                fields = [(p, row[p]) for p in properties if p in row]
            else:
                fields = [(k, v) for k, v in row.items() if not k.startswith('__') and v is not None]
                fields = fields[:RESULT_FIELD_PREVIEW]
            lines.append(f"{index}. " + ", ".join(f"{k}: {_render_value(v)}" for k, v in fields))

        text = "\n".join(lines)
        if len(results) > max_results:
            text += f"\n\n... and {len(results) - max_results} more result(s)"
        return text
