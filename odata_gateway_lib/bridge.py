"""
MCP gateway exposing structured OData V2 queries and schema lookups as tools.
"""

import json
import re
import sys
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastmcp import Context, FastMCP
from pydantic import ValidationError

from .client import ODataV2Client
from .connectivity import ODataHttpTransport, ServiceEndpoint
from .constants import DEFAULT_MAX_RESULTS, DEFAULT_SESSION_TTL, SCHEMA_EXCERPT_LIMIT
from .errors import GatewayError, ODataTransportError
from .metadata_parser import MetadataParser
from .models import QueryOptions
from .policy import PreparedQuery, QueryPolicy, is_schema_lookup_error
from .service_profiles import ProfileRegistry, ServiceProfile
from .session_tracker import SessionTracker
from .validator import format_warnings


DEFAULT_SESSION_ID = "default"


def _session_id(ctx: Optional[Context]) -> str:
    # stdio has a single client and may not carry a session id
    if ctx is None:
        return DEFAULT_SESSION_ID
    try:
        return ctx.session_id or DEFAULT_SESSION_ID
    except (RuntimeError, ValueError):
        return DEFAULT_SESSION_ID


@dataclass
class ServiceBinding:
    """Everything needed to serve one configured backend service."""
    name: str
    profile: ServiceProfile
    parser: Optional[MetadataParser] = None
    client: Optional[ODataV2Client] = None

    @property
    def configured(self) -> bool:
        return self.client is not None


class ODataGatewayBridge:
    """Registers query and schema tools for each configured OData V2 service."""

    def __init__(self, services: Dict[str, str], provider=None, profiles: Optional[ProfileRegistry] = None,
                 mcp_name: str = "odata-gateway", session_ttl: Optional[float] = DEFAULT_SESSION_TTL,
                 transport: Optional[ODataHttpTransport] = None, verbose: bool = False):
        self.verbose = verbose
        self.provider = provider
        self.profiles = profiles or ProfileRegistry(verbose=verbose)
        self.sessions = SessionTracker(ttl_seconds=session_ttl, verbose=verbose)
        self.policy = QueryPolicy(verbose=verbose)
        self.mcp = FastMCP(name=mcp_name)
        self.transport = transport or ODataHttpTransport(verbose=verbose)
        self.services: Dict[str, ServiceBinding] = {}
        self.registered_tools: Dict[str, List[str]] = {}

        if provider is None:
            print("ERROR: No backend connection configured (destination or ODATA_URL). "
                  "Tools will report the services as not configured.", file=sys.stderr)

        for name, service_path in services.items():
            profile = self.profiles.resolve(name, service_path)
            binding = ServiceBinding(name=name, profile=profile)
            if provider is not None:
                endpoint = ServiceEndpoint(name, service_path, provider, self.transport)
                binding.parser = MetadataParser(endpoint, verbose=verbose)
                binding.client = ODataV2Client(endpoint, verbose=verbose)
            self.services[name] = binding
            self._register_service_tools(binding)

        self._register_info_tool()

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Bridge VERBOSE] {message}", file=sys.stderr)

    @staticmethod
    def _make_tool_name(base_name: str, service_name: str = "") -> str:
        """Tool name from a base and a service name, limited to 64 characters."""
        suffix = re.sub(r'[^A-Za-z0-9_]', '_', service_name).strip('_').lower()
        full_name = f"{base_name}_{suffix}" if suffix else base_name
        return full_name[:64]

    # --- Tool registration ---

    def _query_tool_description(self, profile: ServiceProfile) -> str:
        lines = [
            f"Query the '{profile.name}' OData V2 service ({profile.service_path}).",
            "",
            "Parameters: entity_set (required), key (e.g. '1000001' or \"BusinessPartner='1000001'\"), "
            "filter (OData V2 syntax: eq, ne, gt, substringof('x',Field), startswith(Field,'x'), and/or/not), "
            "select, expand, orderby, top, skip, inlinecount ('allpages' to get a total count), "
            "max_results (rows shown, default 10).",
            "",
            "Not supported by this backend: $select together with $expand, options inside $expand "
            "(nav($select=...)), any()/all() lambda filters.",
            "The first successful query of a session also returns the service schema.",
        ]
        if profile.mandatory_filter_keys:
            lines.append(f"Mandatory filter keys (equality): {', '.join(profile.mandatory_filter_keys)}.")
        if profile.select_required:
            lines.append("An explicit select is required; when omitted it is derived from the filter's key fields.")
        lines.extend(profile.notes)
        return "\n".join(lines)

    def _tool_error(self, tool_name: str, error: Exception) -> str:
        err_msg = f"Error in tool {tool_name}: {error}"
        print(f"ERROR: {err_msg}", file=sys.stderr)
        if self.verbose:
            traceback.print_exc(file=sys.stderr)
        return err_msg

    def _register_service_tools(self, binding: ServiceBinding):
        bridge = self
        service_name = binding.name
        query_name = self._make_tool_name("odata_query", service_name)
        schema_name = self._make_tool_name("odata_schema", service_name)

        async def query_tool(ctx: Context, entity_set: str, key: Optional[str] = None,
                             filter: Optional[str] = None, select: Optional[str] = None,
                             expand: Optional[str] = None, orderby: Optional[str] = None,
                             top: Optional[int] = None, skip: Optional[int] = None,
                             inlinecount: Optional[str] = None,
                             max_results: int = DEFAULT_MAX_RESULTS) -> str:
            try:
                return await bridge.handle_query(
                    service_name, _session_id(ctx), max_results=max_results,
                    entity_set=entity_set, key=key, filter=filter, select=select, expand=expand,
                    orderby=orderby, top=top, skip=skip, inlinecount=inlinecount,
                )
            except Exception as e:
                return bridge._tool_error(query_name, e)

        async def schema_tool(ctx: Context, entity_type: Optional[str] = None) -> str:
            try:
                return await bridge.handle_schema(service_name, _session_id(ctx), entity_type=entity_type)
            except Exception as e:
                return bridge._tool_error(schema_name, e)

        self.mcp.tool(name=query_name, description=self._query_tool_description(binding.profile))(query_tool)
        self.mcp.tool(
            name=schema_name,
            description=f"Schema of the '{service_name}' OData V2 service: entity sets, keys, properties and "
                        f"navigations. Pass entity_type for the full property list of one type.",
        )(schema_tool)
        self.registered_tools[service_name] = [query_name, schema_name]
        self._log_verbose(f"Registered tools for {service_name}: {query_name}, {schema_name}")

    def _register_info_tool(self):
        async def odata_gateway_info() -> str:
            """Lists the configured OData services, their query profiles and tool names."""
            return await self.handle_info()

        self.mcp.tool(name="odata_gateway_info")(odata_gateway_info)
        self._log_verbose("Registered tool: odata_gateway_info")

    # --- Tool logic ---

    @staticmethod
    def _not_configured(service_name: str) -> str:
        return (f"ERROR: OData service '{service_name}' is not configured.\n"
                f"Set BTP_DESTINATION_* (destination mode) or ODATA_URL (direct mode) and restart the gateway.")

    async def _schema_for_policy(self, binding: ServiceBinding, options: QueryOptions):
        """Cached schema; fetched only when the profile cannot decide without one."""
        schema = binding.parser.get_cached_schema()
        if schema is not None:
            return schema
        if not (binding.profile.select_required and not options.select):
            return None
        # Missing key filters and expand on a select-required view reject before anything is downloaded
        if (self.policy.expand_conflicts_with_derived_select(options, binding.profile)
                or self.policy.check_mandatory_keys(options, binding.profile)):
            return None
        try:
            return await binding.parser.fetch_metadata()
        except GatewayError as e:
            print(f"ERROR: Schema unavailable for {binding.name}: {e}", file=sys.stderr)
            return None

    async def handle_query(self, service_name: str, session_id: str,
                           max_results: int = DEFAULT_MAX_RESULTS, **raw_options: Any) -> str:
        binding = self.services.get(service_name)
        if binding is None or not binding.configured:
            return self._not_configured(service_name)

        try:
            options = QueryOptions(**raw_options)
        except ValidationError as e:
            details = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            return f"QUERY REJECTED: invalid parameters\n\n{details}"

        schema = await self._schema_for_policy(binding, options)
        prepared = self.policy.prepare(options, binding.profile, schema)
        if prepared.rejected:
            self._log_verbose(f"Rejected query on {service_name}/{options.entity_set}")
            return self._render_rejection(binding, prepared)

        try:
            result = await binding.client.query(prepared.options)
        except ODataTransportError as e:
            return await self._render_transport_error(binding, prepared.options, e)
        except GatewayError as e:
            print(f"ERROR: Query on {service_name} failed: {e}", file=sys.stderr)
            return f"QUERY FAILED\nService: {service_name}\nEntity set: {options.entity_set}\nError: {e}"

        parts = []
        schema_text = await self._schema_for_session(binding, session_id)
        if schema_text:
            parts.append(schema_text)
        parts.extend(prepared.notices)
        body = ODataV2Client.format_results(result.results, max_results=max_results)
        if result.count is not None:
            body += f"\n\nTotal count: {result.count}"
        parts.append(body)
        if prepared.warnings:
            parts.append(format_warnings(prepared.warnings))
        if prepared.suggestions:
            parts.append("\n".join(prepared.suggestions))
        return "\n\n".join(p.rstrip("\n") for p in parts)

    async def _schema_for_session(self, binding: ServiceBinding, session_id: str) -> Optional[str]:
        """Schema summary the first time a session queries a service, else None. Never raises."""
        if self.sessions.has_schema_been_provided(session_id, binding.name):
            return None
        try:
            summary = await binding.parser.get_schema_info()
        except GatewayError as e:
            print(f"ERROR: Could not attach schema for {binding.name}: {e}", file=sys.stderr)
            return None
        self.sessions.mark_schema_as_provided(session_id, binding.name)
        self._log_verbose(f"Schema for {binding.name} provided to session {session_id}")
        return f"SERVICE SCHEMA ({binding.name}, shown once per session)\n\n{summary}"

    def _render_rejection(self, binding: ServiceBinding, prepared: PreparedQuery) -> str:
        lines = [f"QUERY REJECTED: {binding.name} / {prepared.options.entity_set}", "", prepared.rejection]
        if prepared.warnings:
            lines.extend(["", format_warnings(prepared.warnings).rstrip("\n")])
        if prepared.suggestions:
            lines.extend(["", *prepared.suggestions])
        lines.extend(["", "The query was not sent. Adjust the parameters and retry."])
        return "\n".join(lines)

    async def _render_transport_error(self, binding: ServiceBinding, options: QueryOptions,
                                      error: ODataTransportError) -> str:
        lines = [
            "QUERY FAILED",
            f"Service: {binding.name}",
            f"Entity set: {error.entity_set or options.entity_set}",
        ]
        if error.url:
            lines.append(f"URL: {error.url}")
        if error.status is not None:
            lines.append(f"Status: {error.status}")
        lines.append(f"Error: {error.message}")

        if is_schema_lookup_error(error.message):
            try:
                summary = await binding.parser.get_schema_info()
            except GatewayError as e:
                print(f"ERROR: Could not load schema excerpt for {binding.name}: {e}", file=sys.stderr)
            else:
                excerpt = summary[:SCHEMA_EXCERPT_LIMIT]
                if len(summary) > SCHEMA_EXCERPT_LIMIT:
                    excerpt += "\n... (truncated, use the schema tool for the full listing)"
                lines.extend(["", "The entity set or a property name looks wrong. Schema excerpt:", "", excerpt])
        return "\n".join(lines)

    async def handle_schema(self, service_name: str, session_id: str, entity_type: Optional[str] = None) -> str:
        binding = self.services.get(service_name)
        if binding is None or not binding.configured:
            return self._not_configured(service_name)
        try:
            if entity_type:
                text = await binding.parser.get_entity_type_details(entity_type)
            else:
                text = await binding.parser.get_schema_info()
        except GatewayError as e:
            print(f"ERROR: Schema request for {service_name} failed: {e}", file=sys.stderr)
            return f"ERROR: Could not load the schema of '{service_name}': {e}"
        self.sessions.mark_schema_as_provided(session_id, service_name)
        return text

    async def handle_info(self) -> str:
        info = {
            "connection": self.provider.describe() if self.provider is not None else "not configured",
            "services": {
                name: {
                    "service_path": binding.profile.service_path,
                    "configured": binding.configured,
                    "profile": binding.profile.describe(),
                    "tools": self.registered_tools.get(name, []),
                }
                for name, binding in self.services.items()
            },
            "profiles_file": self.profiles.profiles_file,
            "tracked_sessions": self.sessions.session_count(),
        }
        return json.dumps(info, indent=2)

    def run(self, transport: str = "stdio", host: Optional[str] = None, port: Optional[int] = None):
        """Run the MCP server."""
        self._log_verbose(f"Starting OData gateway '{self.mcp.name}' with services: {', '.join(self.services)}")
        if transport == "stdio":
            self.mcp.run()
        else:
            self.mcp.run(transport=transport, host=host, port=port)
