"""
OData Gateway Library - structured OData V2 queries over SAP Gateway services for MCP clients.
"""

from .models import (
    ODataProperty,
    ODataNavigationProperty,
    ODataEntityType,
    ODataEntitySet,
    ODataAssociation,
    ODataSchema,
    QueryOptions,
    QueryResult,
    ValidationWarning,
    ValidationResult,
    BackendConnection,
)
from .errors import GatewayError, ConfigurationError, ODataTransportError, MetadataParseError
from .query_builder import BuildFilter
from .metadata_parser import MetadataParser
from .validator import validate_query, suggest_alternatives, format_warnings
from .client import ODataV2Client
from .connectivity import (
    DestinationConnectionProvider,
    DirectConnectionProvider,
    ODataHttpTransport,
    ServiceEndpoint,
)
from .service_profiles import ServiceProfile, ProfileRegistry
from .session_tracker import SessionTracker
from .policy import QueryPolicy, is_schema_lookup_error
from .bridge import ODataGatewayBridge

__all__ = [
    'ODataProperty',
    'ODataNavigationProperty',
    'ODataEntityType',
    'ODataEntitySet',
    'ODataAssociation',
    'ODataSchema',
    'QueryOptions',
    'QueryResult',
    'ValidationWarning',
    'ValidationResult',
    'BackendConnection',
    'GatewayError',
    'ConfigurationError',
    'ODataTransportError',
    'MetadataParseError',
    'BuildFilter',
    'MetadataParser',
    'validate_query',
    'suggest_alternatives',
    'format_warnings',
    'ODataV2Client',
    'DestinationConnectionProvider',
    'DirectConnectionProvider',
    'ODataHttpTransport',
    'ServiceEndpoint',
    'ServiceProfile',
    'ProfileRegistry',
    'SessionTracker',
    'QueryPolicy',
    'is_schema_lookup_error',
    'ODataGatewayBridge',
]
