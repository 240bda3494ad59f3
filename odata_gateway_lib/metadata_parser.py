"""
OData V2 metadata parser: entity types, entity sets and associations from $metadata.
"""

import asyncio
import sys
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from lxml import etree

from .connectivity import ServiceEndpoint, tenant_pairs
from .constants import METADATA_REQUEST_TIMEOUT, SCHEMA_ASSOCIATION_PREVIEW, SCHEMA_PROPERTY_PREVIEW
from .errors import MetadataParseError, ODataTransportError
from .models import (
    ODataAssociation,
    ODataAssociationEnd,
    ODataEntitySet,
    ODataEntityType,
    ODataNavigationProperty,
    ODataProperty,
    ODataSchema,
    simple_name,
)


def _xml_parser() -> etree.XMLParser:
    # Gateways occasionally ship slightly broken documents; recover what we can
    # and never touch the network or expand entities while doing so.
    return etree.XMLParser(recover=True, no_network=True, resolve_entities=False, remove_comments=True)


def _children(element, local_name: str) -> list:
    return element.xpath(f"./*[local-name()='{local_name}']")


def _parse_entity_type(element, namespace: str) -> Optional[ODataEntityType]:
    name = element.get('Name')
    if not name:
        return None

    keys = [ref.get('Name') for key in _children(element, 'Key')
            for ref in _children(key, 'PropertyRef') if ref.get('Name')]

    properties = []
    for prop in _children(element, 'Property'):
        if not prop.get('Name'):
            continue
        properties.append(ODataProperty(
            name=prop.get('Name'),
            type=prop.get('Type', ''),
            nullable=prop.get('Nullable', 'true').lower() != 'false',
            max_length=prop.get('MaxLength'),
            precision=prop.get('Precision'),
            scale=prop.get('Scale'),
        ))

    navigation = []
    for nav in _children(element, 'NavigationProperty'):
        if not nav.get('Name'):
            continue
        navigation.append(ODataNavigationProperty(
            name=nav.get('Name'),
            relationship=nav.get('Relationship', ''),
            from_role=nav.get('FromRole', ''),
            to_role=nav.get('ToRole', ''),
        ))

    return ODataEntityType(name=name, namespace=namespace, keys=keys,
                           properties=properties, navigation_properties=navigation)


def _parse_association(element) -> Optional[ODataAssociation]:
    name = element.get('Name')
    if not name:
        return None
    ends = []
    for end in _children(element, 'End'):
        role, end_type, multiplicity = end.get('Role'), end.get('Type'), end.get('Multiplicity')
        if role and end_type and multiplicity:
            ends.append(ODataAssociationEnd(role=role, type=end_type, multiplicity=multiplicity))
    if len(ends) < 2:
        return None
    return ODataAssociation(name=name, ends=ends)


def parse_metadata_document(content: Union[bytes, str]) -> ODataSchema:
    """
    Parse a $metadata (EDMX/CSDL) document into an ODataSchema.

    Matching is by local element name, so namespace prefixes and attribute
    order do not matter. Raises MetadataParseError when no XML root can be
    recovered; a document without entity types yields an empty schema.
    """
    if isinstance(content, str):
        content = content.encode('utf-8')
    if not content or not content.strip():
        raise MetadataParseError("Metadata document is empty")
    try:
        root = etree.fromstring(content, _xml_parser())
    except etree.XMLSyntaxError as e:
        raise MetadataParseError(f"Metadata document is not valid XML: {e}") from e
    if root is None:
        raise MetadataParseError("Metadata document is not valid XML: no root element")

    schemas = root.xpath("//*[local-name()='Schema']")
    namespace = ""
    for schema in schemas:
        if schema.get('Namespace') and _children(schema, 'EntityType'):
            namespace = schema.get('Namespace')
            break
    else:
        if schemas and schemas[0].get('Namespace'):
            namespace = schemas[0].get('Namespace')

    entity_types: List[ODataEntityType] = []
    associations: List[ODataAssociation] = []
    for schema in schemas:
        schema_ns = schema.get('Namespace', namespace)
        for element in _children(schema, 'EntityType'):
            entity_type = _parse_entity_type(element, schema_ns)
            if entity_type is not None:
                entity_types.append(entity_type)
        for element in _children(schema, 'Association'):
            association = _parse_association(element)
            if association is not None:
                associations.append(association)

    entity_sets = []
    for element in root.xpath("//*[local-name()='EntityContainer']/*[local-name()='EntitySet']"):
        if element.get('Name') and element.get('EntityType'):
            entity_sets.append(ODataEntitySet(name=element.get('Name'), entity_type=element.get('EntityType')))

    return ODataSchema(namespace=namespace, entity_types=entity_types,
                       entity_sets=entity_sets, associations=associations)


def format_schema_summary(schema: ODataSchema) -> str:
    """Compact, LLM-readable overview of the whole service."""
    lines = ["OData V2 Service Schema", f"Namespace: {schema.namespace}", "",
             f"Entity Sets ({len(schema.entity_sets)}):"]
    for entity_set in schema.entity_sets:
        type_name = entity_set.entity_type_name
        lines.append("")
        lines.append(f"  - {entity_set.name} -> {type_name}")
        entity_type = schema.find_entity_type(type_name)
        if entity_type is None:
            continue
        names = entity_type.property_names()
        preview = ", ".join(names[:SCHEMA_PROPERTY_PREVIEW])
        more = "..." if len(names) > SCHEMA_PROPERTY_PREVIEW else ""
        lines.append(f"    Keys: {', '.join(entity_type.keys)}")
        lines.append(f"    Properties ({len(names)}): {preview}{more}")
        if entity_type.navigation_properties:
            lines.append(f"    Navigation: {', '.join(n.name for n in entity_type.navigation_properties)}")

    lines.append("")
    lines.append(f"Associations ({len(schema.associations)}):")
    for association in schema.associations[:SCHEMA_ASSOCIATION_PREVIEW]:
        first, second = association.ends[0], association.ends[1]
        lines.append(f"  - {first.role} ({first.multiplicity}) <-> {second.role} ({second.multiplicity})")
    if len(schema.associations) > SCHEMA_ASSOCIATION_PREVIEW:
        lines.append(f"  ... and {len(schema.associations) - SCHEMA_ASSOCIATION_PREVIEW} more associations")
    return "\n".join(lines) + "\n"


def resolve_navigation_target(schema: ODataSchema, entity_type: ODataEntityType,
                              navigation_name: str) -> Optional[Tuple[str, str]]:
    """Target entity type name and multiplicity of a navigation property, or None."""
    nav = next((n for n in entity_type.navigation_properties if n.name == navigation_name), None)
    if nav is None:
        return None
    association = schema.find_association(nav.relationship)
    if association is None:
        return None
    end = association.get_end(nav.to_role)
    if end is None:
        return None
    return simple_name(end.type), end.multiplicity


def format_entity_type_details(schema: ODataSchema, entity_type_name: str) -> str:
    entity_type = schema.find_entity_type(entity_type_name)
    if entity_type is None:
        return f'Entity type "{entity_type_name}" not found'

    lines = [f"Entity Type: {entity_type.name}", f"Namespace: {entity_type.namespace}", "", "Key Properties:"]
    for key in entity_type.keys:
        prop = entity_type.get_property(key)
        if prop is not None:
            lines.append(f"  - {key}: {prop.type}")

    lines.append("")
    lines.append(f"Properties ({len(entity_type.properties)}):")
    for prop in entity_type.properties:
        line = f"  - {prop.name}: {prop.type}"
        if not prop.nullable:
            line += " (required)"
        if prop.max_length:
            line += f" [max: {prop.max_length}]"
        lines.append(line)

    if entity_type.navigation_properties:
        lines.append("")
        lines.append(f"Navigation Properties ({len(entity_type.navigation_properties)}):")
        for nav in entity_type.navigation_properties:
            target = resolve_navigation_target(schema, entity_type, nav.name)
            if target is None:
                lines.append(f"  - {nav.name} -> (association not found)")
            else:
                lines.append(f"  - {nav.name} -> {target[0]} ({target[1]})")
    return "\n".join(lines) + "\n"


class MetadataParser:
    """Fetches and caches the $metadata of one OData V2 service."""

    # Process-wide, one slot per service path. Concurrent first fetches may
    # both hit the backend; the first parsed schema is kept and shared.
    _cache: Dict[str, ODataSchema] = {}
    _cache_lock = threading.Lock()

    def __init__(self, endpoint: ServiceEndpoint, verbose: bool = False):
        self.endpoint = endpoint
        self.cache_key = endpoint.service_path
        self.verbose = verbose

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Parser VERBOSE] {message}", file=sys.stderr)

    @classmethod
    def clear_all_caches(cls):
        with cls._cache_lock:
            cls._cache.clear()

    def clear_cache(self):
        with self._cache_lock:
            self._cache.pop(self.cache_key, None)
        self._log_verbose(f"Metadata cache cleared for {self.cache_key}")

    def get_cached_schema(self) -> Optional[ODataSchema]:
        """The cached schema, without any I/O."""
        with self._cache_lock:
            return self._cache.get(self.cache_key)

    def _download(self) -> Tuple[bytes, str]:
        connection = self.endpoint.resolve()
        response, url = self.endpoint.get(connection, '$metadata', params=tenant_pairs(connection),
                                          accept='application/xml', timeout=METADATA_REQUEST_TIMEOUT)
        return response.content, url

    async def fetch_metadata(self) -> ODataSchema:
        """Return the service schema, downloading and parsing it on first use."""
        cached = self.get_cached_schema()
        if cached is not None:
            return cached

        self._log_verbose(f"Fetching metadata for {self.endpoint.service_name} ({self.cache_key})...")
        try:
            content, url = await asyncio.to_thread(self._download)
        except ODataTransportError as e:
            print(f"ERROR: Could not fetch metadata for {self.endpoint.service_name}: {e}", file=sys.stderr)
            raise

        try:
            schema = parse_metadata_document(content)
        except MetadataParseError as e:
            print(f"ERROR: Error parsing XML metadata from {url}: {e}", file=sys.stderr)
            raise

        with self._cache_lock:
            schema = self._cache.setdefault(self.cache_key, schema)
        self._log_verbose(f"Parsing complete. Found {len(schema.entity_types)} types, "
                          f"{len(schema.entity_sets)} sets, {len(schema.associations)} associations.")
        return schema

    async def get_entity_type(self, name: str) -> Optional[ODataEntityType]:
        schema = await self.fetch_metadata()
        return schema.find_entity_type(name)

    async def get_entity_sets(self) -> List[ODataEntitySet]:
        schema = await self.fetch_metadata()
        return list(schema.entity_sets)

    async def get_entity_type_for_set(self, entity_set: str) -> Optional[ODataEntityType]:
        schema = await self.fetch_metadata()
        return schema.entity_type_for_set(entity_set)

    async def get_property_names(self, entity_type_name: str) -> List[str]:
        entity_type = await self.get_entity_type(entity_type_name)
        return entity_type.property_names() if entity_type else []

    async def resolve_navigation(self, entity_type_name: str, navigation_name: str) -> Optional[Tuple[str, str]]:
        schema = await self.fetch_metadata()
        entity_type = schema.find_entity_type(entity_type_name)
        if entity_type is None:
            return None
        return resolve_navigation_target(schema, entity_type, navigation_name)

    async def get_schema_info(self) -> str:
        return format_schema_summary(await self.fetch_metadata())

    async def get_entity_type_details(self, entity_type_name: str) -> str:
        return format_entity_type_details(await self.fetch_metadata(), entity_type_name)
