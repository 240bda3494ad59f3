"""
Data models for OData V2 metadata, queries and validation results.
"""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


def simple_name(qualified_name: str) -> str:
    """Strip the namespace prefix from a qualified name (Namespace.Type -> Type)."""
    return qualified_name.split('.')[-1] if qualified_name else qualified_name


class ODataProperty(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str  # Wire type name (e.g., "Edm.String")
    nullable: bool = True
    max_length: Optional[str] = None
    precision: Optional[str] = None
    scale: Optional[str] = None


class ODataNavigationProperty(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    relationship: str
    from_role: str
    to_role: str


class ODataEntityType(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str = ""
    keys: List[str] = []  # Document order, used for key predicates
    properties: List[ODataProperty] = []
    navigation_properties: List[ODataNavigationProperty] = []

    def get_property(self, name: str) -> Optional[ODataProperty]:
        return next((p for p in self.properties if p.name == name), None)

    def property_names(self) -> List[str]:
        return [p.name for p in self.properties]


class ODataEntitySet(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    entity_type: str  # Qualified name as declared in the container

    @property
    def entity_type_name(self) -> str:
        return simple_name(self.entity_type)


class ODataAssociationEnd(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    type: str
    multiplicity: str  # "1", "0..1" or "*"


class ODataAssociation(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ends: List[ODataAssociationEnd] = []

    def get_end(self, role: str) -> Optional[ODataAssociationEnd]:
        return next((e for e in self.ends if e.role == role), None)


class ODataSchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    namespace: str = ""
    entity_types: List[ODataEntityType] = []
    entity_sets: List[ODataEntitySet] = []
    associations: List[ODataAssociation] = []

    def find_entity_type(self, name: str) -> Optional[ODataEntityType]:
        name = simple_name(name)
        return next((et for et in self.entity_types if et.name == name), None)

    def find_entity_set(self, name: str) -> Optional[ODataEntitySet]:
        return next((es for es in self.entity_sets if es.name == name), None)

    def find_association(self, relationship: str) -> Optional[ODataAssociation]:
        name = simple_name(relationship)
        return next((a for a in self.associations if a.name == name), None)

    def entity_type_for_set(self, entity_set: str) -> Optional[ODataEntityType]:
        es = self.find_entity_set(entity_set)
        if es is None:
            return None
        return self.find_entity_type(es.entity_type_name)


class QueryOptions(BaseModel):
    """Shared input contract of the validator and the query client."""
    model_config = ConfigDict(frozen=True)

    entity_set: str = Field(min_length=1)
    key: Optional[str] = None
    filter: Optional[str] = None
    select: Optional[str] = None
    expand: Optional[str] = None
    orderby: Optional[str] = None
    top: Optional[int] = Field(default=None, ge=0)
    skip: Optional[int] = Field(default=None, ge=0)
    inlinecount: Optional[Literal["allpages", "none"]] = None

    @field_validator("key", "filter", "select", "expand", "orderby", "inlinecount", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        # Tool callers frequently send "" for "not set"
        if isinstance(value, str) and not value.strip():
            return None
        return value


class QueryResult(BaseModel):
    results: List[Dict[str, Any]] = []
    count: Optional[int] = None


class ValidationWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Literal["error", "warning"]
    message: str
    suggestion: str
    rule: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool = True
    warnings: List[ValidationWarning] = []

    @property
    def errors(self) -> List[ValidationWarning]:
        return [w for w in self.warnings if w.severity == "error"]


class BackendConnection(BaseModel):
    """Resolved connection details for one backend service."""

    base_url: str
    auth_headers: Dict[str, str] = {}
    proxy_required: bool = False
    proxy_headers: Dict[str, str] = {}
    tenant_param: Optional[str] = None
