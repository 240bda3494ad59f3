"""
Constants used throughout the OData gateway library.
"""

# Timeouts (seconds)
DATA_REQUEST_TIMEOUT = 60
METADATA_REQUEST_TIMEOUT = 60
TOKEN_REQUEST_TIMEOUT = 30

# Bearer tokens are considered expired this many seconds before expires_in
TOKEN_EXPIRY_MARGIN = 300
DEFAULT_TOKEN_LIFETIME = 3600

DEFAULT_CONNECTIVITY_PROXY_URL = "http://connectivity-proxy.kyma-system.svc.cluster.local:20003"

USER_AGENT = "OData-Gateway/1.0"

# Tenant query parameter understood by SAP Gateway
SAP_CLIENT_PARAM = "sap-client"

# Default backend services (name -> base service path)
DEFAULT_SERVICES = {
    "businesspartner": "/sap/opu/odata/sap/API_BUSINESS_PARTNER",
    "glaccount": "/sap/opu/odata/sap/C_GLACCOUNTBALANCE_CDS",
}

# Schema summary rendering
SCHEMA_PROPERTY_PREVIEW = 5
SCHEMA_ASSOCIATION_PREVIEW = 10

# Result rendering
DEFAULT_MAX_RESULTS = 10
RESULT_FIELD_PREVIEW = 5

# Error responses get at most this much schema text appended
SCHEMA_EXCERPT_LIMIT = 3000

# Sessions idle longer than this are dropped from schema tracking
DEFAULT_SESSION_TTL = 3600

# Validator: more expanded navigations than this triggers a warning
MAX_EXPANDED_NAVIGATIONS = 2

# Restriction identifiers understood by the validator
RESTRICTION_SELECT_WITH_EXPAND = "select_with_expand"
RESTRICTION_NESTED_EXPAND_OPTIONS = "nested_expand_options"
RESTRICTION_ANY_LAMBDA = "any_lambda"
RESTRICTION_EXPAND_BREADTH = "expand_breadth"

ALL_RESTRICTIONS = (
    RESTRICTION_SELECT_WITH_EXPAND,
    RESTRICTION_NESTED_EXPAND_OPTIONS,
    RESTRICTION_ANY_LAMBDA,
    RESTRICTION_EXPAND_BREADTH,
)

# Navigation property -> entity set that can be queried directly
# (Business Partner API naming).
NAVIGATION_ENTITY_SETS = {
    "to_BusinessPartnerAddress": "A_BusinessPartnerAddress",
    "to_BusinessPartnerBank": "A_BusinessPartnerBank",
    "to_BusinessPartnerRole": "A_BusinessPartnerRole",
    "to_BusinessPartnerTaxNumber": "A_BusinessPartnerTaxNumber",
    "to_BPContactToAddress": "A_AddressEmailAddress",
    "to_EmailAddress": "A_AddressEmailAddress",
    "to_PhoneNumber": "A_AddressPhoneNumber",
    "to_FaxNumber": "A_AddressFaxNumber",
    "to_BPContactToFuncAndDept": "A_BPContactToFuncAndDept",
    "to_BuPaIdentification": "A_BuPaIdentification",
    "to_BuPaIndustry": "A_BuPaIndustry",
    "to_BusinessPartnerRating": "A_BusinessPartnerRating",
    "to_BPFinancialServicesReporting": "A_BPFinancialServicesReporting",
}

# Backend error fragments that indicate a wrong entity set or property name
SCHEMA_LOOKUP_ERROR_MARKERS = (
    "not found",
    "invalid",
    "does not exist",
    "property",
)
