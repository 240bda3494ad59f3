"""
Exception hierarchy for the OData gateway.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigurationError(GatewayError):
    """Required connection settings are missing or inconsistent."""


class ODataTransportError(GatewayError):
    """
    A backend, proxy or broker call failed.

    Carries enough context (entity set, URL, status) for the caller to
    diagnose the failure without re-running it.
    """

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None,
                 entity_set: Optional[str] = None, body: Optional[str] = None):
        self.message = message
        self.url = url
        self.status = status
        self.entity_set = entity_set
        self.body = body or ""
        super().__init__(self._compose())

    def _compose(self) -> str:
        parts = [self.message]
        if self.entity_set:
            parts.append(f"entity set: {self.entity_set}")
        if self.status is not None:
            parts.append(f"status: {self.status}")
        if self.url:
            parts.append(f"url: {self.url}")
        return " | ".join(parts)

    def with_context(self, entity_set: Optional[str] = None, url: Optional[str] = None) -> "ODataTransportError":
        """Return a copy enriched with the entity set and URL of the failing call."""
        return ODataTransportError(
            self.message,
            url=url or self.url,
            status=self.status,
            entity_set=entity_set or self.entity_set,
            body=self.body,
        )


class MetadataParseError(GatewayError):
    """The $metadata document could not be turned into a schema."""
