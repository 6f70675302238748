"""Provider protocol: the boundary between the engine and a cloud API.

A provider executes per-node CRUD calls with fully resolved attributes and
reports realized attributes back. It never sees references or UNKNOWN values.
"""

from typing import Optional, Protocol, runtime_checkable


class ProviderError(Exception):
    """Non-retryable API error (authorization, quota, invalid parameter).

    Attributes:
        code: Short machine-readable error code (e.g. 'InvalidParameter')
        message: Human-readable detail
    """

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class TransientProviderError(ProviderError):
    """Retryable API error (throttling, network hiccup)."""


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider implementations.

    All attribute dicts are plain JSON-compatible values. ``create`` and
    ``update`` return the full realized attribute set (declared + computed);
    ``read`` returns None when the resource no longer exists.
    """
    name: str

    def read_data(self, type_name: str, attributes: dict) -> dict:
        """Resolve a data source against the live environment."""

    def create(self, type_name: str, attributes: dict) -> dict:
        """Create a resource and return its realized attributes (including 'id')."""

    def read(self, type_name: str, resource_id: str) -> Optional[dict]:
        """Read current attributes of a resource, None if it is gone."""

    def update(self, type_name: str, resource_id: str, attributes: dict) -> dict:
        """Update a resource in place and return its realized attributes."""

    def delete(self, type_name: str, resource_id: str) -> None:
        """Delete a resource. Deleting a missing resource is not an error."""

    def is_ready(self, type_name: str, resource_id: str) -> bool:
        """True once the resource has stabilized after create/update."""
