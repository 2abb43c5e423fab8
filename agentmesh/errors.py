"""
Exception taxonomy shared by every AgentMesh module.

Recoverable in a partially-connected network:
    MeshTimeoutError, TransportError — reported per operation, never fatal
Terminal for the operation that raised them:
    FormatError, IntegrityError — no partial result is ever returned
"""

from __future__ import annotations

from typing import Any


class MeshError(Exception):
    """Base class for AgentMesh errors."""


class ConfigurationError(MeshError):
    """A required secret, key or setting is missing or invalid."""


class FormatError(MeshError, ValueError):
    """Malformed packed blob or record encoding."""


class IntegrityError(MeshError):
    """Authentication tag did not verify (tampering, wrong key or wrong IV)."""


class NotFoundError(MeshError, LookupError):
    """Content identifier is absent from the backend."""


class MeshTimeoutError(MeshError, TimeoutError):
    """An external call exceeded its deadline."""


class TransportError(MeshError):
    """A peer connection attempt or transport query failed."""


class ContentStoreError(MeshError):
    """The content-addressed backend rejected a request."""


class GatewayError(MeshError):
    """Non-2xx response from the gateway HTTP API."""

    def __init__(self, message: str, status: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class BatchError(MeshError):
    """One or more elements of a batch operation failed.

    Attributes:
        errors: Mapping of input index -> exception for every failed element.
        results: Full result list in input order; failed slots hold the exception.
    """

    def __init__(self, errors: dict[int, BaseException], results: list[Any]) -> None:
        first = min(errors)
        super().__init__(
            f"{len(errors)} of {len(results)} batch elements failed "
            f"(first at index {first}: {errors[first]!r})"
        )
        self.errors = errors
        self.results = results
