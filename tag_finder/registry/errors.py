"""Exceptions raised while talking to a Docker Registry V2 API."""

from __future__ import annotations


class TagFinderError(Exception):
    """Base class for all tag-finder errors."""


class InvalidReference(TagFinderError, ValueError):
    """Raised when an image reference cannot be resolved."""


class AuthError(TagFinderError):
    """Raised when a bearer token cannot be obtained."""


class AuthHeaderMalformed(AuthError):
    """Raised when a ``WWW-Authenticate`` challenge cannot be used."""


class TokenRequestFailed(AuthError):
    """Raised when the token endpoint does not hand out a token."""


class RegistryError(TagFinderError):
    """Raised when a registry API call returns an unexpected response.

    Attributes:
        status: HTTP status code of the response (``None`` if not applicable).
        url: The requested URL.
    """

    def __init__(self, message: str, *, status: int | None = None, url: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class MissingDigestHeader(RegistryError):
    """Raised when a manifest response carries no content digest header."""


class TransportError(TagFinderError):
    """Raised when an HTTP request fails before a response is received."""


class TagCheckError(TagFinderError):
    """Raised for a tag whose lookup failed for an unexpected reason."""
