"""Bearer token handshake for the Docker Registry."""

from __future__ import annotations

import logging
import threading

import requests

from tag_finder.registry.errors import AuthHeaderMalformed, TokenRequestFailed

logger = logging.getLogger(__name__)


def parse_www_authenticate(header: str) -> dict[str, str]:
    """Parse a ``Bearer realm=...,service=...,scope=...`` header into a dict.

    Raises:
        AuthHeaderMalformed: If the scheme is not ``Bearer`` or no realm is given.
    """
    scheme, _, rest = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise AuthHeaderMalformed(f"Unsupported auth scheme: {scheme or header!r}")

    params: dict[str, str] = {}
    for part in rest.split(","):
        part = part.strip()
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        params[key.strip()] = value.strip().strip('"')

    if not params.get("realm"):
        raise AuthHeaderMalformed(f"No realm in auth header: {header!r}")
    return params


class TokenCache:
    """Obtain and hold one bearer token for the lifetime of a client.

    The token is fetched lazily from the first 401 challenge and is never
    refreshed. Concurrent callers may each fetch a token on a cold cache;
    the last one written wins.

    Args:
        session: The session used to reach the token endpoint.
        timeout: HTTP request timeout in seconds.
    """

    def __init__(self, session: requests.Session, *, timeout: float = 30) -> None:
        self._session = session
        self.timeout = timeout
        self._token: str | None = None
        self._lock = threading.Lock()

    @property
    def token(self) -> str | None:
        """Return the cached token, if any."""
        with self._lock:
            return self._token

    def ensure_token(self, challenge: str, repository: str) -> str:
        """Return the cached token, fetching one from *challenge* if needed.

        Args:
            challenge: Value of the ``WWW-Authenticate`` response header.
            repository: Repository path used to build a pull scope when the
                challenge carries none.

        Raises:
            AuthHeaderMalformed: If the challenge cannot be parsed.
            TokenRequestFailed: If the token endpoint does not return a token.
        """
        cached = self.token
        if cached:
            return cached

        params = parse_www_authenticate(challenge)
        realm = params["realm"]
        query: dict[str, str] = {}
        if "service" in params:
            query["service"] = params["service"]
        query["scope"] = params.get("scope") or f"repository:{repository}:pull"

        logger.debug("Requesting token: realm=%s params=%s", realm, query)
        token = self._fetch(realm, query)

        with self._lock:
            self._token = token
        return token

    def _fetch(self, realm: str, query: dict[str, str]) -> str:
        try:
            resp = self._session.get(realm, params=query, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TokenRequestFailed(f"Token request to {realm} failed: {exc}") from exc

        if resp.status_code != 200:
            raise TokenRequestFailed(
                f"Token request failed with status {resp.status_code}"
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise TokenRequestFailed(f"Invalid token response from {realm}") from exc

        if not isinstance(data, dict):
            raise TokenRequestFailed(f"Invalid token response from {realm}")
        token = data.get("token") or data.get("access_token")
        if not token:
            raise TokenRequestFailed(f"No token in response from {realm}")
        if not isinstance(token, str):
            raise TokenRequestFailed(f"Token from {realm} is not a string")
        try:
            # Header values go out latin-1 encoded.
            token.encode("latin-1")
        except UnicodeEncodeError as exc:
            raise TokenRequestFailed(f"Token from {realm} cannot be sent in a header") from exc
        return token
