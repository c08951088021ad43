"""HTTP client for the Docker Registry V2 API."""

from __future__ import annotations

import logging
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter

from tag_finder.registry.auth import TokenCache
from tag_finder.registry.errors import (
    AuthHeaderMalformed,
    MissingDigestHeader,
    RegistryError,
    TransportError,
)
from tag_finder.registry.parser import ImageReference

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_WORKERS = 10

# Page size requested from the tag listing endpoint.
TAGS_PAGE_SIZE = 1000

DIGEST_HEADER = "Docker-Content-Digest"

# Manifest media types, in order of preference.
MANIFEST_MEDIA_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
)


class RegistryClient:
    """Client for interacting with a Docker Registry V2 API.

    One client holds one pooled HTTP session and one bearer token cache,
    and is safe to share between worker threads. Authentication is
    anonymous and happens transparently on the first 401 challenge.

    Args:
        timeout: HTTP request timeout in seconds.
        pool_size: Number of pooled connections kept per host. Should be at
            least the number of threads sharing the client.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        pool_size: int = DEFAULT_WORKERS,
    ) -> None:
        self.timeout = timeout
        self._session = requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)
        self.tokens = TokenCache(self._session, timeout=timeout)

    def close(self) -> None:
        """Release pooled connections."""
        self._session.close()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def list_tags(self, ref: ImageReference) -> list[str]:
        """Return every tag of the repository, following pagination.

        Tags are returned in the order the registry pages them.

        Raises:
            RegistryError: If a page cannot be fetched or decoded.
            AuthError: If the registry challenge cannot be satisfied.
            TransportError: If a request fails before a response arrives.
        """
        url: str | None = (
            f"{ref.registry_url}/v2/{ref.repository}/tags/list?n={TAGS_PAGE_SIZE}"
        )
        tags: list[str] = []
        pages = 0

        while url:
            resp = self._get(url, ref.repository)
            if resp.status_code != 200:
                raise RegistryError(
                    f"Registry returned {resp.status_code} for {url}: {resp.text[:200]}",
                    status=resp.status_code,
                    url=url,
                )
            try:
                page = resp.json().get("tags") or []
            except (ValueError, AttributeError) as exc:
                raise RegistryError(
                    f"Invalid tag list from {url}", status=resp.status_code, url=url
                ) from exc
            if not isinstance(page, list) or not all(isinstance(t, str) for t in page):
                raise RegistryError(
                    f"Invalid tag list from {url}", status=resp.status_code, url=url
                )

            tags.extend(page)
            pages += 1

            next_path = parse_link_header(resp.headers.get("Link", ""))
            url = urljoin(url, next_path) if next_path else None

        logger.debug("Listed %d tags in %d page(s) for %s", len(tags), pages, ref.repository)
        return tags

    def get_manifest_digest(self, ref: ImageReference, tag: str) -> str:
        """Return the manifest digest a tag points at.

        Only the response headers are used; the manifest body is never read.

        Raises:
            MissingDigestHeader: If the response carries no digest header.
            RegistryError: If the registry does not answer with 200.
            AuthError: If the registry challenge cannot be satisfied.
            TransportError: If the request fails before a response arrives.
        """
        url = f"{ref.registry_url}/v2/{ref.repository}/manifests/{tag}"
        resp = self._get(
            url,
            ref.repository,
            accept=", ".join(MANIFEST_MEDIA_TYPES),
            stream=True,
        )
        try:
            if resp.status_code != 200:
                raise RegistryError(
                    f"Registry returned {resp.status_code} for tag {tag}",
                    status=resp.status_code,
                    url=url,
                )
            digest = resp.headers.get(DIGEST_HEADER)
            if not digest:
                raise MissingDigestHeader(
                    f"No digest header for tag {tag}", status=resp.status_code, url=url
                )
            return digest
        finally:
            resp.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get(
        self,
        url: str,
        repository: str,
        *,
        accept: str | None = None,
        stream: bool = False,
    ) -> requests.Response:
        """GET *url*, answering one 401 challenge with a bearer token."""
        headers: dict[str, str] = {}
        if accept:
            headers["Accept"] = accept

        resp = self._request(url, headers, stream=stream)
        if resp.status_code == 401:
            challenge = resp.headers.get("WWW-Authenticate", "")
            resp.close()
            if not challenge:
                raise AuthHeaderMalformed(
                    f"Registry returned 401 without WWW-Authenticate header for {url}"
                )
            token = self.tokens.ensure_token(challenge, repository)
            resp = self._request(url, headers, token=token, stream=stream)

        return resp

    def _request(
        self,
        url: str,
        headers: dict[str, str],
        *,
        token: str | None = None,
        stream: bool = False,
    ) -> requests.Response:
        """Execute a single GET request, attaching the bearer token if available."""
        req_headers = {**headers}
        token = token or self.tokens.token
        if token:
            req_headers["Authorization"] = f"Bearer {token}"

        logger.debug("GET %s", url)
        try:
            return self._session.get(
                url, headers=req_headers, timeout=self.timeout, stream=stream
            )
        except requests.RequestException as exc:
            raise TransportError(f"GET {url} failed: {exc}") from exc


def parse_link_header(header: str) -> str:
    """Return the target of a ``rel="next"`` Link header, or an empty string.

    Example: ``</v2/repo/tags/list?n=100&last=tag99>; rel="next"``.
    """
    parts = header.split(";")
    if len(parts) < 2:
        return ""

    target = parts[0].strip()
    if not (target.startswith("<") and target.endswith(">")):
        return ""

    for param in parts[1:]:
        if param.strip() == 'rel="next"':
            return target[1:-1]
    return ""
