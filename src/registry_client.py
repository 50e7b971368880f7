"""
Registry Client - Docker Registry HTTP API v2 tag listing over aiohttp.

Handles the token challenge flow (``WWW-Authenticate: Bearer realm=...``),
basic auth challenges and ``Link`` header pagination.
"""

import base64
import logging
import re
from typing import Dict, Iterable, List, Optional
from urllib.parse import urljoin

import aiohttp

from credentials import Authenticator, BasicAuthenticator, BearerAuthenticator
from errors import RegistryUnavailable
from registry import ImageReference, TagLister

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000
DEFAULT_USER_AGENT = "image-reflector/0.1.0"

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_NEXT_LINK = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')


def parse_challenge(header: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse a WWW-Authenticate header.

    Example:
        ``Bearer realm="https://auth.docker.io/token",service="registry.docker.io"``
        parses to ``{"scheme": "bearer", "realm": ..., "service": ...}``.

    Returns:
        The challenge parameters with a lowercased ``scheme`` key, or None if
        the header is empty.
    """
    if not header:
        return None
    scheme, _, params = header.strip().partition(" ")
    challenge = {key: value for key, value in _CHALLENGE_PARAM.findall(params)}
    challenge["scheme"] = scheme.lower()
    return challenge


def next_page_url(link_header: Optional[str], current_url: str) -> Optional[str]:
    """Absolute URL of the next page from a ``Link`` header, if there is one."""
    if not link_header:
        return None
    match = _NEXT_LINK.search(link_header)
    if not match:
        return None
    return urljoin(current_url, match.group(1))


def _basic_header(authenticator: BasicAuthenticator) -> str:
    username, password = authenticator.credentials()
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {encoded}"


class RegistryClient(TagLister):
    """Lists repository tags from any Registry v2 compatible registry."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        insecure_registries: Iterable[str] = (),
        page_size: int = DEFAULT_PAGE_SIZE,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._session = session
        self._owns_session = session is None
        self.insecure_registries = set(insecure_registries)
        self.page_size = page_size
        self.user_agent = user_agent

    async def connect(self) -> None:
        """Create the HTTP session if one was not supplied."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.user_agent}
            )
            logger.info("Registry client session opened")

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            logger.info("Registry client session closed")

    def base_url(self, registry: str) -> str:
        """Scheme and host for a registry; local and insecure ones use http."""
        host = registry.split(":")[0]
        if (
            registry in self.insecure_registries
            or host in ("localhost", "127.0.0.1")
            or host.endswith(".local")
        ):
            return f"http://{registry}"
        return f"https://{registry}"

    async def list_tags(
        self, ref: ImageReference, authenticator: Optional[Authenticator] = None
    ) -> List[str]:
        """
        Fetch every tag of the repository, following pagination.

        Raises:
            RegistryUnavailable: On an error status or an unreadable body.
            aiohttp.ClientError: On transport failures.
        """
        if self._session is None:
            await self.connect()

        url: Optional[str] = (
            f"{self.base_url(ref.registry)}/v2/{ref.repository}/tags/list"
            f"?n={self.page_size}"
        )
        headers: Dict[str, str] = {}
        challenged = False
        tags: List[str] = []

        while url:
            async with self._session.get(url, headers=headers) as resp:
                if resp.status == 401 and not challenged:
                    challenged = True
                    headers = await self._authorize(
                        ref, authenticator, resp.headers.get("WWW-Authenticate")
                    )
                    continue

                if resp.status >= 400:
                    body = await resp.text()
                    raise RegistryUnavailable(
                        ref.canonical_name,
                        f"unexpected status code {resp.status}: {body[:200].strip()}",
                        status=resp.status,
                    )

                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise RegistryUnavailable(
                        ref.canonical_name, f"invalid tag list response: {e}"
                    )

                if not isinstance(payload, dict):
                    raise RegistryUnavailable(
                        ref.canonical_name, "invalid tag list response: not an object"
                    )
                tags.extend(payload.get("tags") or [])
                url = next_page_url(resp.headers.get("Link"), url)

        return tags

    async def _authorize(
        self,
        ref: ImageReference,
        authenticator: Optional[Authenticator],
        header: Optional[str],
    ) -> Dict[str, str]:
        """Answer an authentication challenge, returning the headers to retry with."""
        challenge = parse_challenge(header)
        if challenge is None:
            raise RegistryUnavailable(
                ref.canonical_name, "unauthorized with no challenge", status=401
            )

        if challenge["scheme"] == "basic":
            if not isinstance(authenticator, BasicAuthenticator):
                raise RegistryUnavailable(
                    ref.canonical_name,
                    "registry requires basic auth but no credentials were given",
                    status=401,
                )
            return {"Authorization": _basic_header(authenticator)}

        if challenge["scheme"] != "bearer":
            raise RegistryUnavailable(
                ref.canonical_name,
                f"unsupported auth scheme {challenge['scheme']!r}",
                status=401,
            )

        if isinstance(authenticator, BearerAuthenticator):
            return {"Authorization": f"Bearer {authenticator.token}"}

        token = await self._fetch_token(ref, authenticator, challenge)
        return {"Authorization": f"Bearer {token}"}

    async def _fetch_token(
        self,
        ref: ImageReference,
        authenticator: Optional[Authenticator],
        challenge: Dict[str, str],
    ) -> str:
        realm = challenge.get("realm")
        if not realm:
            raise RegistryUnavailable(
                ref.canonical_name, "bearer challenge has no realm", status=401
            )

        params = {"scope": f"repository:{ref.repository}:pull"}
        if challenge.get("service"):
            params["service"] = challenge["service"]

        headers = {}
        if isinstance(authenticator, BasicAuthenticator):
            headers["Authorization"] = _basic_header(authenticator)

        async with self._session.get(realm, params=params, headers=headers) as resp:
            if resp.status >= 400:
                raise RegistryUnavailable(
                    ref.canonical_name,
                    f"token request to {realm} failed with status {resp.status}",
                    status=resp.status,
                )
            try:
                payload = await resp.json(content_type=None)
            except ValueError as e:
                raise RegistryUnavailable(
                    ref.canonical_name, f"invalid token response: {e}"
                )

        token = (payload or {}).get("token") or (payload or {}).get("access_token")
        if not token:
            raise RegistryUnavailable(
                ref.canonical_name, "token response did not contain a token"
            )
        logger.debug(f"Obtained registry token for {ref.canonical_name}")
        return token
