"""Registry manifest digest lookup over the v2 HTTP API."""

from __future__ import annotations

import hashlib
import logging

import httpx

from windbag.docker.image import DEFAULT_REGISTRY, ImageReference
from windbag.docker.registry_auth import RegistryAuthStore
from windbag.shared.exceptions import RegistryError

logger = logging.getLogger(__name__)

MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+prettyjws"
MANIFEST_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
)

# Docker Hub serves the registry API from a different host than its index.
_API_HOSTS = {DEFAULT_REGISTRY: "registry-1.docker.io", "index.docker.io": "registry-1.docker.io"}


def parse_auth_header(value: str) -> dict[str, str]:
    """Parse ``Bearer realm="...",service="...",scope="..."`` into a dict."""
    _, _, params = value.partition(" ")
    parsed: dict[str, str] = {}
    for item in params.split(","):
        key, sep, val = item.partition("=")
        if sep:
            parsed[key.strip()] = val.strip('", ')
    return parsed


class ImageDigestClient:
    """Resolve ``image:tag`` to its content digest."""

    def __init__(
        self,
        *,
        auths: RegistryAuthStore | None = None,
        insecure: bool = True,
        timeout: int = 30,
        v1_only: bool = False,
    ) -> None:
        self._auths = auths or RegistryAuthStore()
        self._insecure = insecure
        self._timeout = timeout
        self._v1_only = v1_only

    def manifest_url(self, ref: ImageReference) -> str:
        host = _API_HOSTS.get(ref.registry, ref.registry)
        return f"https://{host}/v2/{ref.repository}/manifests/{ref.tag}"

    def _headers(self) -> list[tuple[str, str]]:
        if self._v1_only:
            return [("Accept", MANIFEST_V1)]
        return [("Accept", accept) for accept in MANIFEST_TYPES]

    async def get_digest(self, image: str, *, token: str | None = None) -> str:
        """Return the ``sha256:...`` digest of ``image``.

        Uses basic auth from the credential store when one matches the
        image's registry, and follows a ``Bearer`` challenge once.

        Args:
            image: Image reference, e.g. ``thxcode/logtail-windows:v1.0.10-1809``.
            token: Pre-issued bearer token to send instead of basic auth.

        Returns:
            The ``Docker-Content-Digest`` header, or the sha256 of the manifest body.

        Raises:
            RegistryError: If any request fails or the registry refuses the lookup.
        """
        ref = ImageReference.parse(image)
        url = self.manifest_url(ref)
        headers = httpx.Headers(self._headers())
        auth: httpx.BasicAuth | None = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            cred = self._auths.lookup(ref.registry)
            if cred is not None and cred.username and cred.password:
                auth = httpx.BasicAuth(cred.username, cred.password)

        try:
            async with httpx.AsyncClient(timeout=self._timeout, verify=not self._insecure) as client:
                resp = await client.get(url, headers=headers, auth=auth)
                challenge = resp.headers.get("www-authenticate", "")
                if resp.status_code == 401 and challenge.startswith("Bearer"):
                    bearer = await self._fetch_token(client, parse_auth_header(challenge), auth)
                    headers["Authorization"] = f"Bearer {bearer}"
                    resp = await client.get(url, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise RegistryError(
                f"requested image manifest, but got {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RegistryError(f"failed to do image manifest request: {exc}") from exc

        digest = resp.headers.get("Docker-Content-Digest")
        if not digest:
            digest = f"sha256:{hashlib.sha256(resp.content).hexdigest()}"
        logger.info("resolved %s to %s", image, digest)
        return digest

    async def _fetch_token(
        self, client: httpx.AsyncClient, challenge: dict[str, str], auth: httpx.BasicAuth | None
    ) -> str:
        realm = challenge.get("realm")
        if not realm:
            raise RegistryError("registry bearer challenge has no realm")
        params = {k: challenge[k] for k in ("service", "scope") if k in challenge}
        resp = await client.get(realm, params=params, auth=auth)
        if resp.status_code != 200:
            raise RegistryError(f"failed to do registry token request {resp.status_code}: {resp.text[:200]}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RegistryError(f"error parsing token response body: {exc}") from exc
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise RegistryError("registry token response carries no token")
        return str(token)
