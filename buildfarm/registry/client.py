"""Container registry client for buildfarm."""

import logging
import re
from typing import Any, Optional

import aiodocker
import httpx

from buildfarm.registry.reference import ImageReference

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

_AUTH_MARKERS = ("unauthorized", "authentication required", "denied", "forbidden", "401", "403")
_TRANSIENT_MARKERS = (
    "timeout", "timed out", "connection", "eof", "reset by peer",
    "500", "502", "503", "504", "temporarily", "try again",
)
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """Raised when a registry operation fails permanently."""

    pass


class RegistryAuthError(RegistryError):
    """Raised when the registry rejects the credentials."""

    pass


class TransientRegistryError(RegistryError):
    """Raised when a registry operation failed but may succeed on retry."""

    pass


def classify_message(message: str) -> type[RegistryError]:
    """Map a registry or daemon error message to an error class."""
    lowered = message.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return RegistryAuthError
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientRegistryError
    return RegistryError


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Split a WWW-Authenticate header into its scheme and parameters."""
    scheme, _, params = header.partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(params))


class RegistryClient:
    """
    Tag and push local images through the Docker daemon, and resolve
    published tags through the registry HTTP API.
    """

    def __init__(
        self,
        docker: Optional[aiodocker.Docker] = None,
        http: Optional[httpx.AsyncClient] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30,
    ):
        """
        Initialize registry client.

        Args:
            docker: Docker daemon client (created on first use if omitted)
            http: HTTP client for the registry API (created if omitted)
            username: Registry username
            password: Registry password or access token
            timeout: Seconds before any single request is abandoned
        """
        self._docker = docker
        self._http = http or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self.username = username
        self.password = password
        self.timeout = timeout
        self._auth_headers: dict[str, dict[str, str]] = {}

    @property
    def docker(self) -> aiodocker.Docker:
        if self._docker is None:
            self._docker = aiodocker.Docker()
        return self._docker

    async def close(self) -> None:
        """Release the daemon and HTTP connections."""
        await self._http.aclose()
        if self._docker is not None:
            await self._docker.close()

    @property
    def _basic_auth(self) -> Optional[httpx.BasicAuth]:
        if self.username and self.password:
            return httpx.BasicAuth(self.username, self.password)
        return None

    # Local daemon

    async def local_image_id(self, source: str) -> Optional[str]:
        """
        Return the local image id, or None if the image was never built.

        Raises:
            TransientRegistryError: If the daemon cannot be reached
        """
        try:
            info = await self.docker.images.inspect(source)
        except aiodocker.exceptions.DockerError as e:
            if e.status == 404:
                return None
            raise TransientRegistryError(f"Failed to inspect local image {source}: {e}") from e
        return info.get("Id")

    async def local_repo_digest(self, source: str, ref: ImageReference) -> Optional[str]:
        """Digest recorded locally for the target repository, if the image was pushed before."""
        try:
            info = await self.docker.images.inspect(source)
        except aiodocker.exceptions.DockerError:
            return None
        for repo_digest in info.get("RepoDigests") or []:
            name, _, digest = repo_digest.partition("@")
            if name == ref.name:
                return digest
        return None

    async def tag(self, source: str, ref: ImageReference) -> None:
        """
        Tag a local image with the target reference.

        Raises:
            RegistryError: If the image cannot be tagged
        """
        try:
            await self.docker.images.tag(source, ref.name, tag=ref.tag)
        except aiodocker.exceptions.DockerError as e:
            raise RegistryError(f"Failed to tag {source} as {ref}: {e}") from e
        logger.debug(f"Tagged {source} as {ref}")

    async def push(self, ref: ImageReference) -> Optional[str]:
        """
        Push a tagged image.

        Returns:
            Digest reported by the daemon, if any

        Raises:
            RegistryAuthError: If the registry rejects the credentials
            TransientRegistryError: If the push failed for a retryable reason
            RegistryError: If the push failed permanently
        """
        auth = None
        if self.username and self.password:
            auth = {
                "username": self.username,
                "password": self.password,
                "serveraddress": ref.registry,
            }

        try:
            events: list[dict[str, Any]] = await self.docker.images.push(
                ref.name, tag=ref.tag, auth=auth, timeout=self.timeout
            )
        except aiodocker.exceptions.DockerError as e:
            error_class = RegistryAuthError if e.status in (401, 403) else classify_message(str(e))
            if e.status >= 500 and error_class is RegistryError:
                error_class = TransientRegistryError
            raise error_class(f"Failed to push {ref}: {e}") from e

        digest = None
        for event in events or []:
            if "error" in event:
                message = event.get("error") or str(event.get("errorDetail"))
                raise classify_message(message)(f"Failed to push {ref}: {message}")
            aux = event.get("aux") or {}
            if aux.get("Digest"):
                digest = aux["Digest"]

        logger.info(f"Pushed {ref}{f' ({digest})' if digest else ''}")
        return digest

    # Registry HTTP API

    async def authenticate(self, ref: ImageReference, actions: str = "pull,push") -> None:
        """
        Obtain credentials for the repository.

        Raises:
            RegistryAuthError: If the registry rejects the credentials
            TransientRegistryError: If the registry cannot be reached
        """
        base = f"https://{ref.api_host}/v2/"
        response = await self._get(base)
        if response.status_code < 400:
            self._auth_headers[ref.registry] = {}
            return
        if response.status_code != 401:
            raise self._status_error(response, f"probe {ref.registry}")

        scheme, params = parse_challenge(response.headers.get("www-authenticate", ""))
        if scheme == "bearer" and params.get("realm"):
            token = await self._fetch_token(params, f"repository:{ref.repository}:{actions}")
            self._auth_headers[ref.registry] = {"Authorization": f"Bearer {token}"}
            return

        if self._basic_auth is None:
            raise RegistryAuthError(f"Registry {ref.registry} requires credentials")
        response = await self._get(base, auth=self._basic_auth)
        if response.status_code in (401, 403):
            raise RegistryAuthError(f"Registry {ref.registry} rejected the credentials")
        if response.status_code >= 400:
            raise self._status_error(response, f"authenticate to {ref.registry}")
        self._auth_headers[ref.registry] = {
            "Authorization": response.request.headers.get("Authorization", "")
        }

    async def _fetch_token(self, challenge: dict[str, str], scope: str) -> str:
        params = {"scope": scope}
        if challenge.get("service"):
            params["service"] = challenge["service"]
        response = await self._get(challenge["realm"], params=params, auth=self._basic_auth)
        if response.status_code in (401, 403):
            raise RegistryAuthError(f"Token service {challenge['realm']} rejected the credentials")
        if response.status_code >= 400:
            raise self._status_error(response, f"fetch token from {challenge['realm']}")
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryError(f"Token service {challenge['realm']} returned no token")
        return token

    async def resolve_digest(self, ref: ImageReference) -> Optional[str]:
        """
        Resolve a tag to its manifest digest.

        Returns:
            The digest, or None if the tag does not exist

        Raises:
            RegistryAuthError: If the registry rejects the credentials
            TransientRegistryError: If the registry cannot be reached
        """
        url = f"https://{ref.api_host}/v2/{ref.repository}/manifests/{ref.tag}"
        headers = {"Accept": MANIFEST_MEDIA_TYPES}

        if ref.registry not in self._auth_headers:
            await self.authenticate(ref, actions="pull")
        response = await self._head(url, headers={**headers, **self._auth_headers[ref.registry]})

        if response.status_code == 401:
            # Token expired; authenticate once more
            await self.authenticate(ref, actions="pull")
            response = await self._head(url, headers={**headers, **self._auth_headers[ref.registry]})
            if response.status_code in (401, 403):
                raise RegistryAuthError(f"Registry {ref.registry} denied access to {ref.repository}")

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise self._status_error(response, f"resolve {ref}")
        return response.headers.get("docker-content-digest")

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.get(url, timeout=self.timeout, **kwargs)
        except httpx.TransportError as e:
            raise TransientRegistryError(f"GET {url} failed: {e}") from e

    async def _head(self, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.head(url, timeout=self.timeout, **kwargs)
        except httpx.TransportError as e:
            raise TransientRegistryError(f"HEAD {url} failed: {e}") from e

    @staticmethod
    def _status_error(response: httpx.Response, action: str) -> RegistryError:
        message = f"Failed to {action}: HTTP {response.status_code}"
        if response.status_code in (401, 403):
            return RegistryAuthError(message)
        if response.status_code >= 500 or response.status_code == 429:
            return TransientRegistryError(message)
        return RegistryError(message)
