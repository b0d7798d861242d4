"""
Docker registry client for image digest resolution.

Talks to the Registry HTTP API v2 to resolve image tags to digests.
"""

import base64
import logging
from typing import Optional, Tuple

import httpx

from rollout_manager.errors import RegistryUnavailable
from rollout_manager.utils.log_sanitizer import sanitize_image_ref

logger = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "registry-1.docker.io"

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)


def parse_image_reference(image_ref: str) -> Tuple[str, str, str]:
    """
    Parse an image reference into registry, repository, and tag or digest.

    Args:
        image_ref: Full image reference

    Returns:
        Tuple of (registry, repository, tag_or_digest)
    """
    if "://" in image_ref:
        image_ref = image_ref.split("://", 1)[1]

    # A first path segment with a dot, a colon or "localhost" names a registry
    parts = image_ref.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        registry = parts[0]
        remainder = parts[1]
    else:
        registry = DOCKER_HUB_REGISTRY
        remainder = image_ref

    if "@" in remainder:
        repository, tag = remainder.split("@", 1)
    elif ":" in remainder.rsplit("/", 1)[-1]:
        repository, tag = remainder.rsplit(":", 1)
    else:
        repository = remainder
        tag = "latest"

    if registry == DOCKER_HUB_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    return registry, repository, tag


def is_digest(tag: str) -> bool:
    return tag.startswith("sha256:") and len(tag) == len("sha256:") + 64


class DockerRegistryClient:
    """Client for interacting with Docker registries."""

    def __init__(self, auth_token: Optional[str] = None, timeout: float = 30.0):
        """
        Initialize Docker registry client.

        Args:
            auth_token: Optional GitHub token for ghcr.io authentication
            timeout: Request timeout in seconds
        """
        self.auth_token = auth_token
        self._client = httpx.AsyncClient(timeout=timeout)

    async def resolve_reference(self, image: str, tag: str) -> Optional[str]:
        """
        Resolve ``image:tag`` to the digest the registry serves right now.

        Args:
            image: Registry coordinate (e.g. "ghcr.io/acme/breach-lookup")
            tag: Tag to resolve

        Returns:
            Digest (e.g. "sha256:abc123...") or None if the tag does not exist

        Raises:
            RegistryUnavailable: Registry unreachable, answering with a server error or
                returning a malformed token response
        """
        registry, repository, _ = parse_image_reference(image)
        safe_ref = sanitize_image_ref(f"{image}:{tag}")

        try:
            auth_header = await self._get_auth_header(registry, repository)

            headers = {"Accept": MANIFEST_ACCEPT}
            if auth_header:
                headers["Authorization"] = auth_header

            # HEAD returns the digest without counting against pull rate limits
            url = f"https://{registry}/v2/{repository}/manifests/{tag}"
            response = await self._client.head(url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Registry {registry} unreachable resolving {safe_ref}: {e}")
            raise RegistryUnavailable(f"Registry {registry} unreachable: {e}") from e

        if response.status_code == 200:
            digest = response.headers.get("Docker-Content-Digest")
            if digest:
                logger.info(f"Resolved {safe_ref} to {digest}")
                return str(digest)
            logger.warning(f"No digest header returned for {safe_ref}")
            return None

        if response.status_code in (401, 403, 404):
            # ghcr.io answers 401/403 for repositories the token cannot see
            logger.error(f"Tag not found for {safe_ref}: {response.status_code}")
            return None

        if response.status_code == 429 or response.status_code >= 500:
            raise RegistryUnavailable(
                f"Registry {registry} returned {response.status_code} for {safe_ref}"
            )

        logger.error(f"Unexpected registry response for {safe_ref}: {response.status_code}")
        return None

    async def _get_auth_header(self, registry: str, repository: str) -> Optional[str]:
        """
        Get authentication header for registry.

        Args:
            registry: Registry hostname
            repository: Repository name

        Returns:
            Authorization header value or None
        """
        if registry == "ghcr.io":
            token_url = f"https://ghcr.io/token?service=ghcr.io&scope=repository:{repository}:pull"
            headers = {}
            if self.auth_token:
                # GitHub accepts the PAT as Basic auth with any username
                auth_string = base64.b64encode(
                    f"{self.auth_token}:{self.auth_token}".encode()
                ).decode()
                headers["Authorization"] = f"Basic {auth_string}"
        elif registry == DOCKER_HUB_REGISTRY:
            token_url = (
                "https://auth.docker.io/token?service=registry.docker.io"
                f"&scope=repository:{repository}:pull"
            )
            headers = {}
        else:
            return None

        response = await self._client.get(token_url, headers=headers)
        if response.status_code == 200:
            try:
                payload = response.json()
            except ValueError as e:
                raise RegistryUnavailable(f"Malformed {registry} token response: {e}") from e
            docker_token = payload.get("token") if isinstance(payload, dict) else None
            if docker_token:
                return f"Bearer {docker_token}"
            logger.error(f"No token in {registry} token response")
        else:
            logger.error(f"Failed to get {registry} token: {response.status_code}")
        return None

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
