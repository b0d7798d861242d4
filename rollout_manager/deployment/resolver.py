"""
Image reference resolution.

Pins a human-supplied tag to the digest the registry serves at resolution
time, so every later stage deploys exactly the image that was inspected.
"""

import logging

from rollout_manager.cluster.protocols import RegistryLookup
from rollout_manager.docker_registry import is_digest
from rollout_manager.errors import RegistryUnavailable, UnresolvableReference
from rollout_manager.utils.log_sanitizer import sanitize_image_ref
from rollout_manager.utils.retry import retry_transient

logger = logging.getLogger(__name__)


class ImageReferenceResolver:
    """Turns ``image`` + ``tag`` into ``image@sha256:...``."""

    def __init__(self, registry: RegistryLookup, retries: int = 3, retry_delay: float = 2.0):
        self.registry = registry
        self.retries = retries
        self.retry_delay = retry_delay

    async def resolve(self, image: str, tag: str) -> str:
        """
        Resolve a tag to a fully-qualified, digest-pinned reference.

        Raises:
            UnresolvableReference: Registry unreachable or tag missing
        """
        image = image.rstrip("/")
        if "@" in image:
            # Already pinned; nothing to look up
            return image
        if is_digest(tag):
            return f"{image}@{tag}"

        safe_ref = sanitize_image_ref(f"{image}:{tag}")
        try:
            digest = await retry_transient(
                lambda: self.registry.resolve_reference(image, tag),
                description=f"resolve {safe_ref}",
                retries=self.retries,
                delay=self.retry_delay,
                transient=(RegistryUnavailable,),
                exhausted=RegistryUnavailable,
            )
        except RegistryUnavailable as e:
            raise UnresolvableReference(image, tag, f"registry unreachable ({e})") from e

        if not digest:
            raise UnresolvableReference(image, tag, "tag not found")
        if not is_digest(digest):
            raise UnresolvableReference(image, tag, f"registry returned invalid digest {digest!r}")

        reference = f"{image}@{digest}"
        logger.info(f"Pinned {safe_ref} to {reference}")
        return reference
