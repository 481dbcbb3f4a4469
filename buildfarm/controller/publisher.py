"""Image publishing for buildfarm."""

import logging
from dataclasses import dataclass
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from buildfarm.controller.errors import PublishError
from buildfarm.registry.client import (
    RegistryAuthError,
    RegistryClient,
    RegistryError,
    TransientRegistryError,
)
from buildfarm.registry.reference import ImageReference

logger = logging.getLogger(__name__)


class DigestNotVisibleError(TransientRegistryError):
    """The pushed tag does not resolve yet."""

    pass


@dataclass(frozen=True)
class PublishedImage:
    """An image that resolves in the registry."""

    reference: str
    digest: str

    @property
    def pinned(self) -> str:
        return ImageReference.parse(self.reference).pinned(self.digest)


class ImagePublisher:
    """Ensures the workload image is pushed and resolvable before deployment."""

    def __init__(
        self,
        registry: RegistryClient,
        max_attempts: int = 5,
        backoff_min: float = 1,
        backoff_max: float = 30,
        dry_run: bool = False,
    ):
        """
        Initialize image publisher.

        Args:
            registry: Registry client
            max_attempts: Attempts for transient failures
            backoff_min: Smallest wait between attempts in seconds
            backoff_max: Largest wait between attempts in seconds
            dry_run: If True, resolve only and never tag or push
        """
        self.registry = registry
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.dry_run = dry_run
        self._published: dict[str, PublishedImage] = {}

    def cached(self, reference: str) -> Optional[PublishedImage]:
        return self._published.get(reference)

    async def ensure_published(self, reference: str, source: Optional[str] = None) -> PublishedImage:
        """
        Publish a local build under the reference and verify it resolves.

        Args:
            reference: Target reference in the registry
            source: Local image to publish; None if the reference is already published

        Returns:
            PublishedImage with the verified digest

        Raises:
            PublishError: permanent=True for auth failures, missing builds and
                other non-retryable errors; permanent=False when transient
                failures exhausted the retry budget
        """
        cached = self._published.get(reference)
        if cached is not None:
            return cached

        try:
            ref = ImageReference.parse(reference)
        except ValueError as e:
            raise PublishError(str(e), entity=f"Image/{reference}", permanent=True) from e

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type(TransientRegistryError),
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    published = await self._publish_once(ref, reference, source)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise PublishError(
                f"Gave up after {self.max_attempts} attempts: {last}",
                entity=f"Image/{reference}",
                last_state="push-retrying",
                permanent=False,
            ) from last
        except RegistryAuthError as e:
            logger.error(f"Registry rejected credentials for {reference}: {e}")
            raise PublishError(
                f"Authentication failed: {e}",
                entity=f"Image/{reference}",
                last_state="auth",
                permanent=True,
            ) from e
        except RegistryError as e:
            raise PublishError(
                str(e),
                entity=f"Image/{reference}",
                last_state="push",
                permanent=True,
            ) from e

        self._published[reference] = published
        return published

    async def _publish_once(
        self, ref: ImageReference, reference: str, source: Optional[str]
    ) -> PublishedImage:
        if source is None:
            digest = await self.registry.resolve_digest(ref)
            if digest is None:
                raise RegistryError(f"Image {reference} does not exist in the registry")
            logger.info(f"Image {reference} is published ({digest})")
            return PublishedImage(reference=reference, digest=digest)

        if await self.registry.local_image_id(source) is None:
            raise RegistryError(f"Local image {source} has not been built")

        await self.registry.authenticate(ref)

        remote = await self.registry.resolve_digest(ref)
        local = await self.registry.local_repo_digest(source, ref)
        if remote is not None and remote == local:
            logger.info(f"Image {reference} already published ({remote})")
            return PublishedImage(reference=reference, digest=remote)

        if self.dry_run:
            logger.info(f"[DRY-RUN] Would tag {source} as {reference} and push")
            return PublishedImage(reference=reference, digest=remote or "sha256:dry-run")

        await self.registry.tag(source, ref)
        pushed = await self.registry.push(ref)

        # Read-after-write: the tag must resolve before anyone deploys it
        resolved = await self.registry.resolve_digest(ref)
        if resolved is None:
            raise DigestNotVisibleError(f"Pushed {reference} but the tag does not resolve yet")
        if pushed is not None and resolved != pushed:
            raise DigestNotVisibleError(
                f"Pushed {reference} as {pushed} but the registry serves {resolved}"
            )

        logger.info(f"Published {source} as {reference} ({resolved})")
        return PublishedImage(reference=reference, digest=resolved)

    def invalidate(self, reference: str) -> None:
        """Forget a published image so the next call republishes it."""
        self._published.pop(reference, None)
