"""
Registry Gateway - image reference parsing and bounded tag listing.

Parsing follows the Docker reference grammar: ``[registry/]path[:tag][@digest]``
where the registry is only recognised when the first path component looks
like a host. Images without a registry live on Docker Hub, and single-component
Docker Hub repositories live under ``library/``.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import aiohttp

from credentials import Authenticator
from errors import (
    InvalidImageReference,
    RegistryError,
    RegistryTimeout,
    RegistryUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"
DEFAULT_SCAN_TIMEOUT = 10.0  # seconds

# Aliases of Docker Hub that normalise to DEFAULT_REGISTRY
DOCKER_HUB_ALIASES = {"docker.io", "registry-1.docker.io", DEFAULT_REGISTRY}

MAX_REPOSITORY_LENGTH = 255

_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^sha256:[a-f0-9]{64}$")
_REGISTRY = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9.-]*[a-zA-Z0-9])?|\[[0-9a-fA-F:]+\])(?::\d+)?$"
)


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference with every implied part made explicit."""

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def canonical_name(self) -> str:
        """``registry/repository``, e.g. ``index.docker.io/library/alpine``."""
        return f"{self.registry}/{self.repository}"

    def __str__(self) -> str:
        ref = self.canonical_name
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


def _split_registry(name: str) -> tuple:
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    return None, name


def parse_reference(image: str) -> ImageReference:
    """
    Parse an image reference string.

    Args:
        image: Reference such as ``alpine``, ``ghcr.io/org/app:v1`` or
            ``localhost:5000/app@sha256:...``.

    Returns:
        The parsed ImageReference.

    Raises:
        InvalidImageReference: If the string is not a valid reference.
    """

    def invalid(detail: str) -> InvalidImageReference:
        return InvalidImageReference(
            image, f"could not parse reference {image!r}: {detail}"
        )

    if not image or image.strip() != image:
        raise invalid("a repository name must be specified")

    name = image
    digest = None
    if "@" in name:
        name, _, digest = name.partition("@")
        if not _DIGEST.match(digest):
            raise invalid(f"invalid digest {digest!r}")

    tag = None
    colon = name.rfind(":")
    if colon > name.rfind("/"):
        name, tag = name[:colon], name[colon + 1 :]
        if not _TAG.match(tag):
            raise invalid(f"invalid tag {tag!r}")

    registry, repository = _split_registry(name)
    if registry is None or registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if repository and "/" not in repository:
            repository = f"library/{repository}"
    elif not _REGISTRY.match(registry):
        raise invalid(f"invalid registry {registry!r}")

    if not repository:
        raise invalid("a repository name must be specified")
    if len(repository) > MAX_REPOSITORY_LENGTH:
        raise invalid(
            f"repository must be at most {MAX_REPOSITORY_LENGTH} characters"
        )
    for component in repository.split("/"):
        if not _PATH_COMPONENT.match(component):
            raise invalid(
                "repository path components must be lowercase alphanumerics "
                f"separated by '.', '_', '__' or '-', got {component!r}"
            )

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return ImageReference(
        registry=registry, repository=repository, tag=tag, digest=digest
    )


class TagLister(ABC):
    """A client able to list the tags of a repository."""

    @abstractmethod
    async def list_tags(
        self, ref: ImageReference, authenticator: Optional[Authenticator] = None
    ) -> List[str]:
        """Return every tag of ``ref``'s repository, in registry order."""
        pass


class RegistryGateway:
    """
    Canonicalizes image references and lists tags with a deadline.

    The gateway makes exactly one attempt per call; retrying is left to the
    controller's backoff.
    """

    def __init__(self, client: TagLister, timeout: float = DEFAULT_SCAN_TIMEOUT):
        self.client = client
        self.timeout = timeout

    def canonicalize(self, image: str) -> ImageReference:
        """Parse ``image``; raises InvalidImageReference on failure."""
        return parse_reference(image)

    async def list_tags(
        self,
        ref: ImageReference,
        authenticator: Optional[Authenticator] = None,
        timeout: Optional[float] = None,
    ) -> List[str]:
        """
        List the tags of a repository within ``timeout`` seconds.

        Raises:
            RegistryTimeout: The deadline passed before the registry answered.
            RegistryUnavailable: The registry could not be reached.
            RegistryError: The registry answered with an error.
        """
        timeout = timeout if timeout is not None else self.timeout
        try:
            tags = await asyncio.wait_for(
                self.client.list_tags(ref, authenticator), timeout
            )
        except asyncio.TimeoutError:
            raise RegistryTimeout(ref.canonical_name, timeout)
        except RegistryError:
            raise
        except aiohttp.ClientError as e:
            raise RegistryUnavailable(ref.canonical_name, str(e) or type(e).__name__)

        logger.debug(f"Listed {len(tags)} tags for {ref.canonical_name}")
        return tags
