"""
Reconcile errors.

Every failure a reconcile cycle can report derives from ReconcileError. The
``reason`` is what ends up in the Ready condition; ``retryable`` tells the
controller whether backing off and trying again can help.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base class for failures recorded in an ImageRepository's status."""

    reason = "ReconciliationFailed"
    retryable = True


class InvalidImageReference(ReconcileError):
    """The spec's image string could not be parsed."""

    reason = "InvalidImageReference"

    def __init__(self, image: str, detail: str):
        self.image = image
        self.detail = detail
        super().__init__(detail)


class CredentialError(ReconcileError):
    """Registry credentials could not be obtained."""


class SecretNotFound(CredentialError):
    """The secret named by secretRef does not exist."""

    def __init__(self, namespace: str, name: str):
        self.namespace = namespace
        self.name = name
        super().__init__(f"secret {namespace}/{name} not found")


class CredentialNotFound(CredentialError):
    """The secret has no entry for the registry host."""

    def __init__(self, registry: str, secret: Optional[str] = None):
        self.registry = registry
        self.secret = secret
        super().__init__(f"auth for {registry!r} not found in secret {secret}")


class UnsupportedCredentialType(CredentialError):
    """The secret's type tag is not a format the resolver understands."""

    def __init__(self, secret_type: str):
        self.secret_type = secret_type
        super().__init__(f"unknown secret type {secret_type!r}")


class InvalidCredentialPayload(CredentialError):
    """The secret has a supported type but its payload can't be decoded."""


class RegistryError(ReconcileError):
    """Listing tags from the registry failed."""


class RegistryTimeout(RegistryError):
    """The registry did not answer within the cycle's deadline."""

    def __init__(self, repository: str, timeout: float):
        self.repository = repository
        self.timeout = timeout
        super().__init__(
            f"listing tags for {repository}: context deadline exceeded "
            f"after {timeout:g}s"
        )


class RegistryUnavailable(RegistryError):
    """The registry could not be reached or returned an error."""

    def __init__(self, repository: str, detail: str, status: Optional[int] = None):
        self.repository = repository
        self.status = status
        super().__init__(f"listing tags for {repository}: {detail}")


class StatusWriteFailed(ReconcileError):
    """Persisting the status block failed; the cycle's outcome is not recorded."""

    def __init__(self, key: str, detail: str):
        self.key = key
        super().__init__(f"unable to update status of {key}: {detail}")
