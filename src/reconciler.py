"""
ImageRepository Reconciler - one reconcile cycle per call.

A cycle fetches the record, checks suspension, canonicalizes the image,
decides whether a scan is due and, if so, resolves credentials, lists tags,
stores them and reports the outcome in the record's Ready condition.

Errors are both recorded in status and raised, so the controller can apply
backoff. The reconciler holds no per-key state and is safe to call
concurrently for different keys.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from credentials import Authenticator, authenticator_from_secret
from errors import (
    InvalidImageReference,
    ReconcileError,
    SecretNotFound,
    StatusWriteFailed,
)
from events import EventBus, EventType, RepositoryEvent, Severity
from models import ConditionStatus, ImageRepository, NamespacedName
from registry import DEFAULT_SCAN_TIMEOUT, ImageReference, RegistryGateway
from scheduler import DEFAULT_SCAN_INTERVAL, decide
from status import (
    INVALID_IMAGE_REFERENCE_REASON,
    RECONCILIATION_FAILED_REASON,
    RECONCILIATION_SUCCEEDED_REASON,
    SUSPENDED_REASON,
    last_transition_time,
    with_readiness,
)
from stores import RecordStore, SecretStore, TagStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReconcileResult:
    """Outcome of a successful cycle. ``requeue_after`` of None means don't requeue."""

    requeue_after: Optional[timedelta] = None
    message: str = ""


class ImageRepositoryReconciler:
    """Reconciles ImageRepository records against their registries."""

    def __init__(
        self,
        records: RecordStore,
        secrets: SecretStore,
        tags: TagStore,
        gateway: RegistryGateway,
        event_bus: Optional[EventBus] = None,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        default_scan_interval: timedelta = DEFAULT_SCAN_INTERVAL,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.records = records
        self.secrets = secrets
        self.tags = tags
        self.gateway = gateway
        self.event_bus = event_bus
        self.scan_timeout = scan_timeout
        self.default_scan_interval = default_scan_interval
        self.clock = clock

    async def reconcile(self, key: NamespacedName) -> ReconcileResult:
        """
        Run one reconcile cycle for ``key``.

        Returns:
            A ReconcileResult whose ``requeue_after`` is when to look again.

        Raises:
            ReconcileError: After recording the failure in the record's status.
        """
        repo = await self.records.get_image_repository(key)
        if repo is None:
            logger.debug(f"ImageRepository {key} not found, nothing to do")
            return ReconcileResult()

        if repo.spec.suspend:
            msg = "ImageRepository is suspended, skipping reconciliation"
            await self._report(repo, ConditionStatus.FALSE, SUSPENDED_REASON, msg)
            logger.info(f"{key}: {msg}")
            return ReconcileResult(message=msg)

        try:
            ref = self.gateway.canonicalize(repo.spec.image)
        except InvalidImageReference as e:
            await self._report(
                repo, ConditionStatus.FALSE, INVALID_IMAGE_REFERENCE_REASON, str(e)
            )
            logger.error(
                f"Unable to parse image name {repo.spec.image!r} for {key}: {e}"
            )
            raise

        now = self.clock()
        scan_interval = (
            repo.spec.scan_interval
            if repo.spec.scan_interval is not None
            else self.default_scan_interval
        )
        try:
            stored_tags = await self.tags.get_tags(ref.canonical_name)
        except Exception as e:
            await self._report(
                repo, ConditionStatus.FALSE, RECONCILIATION_FAILED_REASON, str(e)
            )
            logger.error(f"Unable to read stored tags of {ref.canonical_name}: {e}")
            raise
        decision = decide(
            scan_interval, last_transition_time(repo), len(stored_tags), now
        )

        canonical_changed = repo.status.canonical_image_name != ref.canonical_name
        repo = repo.copy()
        repo.status.canonical_image_name = ref.canonical_name

        if not decision.scan_now:
            if canonical_changed:
                await self._write_status(repo)
            logger.debug(
                f"{key}: not due for a scan, next check in {decision.next_check_in}"
            )
            return ReconcileResult(requeue_after=decision.next_check_in)

        started = time.monotonic()
        try:
            tags = await self._scan(repo, ref)
        except Exception as e:
            await self._report(
                repo, ConditionStatus.FALSE, RECONCILIATION_FAILED_REASON, str(e)
            )
            logger.error(f"Scan of {ref.canonical_name} for {key} failed: {e}")
            raise

        repo.status.last_scan_result.tag_count = len(tags)
        msg = f"successful scan, found {len(tags)} tags"
        await self._report(
            repo, ConditionStatus.TRUE, RECONCILIATION_SUCCEEDED_REASON, msg
        )
        logger.info(
            f"{key}: reconciliation finished in {time.monotonic() - started:.3f}s, "
            f"next run in {decision.next_check_in}"
        )
        return ReconcileResult(requeue_after=decision.next_check_in, message=msg)

    async def _scan(self, repo: ImageRepository, ref: ImageReference) -> List[str]:
        """Resolve credentials, list tags and store them."""
        authenticator: Optional[Authenticator] = None
        if repo.spec.secret_ref is not None:
            authenticator = await self._authenticator(repo, ref)

        tags = await self.gateway.list_tags(ref, authenticator, self.scan_timeout)
        await self.tags.set_tags(ref.canonical_name, tags)
        return tags

    async def _authenticator(
        self, repo: ImageRepository, ref: ImageReference
    ) -> Authenticator:
        secret_name = repo.spec.secret_ref.name
        secret = await self.secrets.get_secret(repo.namespace, secret_name)
        if secret is None:
            raise SecretNotFound(repo.namespace, secret_name)
        return authenticator_from_secret(secret, ref.registry)

    async def _report(
        self,
        repo: ImageRepository,
        status: ConditionStatus,
        reason: str,
        message: str,
    ) -> ImageRepository:
        """Set the Ready condition, write it and publish an event."""
        updated = with_readiness(repo, status, reason, message, self.clock())
        await self._write_status(updated)

        if self.event_bus is not None:
            severity = (
                Severity.NORMAL
                if status == ConditionStatus.TRUE or reason == SUSPENDED_REASON
                else Severity.WARNING
            )
            self.event_bus.publish(
                RepositoryEvent.from_repository(
                    EventType.RECONCILED, updated, severity, reason, message
                )
            )
        return updated

    async def _write_status(self, repo: ImageRepository) -> None:
        try:
            await self.records.update_image_repository_status(repo.key, repo.status)
        except ReconcileError:
            raise
        except Exception as e:
            logger.error(f"Unable to update status of {repo.key}: {e}")
            raise StatusWriteFailed(str(repo.key), str(e)) from e
