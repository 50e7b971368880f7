"""Unit tests for reconciler.py - The ImageRepository reconcile cycle."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from credentials import BasicAuthenticator
from errors import (
    CredentialNotFound,
    InvalidImageReference,
    RegistryTimeout,
    SecretNotFound,
    StatusWriteFailed,
)
from events import EventBus, EventType, Severity
from models import (
    ConditionStatus,
    ImageRepository,
    ImageRepositorySpec,
    LocalObjectReference,
    NamespacedName,
    ReadyCondition,
    ScanResult,
)
from reconciler import ImageRepositoryReconciler, ReconcileResult
from registry import RegistryGateway, TagLister

NOW = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
KEY = NamespacedName("default", "podinfo")
CANONICAL = "ghcr.io/stefanprodan/podinfo"


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class HangingLister(TagLister):
    async def list_tags(self, ref, authenticator=None):
        await asyncio.sleep(10)
        return []


def make_repo(**spec) -> ImageRepository:
    spec.setdefault("image", "ghcr.io/stefanprodan/podinfo")
    return ImageRepository(
        namespace=KEY.namespace, name=KEY.name, spec=ImageRepositorySpec(**spec)
    )


class TestReconciler:
    """Tests for ImageRepositoryReconciler.reconcile()."""

    @pytest.fixture
    def clock(self):
        return Clock()

    @pytest.fixture
    def event_bus(self):
        return EventBus()

    @pytest.fixture
    def reconciler(self, records, secrets, tag_store, tag_lister, event_bus, clock):
        return ImageRepositoryReconciler(
            records=records,
            secrets=secrets,
            tags=tag_store,
            gateway=RegistryGateway(tag_lister),
            event_bus=event_bus,
            scan_timeout=0.1,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_not_found(self, reconciler, records, tag_lister):
        result = await reconciler.reconcile(KEY)
        assert result == ReconcileResult()
        assert records.status_writes == []
        assert tag_lister.calls == []

    @pytest.mark.asyncio
    async def test_suspended(self, reconciler, records, tag_lister):
        records.add(make_repo(suspend=True))

        result = await reconciler.reconcile(KEY)

        assert result.requeue_after is None
        assert tag_lister.calls == []
        assert len(records.status_writes) == 1
        ready = records.status_writes[0].ready
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "Suspended"
        assert ready.message == "ImageRepository is suspended, skipping reconciliation"

    @pytest.mark.asyncio
    async def test_invalid_image(self, reconciler, records, tag_lister):
        records.add(make_repo(image=""))

        with pytest.raises(InvalidImageReference):
            await reconciler.reconcile(KEY)

        assert tag_lister.calls == []
        assert len(records.status_writes) == 1
        ready = records.status_writes[0].ready
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "InvalidImageReference"
        assert "a repository name must be specified" in ready.message

    @pytest.mark.asyncio
    async def test_first_scan(self, reconciler, records, tag_store, tag_lister):
        repo = records.add(make_repo())
        repo.generation = 4

        result = await reconciler.reconcile(KEY)

        assert tag_store.tags[CANONICAL] == ["v1.0.0", "v1.1.0", "latest"]
        assert len(records.status_writes) == 1
        status = records.status_writes[0]
        assert status.ready.status == ConditionStatus.TRUE
        assert status.ready.reason == "ReconciliationSucceeded"
        assert status.ready.message == "successful scan, found 3 tags"
        assert status.ready.last_transition_time == NOW
        assert status.last_scan_result.tag_count == 3
        assert status.canonical_image_name == CANONICAL
        assert status.observed_generation == 4
        assert result.requeue_after == timedelta(minutes=10)
        ref, auth = tag_lister.calls[0]
        assert ref.canonical_name == CANONICAL
        assert auth is None

    @pytest.mark.asyncio
    async def test_second_cycle_not_due(
        self, reconciler, records, tag_lister, clock
    ):
        records.add(make_repo(scan_interval=timedelta(minutes=10)))
        await reconciler.reconcile(KEY)
        clock.advance(timedelta(seconds=2))

        result = await reconciler.reconcile(KEY)

        assert len(tag_lister.calls) == 1
        assert result.requeue_after == timedelta(minutes=10) - timedelta(seconds=2)
        # canonical name unchanged, so no second write
        assert len(records.status_writes) == 1

    @pytest.mark.asyncio
    async def test_not_due_writes_changed_canonical_name(
        self, reconciler, records, tag_store, tag_lister
    ):
        repo = make_repo(image="alpine")
        repo.status.ready = ReadyCondition(
            ConditionStatus.TRUE, "ReconciliationSucceeded", "ok", NOW
        )
        repo.status.last_scan_result = ScanResult(tag_count=1)
        records.add(repo)
        tag_store.tags["index.docker.io/library/alpine"] = ["3.19"]

        result = await reconciler.reconcile(KEY)

        assert tag_lister.calls == []
        assert result.requeue_after == timedelta(minutes=10)
        assert len(records.status_writes) == 1
        status = records.status_writes[0]
        assert status.canonical_image_name == "index.docker.io/library/alpine"
        assert status.ready.reason == "ReconciliationSucceeded"

    @pytest.mark.asyncio
    async def test_interval_elapsed_rescans(
        self, reconciler, records, tag_lister, clock
    ):
        records.add(make_repo(scan_interval=timedelta(minutes=1)))
        await reconciler.reconcile(KEY)
        clock.advance(timedelta(minutes=1))

        result = await reconciler.reconcile(KEY)

        assert len(tag_lister.calls) == 2
        assert result.requeue_after == timedelta(minutes=1)
        assert records.status_writes[-1].ready.last_transition_time == clock.now

    @pytest.mark.asyncio
    async def test_zero_scan_interval_is_not_replaced_by_default(
        self, reconciler, records, tag_lister, clock
    ):
        records.add(make_repo(scan_interval=timedelta(0)))
        first = await reconciler.reconcile(KEY)
        clock.advance(timedelta(seconds=5))

        second = await reconciler.reconcile(KEY)

        assert len(tag_lister.calls) == 2
        assert first.requeue_after == timedelta(0)
        assert second.requeue_after == timedelta(0)

    @pytest.mark.asyncio
    async def test_zero_tags_rescans_every_cycle(
        self, reconciler, records, tag_lister, clock
    ):
        tag_lister.tags = []
        records.add(make_repo())
        await reconciler.reconcile(KEY)
        clock.advance(timedelta(seconds=5))

        await reconciler.reconcile(KEY)

        assert len(tag_lister.calls) == 2
        message = records.status_writes[-1].ready.message
        assert message == "successful scan, found 0 tags"

    @pytest.mark.asyncio
    async def test_registry_timeout(self, records, secrets, tag_store):
        reconciler = ImageRepositoryReconciler(
            records=records,
            secrets=secrets,
            tags=tag_store,
            gateway=RegistryGateway(HangingLister()),
            scan_timeout=0.05,
            clock=Clock(),
        )
        records.add(make_repo())

        with pytest.raises(RegistryTimeout):
            await reconciler.reconcile(KEY)

        ready = records.status_writes[0].ready
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "ReconciliationFailed"
        assert "deadline exceeded" in ready.message
        assert tag_store.tags == {}

    @pytest.mark.asyncio
    async def test_credentials_from_secret(
        self, reconciler, records, secrets, tag_lister, docker_config_secret
    ):
        config = {"auths": {"ghcr.io": {"username": "bot", "password": "pw"}}}
        secrets.add(docker_config_secret(config=config))
        records.add(make_repo(secret_ref=LocalObjectReference("regcred")))

        await reconciler.reconcile(KEY)

        _, auth = tag_lister.calls[0]
        assert auth == BasicAuthenticator("bot", "pw")
        assert records.status_writes[0].ready.status == ConditionStatus.TRUE

    @pytest.mark.asyncio
    async def test_missing_secret(self, reconciler, records, tag_lister):
        records.add(make_repo(secret_ref=LocalObjectReference("absent")))

        with pytest.raises(SecretNotFound):
            await reconciler.reconcile(KEY)

        assert tag_lister.calls == []
        ready = records.status_writes[0].ready
        assert ready.reason == "ReconciliationFailed"
        assert ready.message == "secret default/absent not found"

    @pytest.mark.asyncio
    async def test_secret_without_registry_entry(
        self, reconciler, records, secrets, tag_lister, docker_config_secret
    ):
        secrets.add(docker_config_secret())
        records.add(make_repo(secret_ref=LocalObjectReference("regcred")))

        with pytest.raises(CredentialNotFound):
            await reconciler.reconcile(KEY)

        assert tag_lister.calls == []
        assert "'ghcr.io' not found" in records.status_writes[0].ready.message

    @pytest.mark.asyncio
    async def test_tag_store_failure(self, reconciler, records, tag_store):
        tag_store.fail_writes = RuntimeError("disk full")
        records.add(make_repo())

        with pytest.raises(RuntimeError):
            await reconciler.reconcile(KEY)

        ready = records.status_writes[0].ready
        assert ready.reason == "ReconciliationFailed"
        assert ready.message == "disk full"

    @pytest.mark.asyncio
    async def test_stored_tags_read_failure(self, reconciler, records, tag_store):
        tag_store.fail_reads = ConnectionError("connection reset")
        records.add(make_repo())

        with pytest.raises(ConnectionError):
            await reconciler.reconcile(KEY)

        assert len(records.status_writes) == 1
        ready = records.status_writes[0].ready
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "ReconciliationFailed"
        assert ready.message == "connection reset"

    @pytest.mark.asyncio
    async def test_status_write_failure(self, reconciler, records):
        records.fail_writes = ConnectionError("connection reset")
        records.add(make_repo(suspend=True))

        with pytest.raises(StatusWriteFailed) as exc_info:
            await reconciler.reconcile(KEY)

        assert "connection reset" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_does_not_mutate_fetched_record(self, reconciler, records):
        records.add(make_repo())
        original = await records.get_image_repository(KEY)

        await reconciler.reconcile(KEY)

        assert original.status.ready is None

    @pytest.mark.asyncio
    async def test_publishes_events(self, reconciler, records, event_bus):
        _, subscription = event_bus.subscribe()
        records.add(make_repo())

        await reconciler.reconcile(KEY)

        event = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert event.event_type == EventType.RECONCILED
        assert event.severity == Severity.NORMAL
        assert event.reason == "ReconciliationSucceeded"
        assert event.data["status"]["lastScanResult"]["tagCount"] == 3

    @pytest.mark.asyncio
    async def test_failure_event_is_warning(self, reconciler, records, event_bus):
        _, subscription = event_bus.subscribe()
        records.add(make_repo(image="UPPER"))

        with pytest.raises(InvalidImageReference):
            await reconciler.reconcile(KEY)

        event = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert event.severity == Severity.WARNING
        assert event.reason == "InvalidImageReference"

    @pytest.mark.asyncio
    async def test_cancellation_skips_status_write(self, records, secrets, tag_store):
        reconciler = ImageRepositoryReconciler(
            records=records,
            secrets=secrets,
            tags=tag_store,
            gateway=RegistryGateway(HangingLister()),
            scan_timeout=30,
            clock=Clock(),
        )
        records.add(make_repo())

        task = asyncio.create_task(reconciler.reconcile(KEY))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert records.status_writes == []
