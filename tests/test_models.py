"""Unit tests for models.py - ImageRepository records and secrets."""

from datetime import datetime, timedelta, timezone

import pytest

from models import (
    ConditionStatus,
    ImageRepository,
    ImageRepositorySpec,
    ImageRepositoryStatus,
    LocalObjectReference,
    NamespacedName,
    ReadyCondition,
    ScanResult,
    Secret,
    format_duration,
    format_time,
    parse_duration,
    parse_time,
)


class TestDurations:
    """Tests for parse_duration() and format_duration()."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("10m", timedelta(minutes=10)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("45s", timedelta(seconds=45)),
            ("1.5h", timedelta(minutes=90)),
            ("250ms", timedelta(milliseconds=250)),
            ("1m30s", timedelta(seconds=90)),
        ],
    )
    def test_parse(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "10", "ten minutes", "5d", "m5", "-1m"])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)

    @pytest.mark.parametrize(
        "value,expected",
        [
            (timedelta(minutes=10), "10m0s"),
            (timedelta(hours=1, minutes=30), "1h30m0s"),
            (timedelta(seconds=45), "45s"),
            (timedelta(0), "0s"),
            (timedelta(milliseconds=250), "250ms"),
        ],
    )
    def test_format(self, value, expected):
        assert format_duration(value) == expected

    def test_formatted_duration_parses_back(self):
        value = timedelta(hours=2, minutes=5, seconds=7)
        assert parse_duration(format_duration(value)) == value


class TestTimes:
    def test_format_time_is_utc(self):
        ts = datetime(2024, 1, 15, 12, 30, tzinfo=timezone(timedelta(hours=2)))
        assert format_time(ts) == "2024-01-15T10:30:00Z"

    def test_parse_time(self):
        assert parse_time("2024-01-15T10:30:00Z") == datetime(
            2024, 1, 15, 10, 30, tzinfo=timezone.utc
        )

    def test_parse_naive_time_assumes_utc(self):
        assert parse_time("2024-01-15T10:30:00").tzinfo == timezone.utc


class TestNamespacedName:
    def test_str(self):
        assert str(NamespacedName("default", "podinfo")) == "default/podinfo"

    def test_parse(self):
        assert NamespacedName.parse("flux-system/app") == NamespacedName(
            "flux-system", "app"
        )

    @pytest.mark.parametrize("key", ["podinfo", "/podinfo", "default/", ""])
    def test_parse_invalid(self, key):
        with pytest.raises(ValueError):
            NamespacedName.parse(key)

    def test_hashable(self):
        assert len({NamespacedName("a", "b"), NamespacedName("a", "b")}) == 1


class TestImageRepositorySpec:
    def test_minimal_to_dict(self):
        spec = ImageRepositorySpec(image="alpine")
        assert spec.to_dict() == {"image": "alpine"}

    def test_full_round_trip(self):
        data = {
            "image": "ghcr.io/org/app",
            "scanInterval": "5m0s",
            "secretRef": {"name": "regcred"},
            "suspend": True,
        }
        spec = ImageRepositorySpec.from_dict(data)
        assert spec.scan_interval == timedelta(minutes=5)
        assert spec.secret_ref == LocalObjectReference("regcred")
        assert spec.suspend is True
        assert spec.to_dict() == data

    def test_from_dict_defaults(self):
        spec = ImageRepositorySpec.from_dict({"image": "alpine"})
        assert spec.scan_interval is None
        assert spec.secret_ref is None
        assert spec.suspend is False


class TestImageRepositoryStatus:
    def test_empty_status(self):
        assert ImageRepositoryStatus.from_dict(None) == ImageRepositoryStatus()
        assert ImageRepositoryStatus().to_dict() == {
            "observedGeneration": 0,
            "canonicalImageName": "",
            "lastScanResult": {"tagCount": 0},
        }

    def test_ready_condition_serialized(self):
        status = ImageRepositoryStatus(
            ready=ReadyCondition(
                status=ConditionStatus.TRUE,
                reason="ReconciliationSucceeded",
                message="successful scan, found 3 tags",
                last_transition_time=datetime(2024, 1, 15, tzinfo=timezone.utc),
            ),
            observed_generation=2,
            canonical_image_name="index.docker.io/library/alpine",
            last_scan_result=ScanResult(tag_count=3),
        )
        data = status.to_dict()
        assert data["ready"] == {
            "type": "Ready",
            "status": "True",
            "reason": "ReconciliationSucceeded",
            "message": "successful scan, found 3 tags",
            "lastTransitionTime": "2024-01-15T00:00:00Z",
        }
        assert ImageRepositoryStatus.from_dict(data) == status


class TestImageRepository:
    def test_key(self, sample_repository):
        assert sample_repository.key == NamespacedName("default", "podinfo")

    def test_copy_is_deep(self, sample_repository):
        clone = sample_repository.copy()
        clone.status.last_scan_result.tag_count = 7
        assert sample_repository.status.last_scan_result.tag_count == 0

    def test_document_shape(self, sample_repository):
        data = sample_repository.to_dict()
        assert data["metadata"] == {
            "namespace": "default",
            "name": "podinfo",
            "generation": 1,
        }
        assert ImageRepository.from_dict(data) == sample_repository


class TestSecret:
    def test_encoded_data(self):
        secret = Secret("default", "s", "Opaque", {"k": b"value"})
        assert secret.encoded_data() == {"k": "dmFsdWU="}

    def test_from_encoded(self):
        secret = Secret.from_encoded("default", "s", "Opaque", {"k": "dmFsdWU="})
        assert secret.data == {"k": b"value"}
        assert secret.key == NamespacedName("default", "s")

    def test_from_encoded_invalid(self):
        with pytest.raises(ValueError):
            Secret.from_encoded("default", "s", "Opaque", {"k": "not base64!"})

    def test_data_not_in_repr(self):
        secret = Secret("default", "s", "Opaque", {"k": b"hunter2"})
        assert "hunter2" not in repr(secret)
