"""
Resource Models - ImageRepository records, secrets and their wire forms.

Records are stored and exchanged as camelCase JSON documents, mirroring the
shape of a Kubernetes custom resource. The dataclasses here are the in-process
representation used by the reconciler and the stores.
"""

import base64
import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_FULL = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|h|m|s))+$")

_UNIT_SECONDS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a Go-style duration string such as ``10m``, ``1h30m`` or ``45s``.

    Args:
        value: The duration string.

    Returns:
        The equivalent timedelta.

    Raises:
        ValueError: If the string is not a valid duration.
    """
    if not isinstance(value, str) or not _DURATION_FULL.match(value):
        raise ValueError(f"invalid duration {value!r}")

    seconds = 0.0
    for amount, unit in _DURATION_PART.findall(value):
        seconds += float(amount) * _UNIT_SECONDS[unit]
    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    """Format a timedelta the way Go prints a time.Duration (e.g. ``10m0s``)."""
    total = value.total_seconds()
    if total == 0:
        return "0s"

    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1:
        return f"{sign}{total * 1000:g}ms"

    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{int(hours)}h"
    if hours or minutes:
        out += f"{int(minutes)}m"
    out += f"{seconds:g}s"
    return sign + out


def format_time(value: datetime) -> str:
    """Render a timestamp as RFC 3339 in UTC."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: str) -> datetime:
    """Parse an RFC 3339 timestamp (``Z`` suffix allowed) into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class NamespacedName:
    """Identity of a namespaced object, rendered as ``namespace/name``."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "NamespacedName":
        """Split a ``namespace/name`` key."""
        namespace, sep, name = key.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"invalid key {key!r}, expected namespace/name")
        return cls(namespace=namespace, name=name)


class ConditionStatus(Enum):
    """Status values for the readiness condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class LocalObjectReference:
    """Reference to an object in the same namespace."""

    name: str


@dataclass
class ImageRepositorySpec:
    """Desired state of an ImageRepository."""

    image: str = ""
    scan_interval: Optional[timedelta] = None
    secret_ref: Optional[LocalObjectReference] = None
    suspend: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"image": self.image}
        if self.scan_interval is not None:
            data["scanInterval"] = format_duration(self.scan_interval)
        if self.secret_ref is not None:
            data["secretRef"] = {"name": self.secret_ref.name}
        if self.suspend:
            data["suspend"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageRepositorySpec":
        scan_interval = data.get("scanInterval")
        secret_ref = data.get("secretRef")
        return cls(
            image=data.get("image", ""),
            scan_interval=parse_duration(scan_interval) if scan_interval else None,
            secret_ref=(
                LocalObjectReference(name=secret_ref["name"]) if secret_ref else None
            ),
            suspend=bool(data.get("suspend", False)),
        )


@dataclass
class ReadyCondition:
    """
    The single readiness condition of an ImageRepository.

    Each reconcile replaces it wholesale; there is no condition history.
    """

    status: ConditionStatus
    reason: str
    message: str
    last_transition_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "Ready",
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadyCondition":
        return cls(
            status=ConditionStatus(data["status"]),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data["lastTransitionTime"]),
        )


@dataclass
class ScanResult:
    """Outcome of the last successful scan."""

    tag_count: int = 0


@dataclass
class ImageRepositoryStatus:
    """Observed state of an ImageRepository."""

    ready: Optional[ReadyCondition] = None
    observed_generation: int = 0
    canonical_image_name: str = ""
    last_scan_result: ScanResult = field(default_factory=ScanResult)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "observedGeneration": self.observed_generation,
            "canonicalImageName": self.canonical_image_name,
            "lastScanResult": {"tagCount": self.last_scan_result.tag_count},
        }
        if self.ready is not None:
            data["ready"] = self.ready.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ImageRepositoryStatus":
        if not data:
            return cls()
        ready = data.get("ready")
        return cls(
            ready=ReadyCondition.from_dict(ready) if ready else None,
            observed_generation=int(data.get("observedGeneration", 0)),
            canonical_image_name=data.get("canonicalImageName", ""),
            last_scan_result=ScanResult(
                tag_count=int(data.get("lastScanResult", {}).get("tagCount", 0))
            ),
        )


@dataclass
class ImageRepository:
    """An image repository record: identity, spec and status."""

    namespace: str
    name: str
    spec: ImageRepositorySpec
    status: ImageRepositoryStatus = field(default_factory=ImageRepositoryStatus)
    generation: int = 1

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    def copy(self) -> "ImageRepository":
        """Deep copy, so a cycle never mutates the caller's record."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "namespace": self.namespace,
                "name": self.name,
                "generation": self.generation,
            },
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageRepository":
        metadata = data["metadata"]
        return cls(
            namespace=metadata["namespace"],
            name=metadata["name"],
            generation=int(metadata.get("generation", 1)),
            spec=ImageRepositorySpec.from_dict(data.get("spec", {})),
            status=ImageRepositoryStatus.from_dict(data.get("status")),
        )


@dataclass
class Secret:
    """An opaque secret: a type tag and a mapping of keys to raw bytes."""

    namespace: str
    name: str
    type: str
    data: Dict[str, bytes] = field(default_factory=dict, repr=False)

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    def encoded_data(self) -> Dict[str, str]:
        """Data values as base64 strings, the form used on the wire."""
        return {k: base64.b64encode(v).decode() for k, v in self.data.items()}

    @classmethod
    def from_encoded(
        cls, namespace: str, name: str, type: str, data: Dict[str, str]
    ) -> "Secret":
        """
        Build a secret from base64-encoded data values.

        Raises:
            ValueError: If a value is not valid base64.
        """
        decoded = {}
        for k, v in (data or {}).items():
            try:
                decoded[k] = base64.b64decode(v, validate=True)
            except (ValueError, TypeError) as e:
                raise ValueError(f"data[{k!r}] is not valid base64: {e}")
        return cls(namespace=namespace, name=name, type=type, data=decoded)
