"""
Data models for the MarkLogic Cluster Upgrade Orchestrator.
"""

import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

# Fractional seconds directly before the UTC offset or end of string
FRACTION_PATTERN = re.compile(r"\.(\d+)(?=[+-]\d\d:\d\d$|$)")


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_time(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 / RFC 3339 timestamp.

    Naive values are assumed to be UTC. Returns None for empty input.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # datetime holds microseconds; RFC 3339 writers may emit up to nanoseconds
    text = FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_k8s_time(value: datetime) -> str:
    """Format a datetime the way the Kubernetes API expects (RFC 3339, seconds)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_rfc3339(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC with a Z suffix, keeping sub-second digits."""
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def render_time(value: datetime, original: Optional[str] = None) -> str:
    """
    Render a timestamp for a stored document.

    The text a timestamp was read from is reused while it still denotes the
    same instant, so a loaded document serializes back unchanged.
    """
    if original:
        try:
            same_instant = parse_time(original) == value
        except ValueError:
            same_instant = False
        if same_instant:
            return original
    return format_rfc3339(value)


class UpgradeState(Enum):
    """Upgrade workflow states, valued by their persisted annotation form."""

    IDLE = "Idle"
    PRECHECK_STARTED = "PrecheckStarted"
    PRECHECK_COMPLETED = "PrecheckCompleted"
    WAITING_FOR_APPROVAL = "WaitingForUserApproval"
    IN_PROGRESS = "UpgradeInProgress"
    COMPLETED = "UpgradeCompleted"
    FAILED = "UpgradeFailed"
    CANCELLED = "UpgradeCancelled"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["UpgradeState"]:
        """
        Map a persisted value to a state.

        Args:
            value: Raw annotation value

        Returns:
            The matching state, IDLE for an empty value, None if unrecognized
        """
        if not value:
            return cls.IDLE
        for state in cls:
            if state.value == value:
                return state
        return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {UpgradeState.COMPLETED, UpgradeState.FAILED, UpgradeState.CANCELLED}
)

# Rough position of each state within an attempt, surfaced as status.progress
STATE_PROGRESS = {
    UpgradeState.IDLE: 0,
    UpgradeState.PRECHECK_STARTED: 10,
    UpgradeState.PRECHECK_COMPLETED: 30,
    UpgradeState.WAITING_FOR_APPROVAL: 40,
    UpgradeState.IN_PROGRESS: 60,
    UpgradeState.COMPLETED: 100,
    UpgradeState.FAILED: 100,
    UpgradeState.CANCELLED: 100,
}


class CheckStatus(Enum):
    """Severity of a single precheck result."""

    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


@dataclass
class PrecheckResult:
    """Result of a single named precheck."""

    name: str
    status: CheckStatus
    message: str
    timestamp: datetime
    duration: str = "0s"  # e.g. "0.012s"
    details: Optional[str] = None
    remediation: Optional[str] = None
    # Text the timestamp was loaded from, reused when serializing
    timestamp_text: Optional[str] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict:
        """Convert to the persisted JSON shape (empty optionals omitted)."""
        data = {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
        }
        if self.details:
            data["details"] = self.details
        data["timestamp"] = render_time(self.timestamp, self.timestamp_text)
        data["duration"] = self.duration
        if self.remediation:
            data["remediation"] = self.remediation
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "PrecheckResult":
        return cls(
            name=data["name"],
            status=CheckStatus(data["status"]),
            message=data.get("message", ""),
            timestamp=parse_time(data["timestamp"]),
            duration=data.get("duration", "0s"),
            details=data.get("details") or None,
            remediation=data.get("remediation") or None,
            timestamp_text=data["timestamp"],
        )


@dataclass
class PrecheckSummary:
    """Counts derived from a list of precheck results."""

    total: int
    passed: int
    warnings: int
    failed: int
    can_proceed: bool

    @classmethod
    def from_results(cls, results: List[PrecheckResult]) -> "PrecheckSummary":
        passed = sum(1 for r in results if r.status == CheckStatus.PASS)
        warnings = sum(1 for r in results if r.status == CheckStatus.WARN)
        failed = sum(1 for r in results if r.status == CheckStatus.FAIL)
        return cls(
            total=len(results),
            passed=passed,
            warnings=warnings,
            failed=failed,
            # Warnings never block proceeding
            can_proceed=failed == 0,
        )

    def to_dict(self) -> Dict:
        return {
            "total": self.total,
            "passed": self.passed,
            "warnings": self.warnings,
            "failed": self.failed,
            "canProceed": self.can_proceed,
        }


@dataclass
class PrecheckReport:
    """
    Full precheck report for one upgrade attempt.

    This is the durable record reviewed at the approval gate. The summary is
    always derived from the results, so a report cannot disagree with itself.
    """

    results: List[PrecheckResult]
    timestamp: datetime
    cluster_ref: str  # namespace/name
    timestamp_text: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def summary(self) -> PrecheckSummary:
        return PrecheckSummary.from_results(self.results)

    def to_dict(self) -> Dict:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
            "timestamp": render_time(self.timestamp, self.timestamp_text),
            "clusterRef": self.cluster_ref,
        }

    def to_json(self) -> str:
        """Serialize to the JSON document stored on the cluster object."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "PrecheckReport":
        """
        Deserialize a stored report.

        Args:
            raw: JSON document produced by to_json

        Returns:
            PrecheckReport instance

        Raises:
            ValueError: If the document is not a well-formed report
        """
        try:
            data = json.loads(raw)
            return cls(
                results=[PrecheckResult.from_dict(r) for r in data["results"]],
                timestamp=parse_time(data["timestamp"]),
                cluster_ref=data["clusterRef"],
                timestamp_text=data["timestamp"],
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed precheck report: {e}") from e


@dataclass
class GroupSpec:
    """Member group as declared in the cluster spec."""

    name: str
    replicas: Optional[int] = None


@dataclass
class MemberGroup:
    """Observed state of one member group (backed by a StatefulSet)."""

    name: str
    desired_replicas: int
    ready_replicas: int = 0
    image: str = ""
    found: bool = True
    generation: int = 0
    observed_generation: int = 0

    @property
    def converged(self) -> bool:
        return (
            self.found
            and self.observed_generation >= self.generation
            and self.ready_replicas == self.desired_replicas
        )


@dataclass
class Condition:
    """Timestamped status condition, upserted by type."""

    type: str
    status: str  # "True" / "False"
    reason: str
    message: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> Dict:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", ""),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


def upsert_condition(conditions: List[Condition], new: Condition) -> List[Condition]:
    """Replace the condition with the same type, or append it."""
    updated = list(conditions)
    for i, existing in enumerate(updated):
        if existing.type == new.type:
            updated[i] = new
            return updated
    updated.append(new)
    return updated


# Status keys owned by UpgradeStatus; anything else is carried through untouched
_STATUS_FIELDS = {
    "phase": "phase",
    "upgradeState": "upgrade_state",
    "progress": "progress",
    "message": "message",
    "lastUpgradeTime": "last_upgrade_time",
    "currentImage": "current_image",
    "upgradePaused": "upgrade_paused",
    "canPause": "can_pause",
    "canCancel": "can_cancel",
    "canRollback": "can_rollback",
}


@dataclass
class UpgradeStatus:
    """Typed view of the cluster status subresource."""

    phase: str = ""
    upgrade_state: str = ""
    progress: str = ""
    message: str = ""
    last_upgrade_time: Optional[str] = None
    current_image: str = ""
    upgrade_paused: bool = False
    can_pause: bool = False
    can_cancel: bool = False
    can_rollback: bool = False
    conditions: List[Condition] = field(default_factory=list)
    extra: Dict = field(default_factory=dict)  # e.g. agent-reported "health"

    def condition(self, cond_type: str) -> Optional[Condition]:
        for cond in self.conditions:
            if cond.type == cond_type:
                return cond
        return None

    def to_dict(self) -> Dict:
        data = copy.deepcopy(self.extra)
        for key, attr in _STATUS_FIELDS.items():
            value = getattr(self, attr)
            if value is None or value == "":
                data.pop(key, None)
                continue
            data[key] = value
        data["conditions"] = [c.to_dict() for c in self.conditions]
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "UpgradeStatus":
        data = data or {}
        kwargs = {}
        for key, attr in _STATUS_FIELDS.items():
            if key in data:
                kwargs[attr] = data[key]
        extra = {
            k: copy.deepcopy(v)
            for k, v in data.items()
            if k not in _STATUS_FIELDS and k != "conditions"
        }
        return cls(
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            extra=extra,
            **kwargs,
        )


@dataclass
class ClusterRef:
    """Reference to a cluster custom resource."""

    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ClusterRecord:
    """
    Snapshot of one cluster object as read from the state store.

    Annotations carry the workflow state, control signals and the serialized
    precheck report; status carries the typed status record. ``raw`` keeps the
    full resource so unknown fields survive a write.
    """

    namespace: str
    name: str
    image: str  # desired image from spec
    groups: List[GroupSpec] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    status: UpgradeStatus = field(default_factory=UpgradeStatus)
    resource_version: str = ""
    creation_timestamp: Optional[datetime] = None
    uid: str = ""
    raw: Dict = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.name}"

    def copy(self) -> "ClusterRecord":
        return copy.deepcopy(self)

    @classmethod
    def from_resource(cls, obj: Dict) -> "ClusterRecord":
        """Build a record from a custom resource dictionary."""
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        groups = [
            GroupSpec(name=g["name"], replicas=g.get("replicas"))
            for g in spec.get("markLogicGroups") or []
            if g.get("name")
        ]
        return cls(
            namespace=metadata.get("namespace", "default"),
            name=metadata["name"],
            image=spec.get("image", ""),
            groups=groups,
            annotations=dict(metadata.get("annotations") or {}),
            status=UpgradeStatus.from_dict(obj.get("status")),
            resource_version=str(metadata.get("resourceVersion", "")),
            creation_timestamp=parse_time(metadata.get("creationTimestamp")),
            uid=metadata.get("uid", ""),
            raw=copy.deepcopy(obj),
        )

    def to_resource(self) -> Dict:
        """Render the record back into a resource dictionary for writing."""
        obj = copy.deepcopy(self.raw)
        metadata = obj.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        metadata["annotations"] = dict(self.annotations)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        obj["status"] = self.status.to_dict()
        return obj


@dataclass
class AdvanceResult:
    """Outcome of a single orchestrator invocation."""

    state: UpgradeState
    requeue_after: Optional[float] = None  # seconds; None means no requeue
    transitioned: bool = False
    message: str = ""


@dataclass
class ReconcileResult:
    """Result of reconciling one cluster within a driver cycle."""

    cluster: str  # namespace/name
    status: str  # "advanced", "waiting", "idle", "skipped", "error"
    state: Optional[str] = None
    requeue_after: Optional[float] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
