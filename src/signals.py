"""
Control signals for the upgrade workflow.

External actors (operators, automation) express intent by setting
annotations on the cluster object. This module owns every annotation key,
parses the raw map into a typed ControlSignals record for the orchestrator,
and renders typed Intent requests back into annotations for writers (CLI,
HTTP endpoint). Nothing else should touch raw annotation keys.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from models import utcnow

PREFIX = "marklogic.com/"

# Workflow state and durable records
ANNOTATION_UPGRADE_STATE = PREFIX + "upgrade-state"
ANNOTATION_PRECHECK_RESULTS = PREFIX + "precheck-results"
ANNOTATION_PRECHECK_STARTED_AT = PREFIX + "precheck-started-at"
ANNOTATION_ROLLOUT_STARTED_AT = PREFIX + "rollout-started-at"
ANNOTATION_PREVIOUS_IMAGE = PREFIX + "upgrade-previous-image"
ANNOTATION_HALTED_IMAGE = PREFIX + "upgrade-halted-image"

# Control signals
ANNOTATION_TRIGGER_UPGRADE = PREFIX + "trigger-upgrade"
ANNOTATION_PROCEED_UPGRADE = PREFIX + "proceed-with-upgrade"
ANNOTATION_CANCEL_UPGRADE = PREFIX + "cancel-upgrade"
ANNOTATION_SKIP_FOREST_CHECK = PREFIX + "skip-forest-check"
ANNOTATION_UPGRADE_PAUSED = PREFIX + "upgrade-paused"
ANNOTATION_RETRY_UPGRADE = PREFIX + "retry-upgrade"
ANNOTATION_FORCE_PROCEED = PREFIX + "force-proceed"

# Intent metadata
ANNOTATION_PAUSE_REASON = PREFIX + "upgrade-pause-reason"
ANNOTATION_PAUSE_TIME = PREFIX + "upgrade-pause-time"
ANNOTATION_PAUSE_USER = PREFIX + "upgrade-pause-user"
ANNOTATION_RESUME_REASON = PREFIX + "upgrade-resume-reason"
ANNOTATION_RESUME_TIME = PREFIX + "upgrade-resume-time"
ANNOTATION_RESUME_USER = PREFIX + "upgrade-resume-user"
ANNOTATION_RETRY_REASON = PREFIX + "upgrade-retry-reason"
ANNOTATION_RETRY_TIME = PREFIX + "upgrade-retry-time"
ANNOTATION_RETRY_USER = PREFIX + "upgrade-retry-user"
ANNOTATION_RETRY_COUNT = PREFIX + "upgrade-retry-count"
ANNOTATION_FORCE_REASON = PREFIX + "upgrade-force-proceed-reason"
ANNOTATION_FORCE_TIME = PREFIX + "upgrade-force-proceed-time"
ANNOTATION_FORCE_USER = PREFIX + "upgrade-force-proceed-user"
ANNOTATION_CANCEL_REASON = PREFIX + "upgrade-cancel-reason"
ANNOTATION_CANCEL_TIME = PREFIX + "upgrade-cancel-time"
ANNOTATION_CANCEL_USER = PREFIX + "upgrade-cancel-user"

# Signals removed when an attempt reaches a terminal state
CONTROL_SIGNAL_KEYS = (
    ANNOTATION_TRIGGER_UPGRADE,
    ANNOTATION_PROCEED_UPGRADE,
    ANNOTATION_CANCEL_UPGRADE,
    ANNOTATION_RETRY_UPGRADE,
    ANNOTATION_FORCE_PROCEED,
    ANNOTATION_UPGRADE_PAUSED,
)

# Per-attempt bookkeeping, also removed on terminal cleanup
ATTEMPT_KEYS = (
    ANNOTATION_PRECHECK_STARTED_AT,
    ANNOTATION_ROLLOUT_STARTED_AT,
)


class IntentAction(Enum):
    """Actions an external actor can request."""

    TRIGGER = "trigger"
    PROCEED = "proceed"
    CANCEL = "cancel"
    PAUSE = "pause"
    RESUME = "resume"
    RETRY = "retry"
    FORCE_PROCEED = "force-proceed"
    SKIP_FOREST_CHECK = "skip-forest-check"


@dataclass
class IntentMeta:
    """Who asked for an intent, when and why."""

    reason: str = ""
    requested_by: str = ""
    timestamp: str = ""


@dataclass
class Intent:
    """A single typed request from an external actor."""

    action: IntentAction
    reason: str = ""
    requested_by: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class ControlSignals:
    """Typed view of the control annotations on a cluster object."""

    trigger: bool = False
    proceed: bool = False
    cancel: bool = False
    skip_forest_check: bool = False
    paused: bool = False
    retry: bool = False
    force_proceed: bool = False
    retry_count: int = 0
    pause: IntentMeta = field(default_factory=IntentMeta)
    resume: IntentMeta = field(default_factory=IntentMeta)
    retry_meta: IntentMeta = field(default_factory=IntentMeta)
    force: IntentMeta = field(default_factory=IntentMeta)
    cancel_meta: IntentMeta = field(default_factory=IntentMeta)


def _flag(annotations: Dict[str, str], key: str) -> bool:
    return str(annotations.get(key, "")).strip().lower() == "true"


def _meta(annotations: Dict[str, str], reason: str, time_key: str, user: str) -> IntentMeta:
    return IntentMeta(
        reason=annotations.get(reason, ""),
        requested_by=annotations.get(user, ""),
        timestamp=annotations.get(time_key, ""),
    )


def parse_signals(annotations: Optional[Dict[str, str]]) -> ControlSignals:
    """
    Parse the raw annotation map into ControlSignals.

    Args:
        annotations: Annotation map from the cluster object (may be None)

    Returns:
        ControlSignals instance
    """
    annotations = annotations or {}
    try:
        retry_count = int(annotations.get(ANNOTATION_RETRY_COUNT, "0") or 0)
    except ValueError:
        retry_count = 0

    return ControlSignals(
        trigger=_flag(annotations, ANNOTATION_TRIGGER_UPGRADE),
        proceed=_flag(annotations, ANNOTATION_PROCEED_UPGRADE),
        cancel=_flag(annotations, ANNOTATION_CANCEL_UPGRADE),
        skip_forest_check=_flag(annotations, ANNOTATION_SKIP_FOREST_CHECK),
        paused=_flag(annotations, ANNOTATION_UPGRADE_PAUSED),
        retry=_flag(annotations, ANNOTATION_RETRY_UPGRADE),
        force_proceed=_flag(annotations, ANNOTATION_FORCE_PROCEED),
        retry_count=retry_count,
        pause=_meta(
            annotations, ANNOTATION_PAUSE_REASON, ANNOTATION_PAUSE_TIME, ANNOTATION_PAUSE_USER
        ),
        resume=_meta(
            annotations, ANNOTATION_RESUME_REASON, ANNOTATION_RESUME_TIME, ANNOTATION_RESUME_USER
        ),
        retry_meta=_meta(
            annotations, ANNOTATION_RETRY_REASON, ANNOTATION_RETRY_TIME, ANNOTATION_RETRY_USER
        ),
        force=_meta(
            annotations, ANNOTATION_FORCE_REASON, ANNOTATION_FORCE_TIME, ANNOTATION_FORCE_USER
        ),
        cancel_meta=_meta(
            annotations, ANNOTATION_CANCEL_REASON, ANNOTATION_CANCEL_TIME, ANNOTATION_CANCEL_USER
        ),
    )


def apply_intent(annotations: Optional[Dict[str, str]], intent: Intent) -> Dict[str, str]:
    """
    Render an intent into a new annotation map.

    The input map is not modified.

    Args:
        annotations: Current annotation map
        intent: Requested action with its metadata

    Returns:
        Updated copy of the annotation map
    """
    updated = dict(annotations or {})
    when = (intent.timestamp or utcnow()).isoformat()

    def stamp(reason_key: str, time_key: str, user_key: str) -> None:
        updated[reason_key] = intent.reason
        updated[time_key] = when
        updated[user_key] = intent.requested_by

    action = intent.action
    if action == IntentAction.TRIGGER:
        updated[ANNOTATION_TRIGGER_UPGRADE] = "true"
    elif action == IntentAction.PROCEED:
        updated[ANNOTATION_PROCEED_UPGRADE] = "true"
    elif action == IntentAction.SKIP_FOREST_CHECK:
        updated[ANNOTATION_SKIP_FOREST_CHECK] = "true"
    elif action == IntentAction.CANCEL:
        updated[ANNOTATION_CANCEL_UPGRADE] = "true"
        stamp(ANNOTATION_CANCEL_REASON, ANNOTATION_CANCEL_TIME, ANNOTATION_CANCEL_USER)
    elif action == IntentAction.PAUSE:
        updated[ANNOTATION_UPGRADE_PAUSED] = "true"
        stamp(ANNOTATION_PAUSE_REASON, ANNOTATION_PAUSE_TIME, ANNOTATION_PAUSE_USER)
    elif action == IntentAction.RESUME:
        updated.pop(ANNOTATION_UPGRADE_PAUSED, None)
        stamp(ANNOTATION_RESUME_REASON, ANNOTATION_RESUME_TIME, ANNOTATION_RESUME_USER)
    elif action == IntentAction.RETRY:
        updated[ANNOTATION_RETRY_UPGRADE] = "true"
        stamp(ANNOTATION_RETRY_REASON, ANNOTATION_RETRY_TIME, ANNOTATION_RETRY_USER)
    elif action == IntentAction.FORCE_PROCEED:
        updated[ANNOTATION_FORCE_PROCEED] = "true"
        stamp(ANNOTATION_FORCE_REASON, ANNOTATION_FORCE_TIME, ANNOTATION_FORCE_USER)
    else:
        raise ValueError(f"Unsupported intent action: {action}")

    return updated


def clear_control_signals(annotations: Dict[str, str]) -> Dict[str, str]:
    """Return a copy with control signals and attempt bookkeeping removed.

    The precheck report, retry count and intent metadata are kept for audit.
    """
    updated = dict(annotations)
    for key in CONTROL_SIGNAL_KEYS + ATTEMPT_KEYS:
        updated.pop(key, None)
    return updated
