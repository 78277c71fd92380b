"""
Interactive upgrade workflow for MarkLogic clusters.

The orchestrator is a level-triggered state machine: every call to
advance() re-reads the cluster object, takes at most one transition,
persists it, and returns a hint for when it should be called again. It keeps
no state of its own between calls; the cluster object is the only record.

    Idle -> PrecheckStarted -> PrecheckCompleted -> WaitingForUserApproval
         -> UpgradeInProgress -> UpgradeCompleted -> Idle

Any non-InProgress state can be cancelled; collaborator errors end the
attempt in UpgradeFailed, from which an explicit retry starts a fresh one.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from clients import ConflictError
from models import (
    STATE_PROGRESS,
    AdvanceResult,
    ClusterRecord,
    Condition,
    PrecheckReport,
    UpgradeState,
    format_k8s_time,
    upsert_condition,
    utcnow,
)
from notifier import EventNotifier
from prechecks import PrecheckRunner
from rollout import RolloutExecutor
from signals import (
    ANNOTATION_CANCEL_UPGRADE,
    ANNOTATION_FORCE_PROCEED,
    ANNOTATION_HALTED_IMAGE,
    ANNOTATION_PRECHECK_RESULTS,
    ANNOTATION_PREVIOUS_IMAGE,
    ANNOTATION_PROCEED_UPGRADE,
    ANNOTATION_RETRY_COUNT,
    ANNOTATION_RETRY_UPGRADE,
    ANNOTATION_TRIGGER_UPGRADE,
    ANNOTATION_UPGRADE_STATE,
    ATTEMPT_KEYS,
    ControlSignals,
    clear_control_signals,
    parse_signals,
)
from store import ClusterStateStore

logger = logging.getLogger(__name__)

CONDITION_TYPE = "UpgradeInProgress"

PAUSABLE_STATES = {
    UpgradeState.PRECHECK_STARTED,
    UpgradeState.PRECHECK_COMPLETED,
    UpgradeState.WAITING_FOR_APPROVAL,
}


class UpgradeOrchestrator:
    """Drives one cluster's upgrade attempt forward by at most one step per call."""

    def __init__(
        self,
        store: ClusterStateStore,
        prechecks: PrecheckRunner,
        rollout: RolloutExecutor,
        notifier: EventNotifier,
        precheck_poll_interval: int = 120,
        approval_poll_interval: int = 300,
        rollout_poll_interval: int = 120,
        settle_interval: int = 5,
        conflict_retry_interval: int = 5,
        min_cluster_age: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Set up the orchestrator.

        Args:
            store: State store holding the cluster objects
            prechecks: Precheck runner
            rollout: Rollout executor
            notifier: Event notifier
            precheck_poll_interval: Requeue (seconds) while prechecks run
            approval_poll_interval: Requeue (seconds) while waiting for approval or paused
            rollout_poll_interval: Requeue (seconds) while the rollout converges
            settle_interval: Requeue (seconds) after a transition
            conflict_retry_interval: Requeue (seconds) after a write conflict
            min_cluster_age: Age (seconds) before image drift may trigger an upgrade
            clock: Time source
        """
        self.store = store
        self.prechecks = prechecks
        self.rollout = rollout
        self.notifier = notifier
        self.precheck_poll_interval = precheck_poll_interval
        self.approval_poll_interval = approval_poll_interval
        self.rollout_poll_interval = rollout_poll_interval
        self.settle_interval = settle_interval
        self.conflict_retry_interval = conflict_retry_interval
        self.min_cluster_age = min_cluster_age
        self.clock = clock

    def advance(self, namespace: str, name: str) -> AdvanceResult:
        """
        Take zero or one step of the upgrade workflow for a cluster.

        Args:
            namespace: Cluster namespace
            name: Cluster name

        Returns:
            AdvanceResult with the resulting state and requeue hint

        Raises:
            NotFoundError: If the cluster does not exist
            ApiError: If the state store cannot be read or written
        """
        record = self.store.load(namespace, name)
        try:
            return self._advance(record)
        except ConflictError as e:
            # Someone else wrote the object since we read it; re-derive next tick
            logger.warning(f"[{record.ref}] Write conflict, abandoning transition: {e}")
            state = UpgradeState.parse(record.annotations.get(ANNOTATION_UPGRADE_STATE))
            return AdvanceResult(
                state=state or UpgradeState.IDLE,
                requeue_after=self.conflict_retry_interval,
                message="conflict",
            )

    def _advance(self, record: ClusterRecord) -> AdvanceResult:
        raw_state = record.annotations.get(ANNOTATION_UPGRADE_STATE, "")
        state = UpgradeState.parse(raw_state)

        if state is not None:
            record = self._repair_status_drift(record, state)

        signals = parse_signals(record.annotations)
        pending = record.copy()

        if state == UpgradeState.IDLE:
            if not record.status.current_image:
                return self._record_baseline(pending)

            # A cancel with no attempt requested has nothing to cancel
            stale_cancel = signals.cancel and not (signals.trigger or signals.retry)
            if stale_cancel:
                logger.info(f"[{record.ref}] Clearing cancel signal, no upgrade is running")
                pending.annotations.pop(ANNOTATION_CANCEL_UPGRADE, None)
                signals = parse_signals(pending.annotations)

            if not signals.trigger and self._image_drift(record):
                logger.info(
                    f"[{record.ref}] Image change detected, triggering upgrade "
                    f"(current={record.status.current_image}, desired={record.image})"
                )
                pending.annotations[ANNOTATION_TRIGGER_UPGRADE] = "true"
                signals = parse_signals(pending.annotations)

            if not (signals.trigger or signals.retry):
                if stale_cancel:
                    self.store.commit(pending)
                    return AdvanceResult(state=UpgradeState.IDLE, message="stale cancel cleared")
                return AdvanceResult(state=UpgradeState.IDLE)

        logger.info(f"[{record.ref}] Processing upgrade workflow (state={raw_state or 'Idle'})")

        if signals.cancel:
            return self._handle_cancellation(pending, state, signals)

        if state is None:
            logger.warning(f"[{record.ref}] Unknown upgrade state {raw_state!r}, resetting to idle")
            return self._transition(pending, UpgradeState.IDLE)

        if not state.is_terminal:
            if signals.paused:
                if state == UpgradeState.IN_PROGRESS:
                    self.notifier.warning(
                        pending,
                        "PauseDenied",
                        "Cannot pause upgrade while rolling upgrade is in progress",
                    )
                else:
                    return self._hold_paused(pending, state, signals)
            elif record.status.upgrade_paused:
                pending = self._mark_resumed(pending, signals)

        if state == UpgradeState.IDLE:
            return self._start_prechecks(pending, signals)
        if state == UpgradeState.PRECHECK_STARTED:
            return self._handle_precheck_started(pending)
        if state == UpgradeState.PRECHECK_COMPLETED:
            return self._handle_precheck_completed(pending)
        if state == UpgradeState.WAITING_FOR_APPROVAL:
            return self._handle_waiting_for_approval(pending, signals)
        if state == UpgradeState.IN_PROGRESS:
            return self._handle_in_progress(pending)
        return self._handle_terminal(pending, state, signals)

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _start_prechecks(self, pending: ClusterRecord, signals: ControlSignals) -> AdvanceResult:
        if signals.retry:
            self._consume_retry(pending, signals)
        pending.annotations.pop(ANNOTATION_HALTED_IMAGE, None)

        logger.info(f"[{pending.ref}] Upgrade triggered, starting prechecks")
        try:
            self.prechecks.start(pending)
        except Exception as e:
            logger.error(f"[{pending.ref}] Failed to start prechecks: {e}")
            self.notifier.warning(pending, "PrecheckFailed", f"Failed to start prechecks: {e}")
            return self._transition(pending, UpgradeState.FAILED, message=f"Failed to start prechecks: {e}")

        return self._transition(pending, UpgradeState.PRECHECK_STARTED)

    def _handle_precheck_started(self, pending: ClusterRecord) -> AdvanceResult:
        try:
            done, report = self.prechecks.status(pending)
        except Exception as e:
            logger.error(f"[{pending.ref}] Error checking precheck status: {e}")
            self.notifier.warning(pending, "PrecheckError", f"Error during prechecks: {e}")
            return self._transition(pending, UpgradeState.FAILED, message=f"Error during prechecks: {e}")

        if not done or report is None:
            logger.debug(f"[{pending.ref}] Prechecks still in progress")
            return AdvanceResult(
                state=UpgradeState.PRECHECK_STARTED,
                requeue_after=self.precheck_poll_interval,
            )

        self.notifier.normal(
            pending,
            "PrecheckCompleted",
            f"Prechecks completed with {len(report.results)} checks",
        )
        return self._transition(pending, UpgradeState.PRECHECK_COMPLETED, report=report)

    def _handle_precheck_completed(self, pending: ClusterRecord) -> AdvanceResult:
        report = self._load_report(pending)
        if report is not None:
            s = report.summary
            verdict = (
                f"{s.passed} passed, {s.warnings} warning(s), {s.failed} failed"
                f"{'' if s.can_proceed else '; upgrade is blocked unless forced'}"
            )
            logger.info(f"[{pending.ref}] Precheck results available for review: {verdict}")
        else:
            verdict = "no readable precheck report"

        self.notifier.normal(
            pending,
            "AwaitingApproval",
            f"Prechecks completed ({verdict}). Review results and set annotation "
            f"{ANNOTATION_PROCEED_UPGRADE}=true to proceed or {ANNOTATION_CANCEL_UPGRADE}=true to cancel",
        )
        return self._transition(pending, UpgradeState.WAITING_FOR_APPROVAL)

    def _handle_waiting_for_approval(
        self, pending: ClusterRecord, signals: ControlSignals
    ) -> AdvanceResult:
        if signals.force_proceed:
            who = signals.force.requested_by or "unknown"
            why = signals.force.reason or "no reason given"
            logger.warning(f"[{pending.ref}] Upgrade forced by {who}: {why}")
            self.notifier.warning(
                pending,
                "UpgradeForced",
                f"Upgrade forced past precheck verdict by {who}: {why}",
            )
            return self._start_rollout(pending, message=f"Upgrade forced by {who}: {why}")

        if signals.proceed:
            report = self._load_report(pending)
            if report is None:
                self.notifier.warning(
                    pending,
                    "PrecheckReportUnavailable",
                    "No readable precheck report; proceeding on user approval alone",
                )
            elif not report.summary.can_proceed:
                self.notifier.warning(
                    pending,
                    "ProceedBlocked",
                    f"Prechecks reported {report.summary.failed} failure(s); resolve them or set "
                    f"{ANNOTATION_FORCE_PROCEED}=true to override",
                )
                return AdvanceResult(
                    state=UpgradeState.WAITING_FOR_APPROVAL,
                    requeue_after=self.approval_poll_interval,
                    message="proceed blocked by precheck failures",
                )

            logger.info(f"[{pending.ref}] User approved upgrade, starting rolling upgrade")
            self.notifier.normal(
                pending, "UpgradeApproved", "User approved upgrade, starting rolling upgrade"
            )
            return self._start_rollout(pending)

        logger.debug(f"[{pending.ref}] Waiting for user approval or cancellation")
        return AdvanceResult(
            state=UpgradeState.WAITING_FOR_APPROVAL,
            requeue_after=self.approval_poll_interval,
        )

    def _start_rollout(self, pending: ClusterRecord, message: Optional[str] = None) -> AdvanceResult:
        try:
            self.rollout.start(pending)
        except Exception as e:
            logger.error(f"[{pending.ref}] Failed to start rolling upgrade: {e}")
            self.notifier.warning(pending, "UpgradeFailed", f"Failed to start rolling upgrade: {e}")
            return self._transition(
                pending, UpgradeState.FAILED, message=f"Failed to start rolling upgrade: {e}"
            )
        return self._transition(pending, UpgradeState.IN_PROGRESS, message=message)

    def _handle_in_progress(self, pending: ClusterRecord) -> AdvanceResult:
        try:
            completed = self.rollout.status(pending)
        except Exception as e:
            logger.error(f"[{pending.ref}] Error during rolling upgrade: {e}")
            self.notifier.warning(pending, "UpgradeError", f"Error during rolling upgrade: {e}")
            return self._transition(
                pending, UpgradeState.FAILED, message=f"Error during rolling upgrade: {e}"
            )

        if not completed:
            logger.debug(f"[{pending.ref}] Rolling upgrade still in progress")
            return AdvanceResult(
                state=UpgradeState.IN_PROGRESS,
                requeue_after=self.rollout_poll_interval,
            )

        logger.info(f"[{pending.ref}] ✓ Rolling upgrade completed successfully")
        self.notifier.normal(pending, "UpgradeCompleted", "Rolling upgrade completed successfully")
        pending.status.current_image = pending.image
        return self._transition(pending, UpgradeState.COMPLETED, clear_signals=True)

    def _handle_terminal(
        self, pending: ClusterRecord, state: UpgradeState, signals: ControlSignals
    ) -> AdvanceResult:
        if state == UpgradeState.FAILED and signals.retry:
            return self._start_prechecks(pending, signals)

        return self._transition(
            pending,
            UpgradeState.IDLE,
            clear_signals=True,
            message=f"Upgrade workflow completed with state: {state.value}",
        )

    def _handle_cancellation(
        self, pending: ClusterRecord, state: Optional[UpgradeState], signals: ControlSignals
    ) -> AdvanceResult:
        logger.info(f"[{pending.ref}] Upgrade cancellation requested (state={state.value if state else 'unknown'})")

        if state == UpgradeState.IN_PROGRESS:
            self.notifier.warning(
                pending,
                "CancellationDenied",
                "Cannot cancel upgrade while rolling upgrade is in progress",
            )
            return AdvanceResult(
                state=UpgradeState.IN_PROGRESS,
                requeue_after=self.rollout_poll_interval,
                message="cancellation denied",
            )

        who = signals.cancel_meta.requested_by or "user"
        reason = f": {signals.cancel_meta.reason}" if signals.cancel_meta.reason else ""
        self.notifier.normal(pending, "UpgradeCancelled", f"Upgrade cancelled by {who}{reason}")
        return self._transition(
            pending,
            UpgradeState.CANCELLED,
            clear_signals=True,
            message=f"Upgrade cancelled by {who}{reason}",
        )

    def _hold_paused(
        self, pending: ClusterRecord, state: UpgradeState, signals: ControlSignals
    ) -> AdvanceResult:
        if not pending.status.upgrade_paused:
            who = signals.pause.requested_by or "user"
            reason = f": {signals.pause.reason}" if signals.pause.reason else ""
            self.notifier.normal(pending, "UpgradePaused", f"Upgrade paused by {who}{reason}")
            pending.status.upgrade_paused = True
            pending.status.can_pause = False
            pending.status.message = f"Upgrade paused in state {state.value}"
            self.store.commit_status(pending)
        return AdvanceResult(
            state=state,
            requeue_after=self.approval_poll_interval,
            message="paused",
        )

    def _mark_resumed(self, pending: ClusterRecord, signals: ControlSignals) -> ClusterRecord:
        who = signals.resume.requested_by or "user"
        reason = f": {signals.resume.reason}" if signals.resume.reason else ""
        self.notifier.normal(pending, "UpgradeResumed", f"Upgrade resumed by {who}{reason}")
        pending.status.upgrade_paused = False
        resumed = self.store.commit_status(pending)
        # Keep any in-memory changes made earlier this tick (e.g. auto-trigger)
        resumed.annotations = dict(pending.annotations)
        return resumed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_baseline(self, pending: ClusterRecord) -> AdvanceResult:
        """Record the desired image of a never-deployed cluster as its current image."""
        if not pending.image:
            logger.debug(f"[{pending.ref}] No image in spec, nothing to record")
            return AdvanceResult(state=UpgradeState.IDLE)

        logger.info(f"[{pending.ref}] New cluster detected, recording current image {pending.image}")
        pending.status.current_image = pending.image
        self.store.commit_status(pending)
        return AdvanceResult(state=UpgradeState.IDLE, message="baseline recorded")

    def _is_settled(self, record: ClusterRecord) -> bool:
        """True once the cluster has finished its first deployment."""
        for cond_type in ("Ready", "Deployed"):
            cond = record.status.condition(cond_type)
            if cond is not None and cond.status == "True":
                return True
        if record.creation_timestamp is None:
            return True
        age = self.clock() - record.creation_timestamp
        return age >= timedelta(seconds=self.min_cluster_age)

    def _image_drift(self, record: ClusterRecord) -> bool:
        current = record.status.current_image
        desired = record.image
        if not current or not desired or current == desired:
            return False
        if record.annotations.get(ANNOTATION_HALTED_IMAGE) == desired:
            logger.debug(
                f"[{record.ref}] Last attempt for {desired} was halted; waiting for an explicit trigger"
            )
            return False
        return self._is_settled(record)

    def _load_report(self, record: ClusterRecord) -> Optional[PrecheckReport]:
        raw = record.annotations.get(ANNOTATION_PRECHECK_RESULTS)
        if not raw:
            return None
        try:
            return PrecheckReport.from_json(raw)
        except ValueError as e:
            logger.error(f"[{record.ref}] Failed to read stored precheck results: {e}")
            return None

    def _consume_retry(self, pending: ClusterRecord, signals: ControlSignals) -> None:
        count = signals.retry_count + 1
        # Approval from the failed attempt does not carry over to the new one
        for key in (ANNOTATION_RETRY_UPGRADE, ANNOTATION_PROCEED_UPGRADE, ANNOTATION_FORCE_PROCEED):
            pending.annotations.pop(key, None)
        pending.annotations[ANNOTATION_RETRY_COUNT] = str(count)
        for key in ATTEMPT_KEYS:
            pending.annotations.pop(key, None)

        who = signals.retry_meta.requested_by or "user"
        reason = f": {signals.retry_meta.reason}" if signals.retry_meta.reason else ""
        self.notifier.normal(pending, "UpgradeRetry", f"Retry #{count} requested by {who}{reason}")

    def _repair_status_drift(self, record: ClusterRecord, state: UpgradeState) -> ClusterRecord:
        """Rewrite the status if an earlier status write was lost."""
        recorded = record.status.upgrade_state
        if recorded == state.value or (not recorded and state == UpgradeState.IDLE):
            return record

        logger.warning(
            f"[{record.ref}] Status reports {recorded or 'nothing'} but state is {state.value}; repairing status"
        )
        pending = record.copy()
        self._apply_status(pending, state)
        return self.store.commit_status(pending)

    def _apply_status(
        self, record: ClusterRecord, state: UpgradeState, message: Optional[str] = None
    ) -> None:
        now = self.clock()
        status = record.status
        active = state not in (UpgradeState.IDLE,) and not state.is_terminal

        status.phase = state.value
        status.upgrade_state = state.value
        status.progress = f"{STATE_PROGRESS[state]}%"
        status.upgrade_paused = False
        status.can_pause = state in PAUSABLE_STATES
        status.can_cancel = active and state != UpgradeState.IN_PROGRESS
        status.can_rollback = bool(record.annotations.get(ANNOTATION_PREVIOUS_IMAGE)) and state in (
            UpgradeState.COMPLETED,
            UpgradeState.FAILED,
        )
        if state == UpgradeState.COMPLETED:
            status.last_upgrade_time = format_k8s_time(now)

        if active:
            default_message = f"Upgrade workflow in state: {state.value}"
        else:
            default_message = f"Upgrade workflow completed with state: {state.value}"
        status.message = message or default_message

        status.conditions = upsert_condition(
            status.conditions,
            Condition(
                type=CONDITION_TYPE,
                status="True" if active else "False",
                reason=state.value,
                message=status.message,
                last_transition_time=format_k8s_time(now),
            ),
        )

    def _transition(
        self,
        pending: ClusterRecord,
        new_state: UpgradeState,
        report: Optional[PrecheckReport] = None,
        clear_signals: bool = False,
        message: Optional[str] = None,
    ) -> AdvanceResult:
        """
        Persist a state change with its report, status and condition.

        Raises:
            ConflictError: If the object changed since it was read
            ApiError: If the write fails
        """
        pending.annotations[ANNOTATION_UPGRADE_STATE] = new_state.value

        if report is not None:
            try:
                pending.annotations[ANNOTATION_PRECHECK_RESULTS] = report.to_json()
            except (TypeError, ValueError) as e:
                logger.error(f"[{pending.ref}] Failed to serialize precheck results: {e}")

        if new_state in (UpgradeState.FAILED, UpgradeState.CANCELLED) and pending.image:
            pending.annotations[ANNOTATION_HALTED_IMAGE] = pending.image
        elif new_state == UpgradeState.COMPLETED:
            pending.annotations.pop(ANNOTATION_HALTED_IMAGE, None)

        if clear_signals:
            pending.annotations = clear_control_signals(pending.annotations)

        self._apply_status(pending, new_state, message)
        self.store.commit(pending)

        logger.info(f"[{pending.ref}] Updated upgrade state -> {new_state.value}")
        return AdvanceResult(
            state=new_state,
            requeue_after=None if new_state == UpgradeState.IDLE else self.settle_interval,
            transitioned=True,
            message=message or "",
        )
