"""
Unit tests for the upgrade workflow state machine.
"""

import unittest
from unittest.mock import patch

from clients import ApiError, ConflictError
from fakes import (
    FakeClock,
    FakePrechecks,
    FakeRollout,
    InMemoryStateStore,
    RecordingNotifier,
    make_report,
    make_resource,
)
from models import CheckStatus, UpgradeState
from orchestrator import CONDITION_TYPE, UpgradeOrchestrator
from rollout import RolloutTimeoutError
from signals import (
    ANNOTATION_CANCEL_UPGRADE,
    ANNOTATION_CANCEL_USER,
    ANNOTATION_FORCE_PROCEED,
    ANNOTATION_FORCE_REASON,
    ANNOTATION_FORCE_USER,
    ANNOTATION_HALTED_IMAGE,
    ANNOTATION_PRECHECK_RESULTS,
    ANNOTATION_PRECHECK_STARTED_AT,
    ANNOTATION_PROCEED_UPGRADE,
    ANNOTATION_RETRY_COUNT,
    ANNOTATION_RETRY_UPGRADE,
    ANNOTATION_TRIGGER_UPGRADE,
    ANNOTATION_UPGRADE_PAUSED,
    ANNOTATION_UPGRADE_STATE,
)

NEW_IMAGE = "progressofficial/marklogic-db:11.2.0"
OLD_IMAGE = "progressofficial/marklogic-db:11.1.0"


def in_state(state: UpgradeState, **extra_annotations):
    """Annotations and status of a cluster sitting in the given state."""
    annotations = {ANNOTATION_UPGRADE_STATE: state.value}
    annotations.update(extra_annotations)
    return {"annotations": annotations, "status": {"upgradeState": state.value}}


class OrchestratorTestCase(unittest.TestCase):
    """Shared wiring for orchestrator tests."""

    def build(self, **resource_kwargs):
        self.clock = FakeClock()
        self.store = InMemoryStateStore(make_resource(**resource_kwargs))
        self.prechecks = FakePrechecks(clock=self.clock)
        self.rollout = FakeRollout(clock=self.clock)
        self.notifier = RecordingNotifier()
        self.orch = UpgradeOrchestrator(
            self.store,
            self.prechecks,
            self.rollout,
            self.notifier,
            clock=self.clock,
        )

    def tick(self):
        return self.orch.advance("marklogic", "ml-prod")

    def state(self) -> str:
        return self.store.annotations().get(ANNOTATION_UPGRADE_STATE, "")

    def signal(self, **annotations):
        self.store.touch(**annotations)


class TestHappyPath(OrchestratorTestCase):
    """Trigger, prechecks, approval, rollout, completion."""

    def setUp(self):
        self.build(annotations={ANNOTATION_TRIGGER_UPGRADE: "true"})

    def test_full_upgrade_cycle(self):
        result = self.tick()
        self.assertEqual(result.state, UpgradeState.PRECHECK_STARTED)
        self.assertTrue(result.transitioned)
        self.assertEqual(result.requeue_after, 5)
        self.assertIn(ANNOTATION_PRECHECK_STARTED_AT, self.store.annotations())

        result = self.tick()
        self.assertEqual(result.state, UpgradeState.PRECHECK_COMPLETED)
        self.assertIn(ANNOTATION_PRECHECK_RESULTS, self.store.annotations())
        self.assertIn("PrecheckCompleted", self.notifier.reasons())

        result = self.tick()
        self.assertEqual(result.state, UpgradeState.WAITING_FOR_APPROVAL)
        self.assertIn("AwaitingApproval", self.notifier.reasons())

        result = self.tick()
        self.assertEqual(result.state, UpgradeState.WAITING_FOR_APPROVAL)
        self.assertFalse(result.transitioned)
        self.assertEqual(result.requeue_after, 300)

        self.signal(**{ANNOTATION_PROCEED_UPGRADE: "true"})
        result = self.tick()
        self.assertEqual(result.state, UpgradeState.IN_PROGRESS)
        self.assertEqual(self.rollout.started, [NEW_IMAGE])
        self.assertIn("UpgradeApproved", self.notifier.reasons())

        result = self.tick()
        self.assertEqual(result.state, UpgradeState.IN_PROGRESS)
        self.assertEqual(result.requeue_after, 120)

        self.rollout.completed = True
        result = self.tick()
        self.assertEqual(result.state, UpgradeState.COMPLETED)
        status = self.store.status()
        self.assertEqual(status["currentImage"], NEW_IMAGE)
        self.assertEqual(status["progress"], "100%")
        self.assertEqual(status["lastUpgradeTime"], "2024-05-01T12:00:00Z")
        annotations = self.store.annotations()
        self.assertNotIn(ANNOTATION_TRIGGER_UPGRADE, annotations)
        self.assertNotIn(ANNOTATION_PROCEED_UPGRADE, annotations)
        self.assertIn(ANNOTATION_PRECHECK_RESULTS, annotations)

        result = self.tick()
        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertIsNone(result.requeue_after)
        self.assertEqual(
            self.store.status()["message"],
            "Upgrade workflow completed with state: UpgradeCompleted",
        )

        writes = len(self.store.writes)
        result = self.tick()
        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertFalse(result.transitioned)
        self.assertEqual(len(self.store.writes), writes)

    def test_status_flags_follow_state(self):
        self.tick()
        status = self.store.status()
        self.assertEqual(status["upgradeState"], "PrecheckStarted")
        self.assertEqual(status["phase"], "PrecheckStarted")
        self.assertEqual(status["progress"], "10%")
        self.assertTrue(status["canPause"])
        self.assertTrue(status["canCancel"])
        condition = next(c for c in status["conditions"] if c["type"] == CONDITION_TYPE)
        self.assertEqual(condition["status"], "True")
        self.assertEqual(condition["reason"], "PrecheckStarted")
        self.assertEqual(condition["lastTransitionTime"], "2024-05-01T12:00:00Z")


class TestApprovalGate(OrchestratorTestCase):
    """Precheck verdict, proceed and force-proceed."""

    def test_proceed_blocked_by_failed_checks(self):
        report = make_report((CheckStatus.PASS, CheckStatus.FAIL))
        self.build(
            **in_state(
                UpgradeState.WAITING_FOR_APPROVAL,
                **{
                    ANNOTATION_PRECHECK_RESULTS: report.to_json(),
                    ANNOTATION_PROCEED_UPGRADE: "true",
                },
            )
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.WAITING_FOR_APPROVAL)
        self.assertEqual(result.requeue_after, 300)
        self.assertFalse(result.transitioned)
        self.assertIn("ProceedBlocked", self.notifier.reasons())
        self.assertEqual(self.rollout.started, [])
        self.assertEqual(self.store.writes, [])

    def test_warnings_do_not_block(self):
        report = make_report((CheckStatus.PASS, CheckStatus.WARN))
        self.build(
            **in_state(
                UpgradeState.WAITING_FOR_APPROVAL,
                **{
                    ANNOTATION_PRECHECK_RESULTS: report.to_json(),
                    ANNOTATION_PROCEED_UPGRADE: "true",
                },
            )
        )

        self.assertEqual(self.tick().state, UpgradeState.IN_PROGRESS)

    def test_force_proceed_overrides_failures(self):
        report = make_report((CheckStatus.FAIL,))
        self.build(
            **in_state(
                UpgradeState.WAITING_FOR_APPROVAL,
                **{
                    ANNOTATION_PRECHECK_RESULTS: report.to_json(),
                    ANNOTATION_FORCE_PROCEED: "true",
                    ANNOTATION_FORCE_REASON: "known flaky check",
                    ANNOTATION_FORCE_USER: "alice",
                },
            )
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IN_PROGRESS)
        severity, reason, message = next(e for e in self.notifier.events if e[1] == "UpgradeForced")
        self.assertEqual(severity, "Warning")
        self.assertIn("alice", message)
        self.assertIn("known flaky check", message)
        self.assertIn("alice", self.store.status()["message"])

    def test_corrupt_report_does_not_block_proceed(self):
        self.build(
            **in_state(
                UpgradeState.WAITING_FOR_APPROVAL,
                **{
                    ANNOTATION_PRECHECK_RESULTS: "{not json",
                    ANNOTATION_PROCEED_UPGRADE: "true",
                },
            )
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IN_PROGRESS)
        self.assertIn("PrecheckReportUnavailable", self.notifier.reasons())

    def test_rollout_start_failure_fails_attempt(self):
        self.build(
            **in_state(
                UpgradeState.WAITING_FOR_APPROVAL,
                **{
                    ANNOTATION_PRECHECK_RESULTS: make_report().to_json(),
                    ANNOTATION_PROCEED_UPGRADE: "true",
                },
            )
        )
        self.rollout.start_error = ApiError("patch rejected", 422)

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.FAILED)
        self.assertIn("UpgradeFailed", self.notifier.reasons())
        self.assertEqual(self.store.annotations()[ANNOTATION_HALTED_IMAGE], NEW_IMAGE)


class TestCancellation(OrchestratorTestCase):
    """Cancel signal handling."""

    def test_cancel_from_every_cancellable_state(self):
        for state in (
            UpgradeState.PRECHECK_STARTED,
            UpgradeState.PRECHECK_COMPLETED,
            UpgradeState.WAITING_FOR_APPROVAL,
            UpgradeState.FAILED,
            UpgradeState.COMPLETED,
            UpgradeState.CANCELLED,
        ):
            with self.subTest(state=state):
                self.build(
                    **in_state(
                        state,
                        **{
                            ANNOTATION_CANCEL_UPGRADE: "true",
                            ANNOTATION_CANCEL_USER: "bob",
                            ANNOTATION_PROCEED_UPGRADE: "true",
                        },
                    )
                )

                result = self.tick()

                self.assertEqual(result.state, UpgradeState.CANCELLED)
                annotations = self.store.annotations()
                self.assertNotIn(ANNOTATION_CANCEL_UPGRADE, annotations)
                self.assertNotIn(ANNOTATION_PROCEED_UPGRADE, annotations)
                self.assertEqual(annotations[ANNOTATION_HALTED_IMAGE], NEW_IMAGE)
                self.assertIn("bob", self.store.status()["message"])
                self.assertIn("UpgradeCancelled", self.notifier.reasons())

    def test_cancel_pending_trigger_in_idle(self):
        self.build(
            **in_state(
                UpgradeState.IDLE,
                **{ANNOTATION_TRIGGER_UPGRADE: "true", ANNOTATION_CANCEL_UPGRADE: "true"},
            )
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.CANCELLED)
        self.assertEqual(self.prechecks.started, 0)
        annotations = self.store.annotations()
        self.assertNotIn(ANNOTATION_TRIGGER_UPGRADE, annotations)
        self.assertEqual(annotations[ANNOTATION_HALTED_IMAGE], NEW_IMAGE)

    def test_cancel_after_completion_keeps_current_image(self):
        self.build(
            current_image=NEW_IMAGE,
            **in_state(UpgradeState.COMPLETED, **{ANNOTATION_CANCEL_UPGRADE: "true"}),
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.CANCELLED)
        self.assertEqual(self.store.annotations()[ANNOTATION_HALTED_IMAGE], NEW_IMAGE)
        self.assertEqual(self.store.status()["currentImage"], NEW_IMAGE)
        self.assertEqual(self.rollout.started, [])

    def test_cancel_without_attempt_is_cleared(self):
        self.build(**in_state(UpgradeState.IDLE, **{ANNOTATION_CANCEL_UPGRADE: "true"}))

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.PRECHECK_STARTED)
        self.assertNotIn(ANNOTATION_CANCEL_UPGRADE, self.store.annotations())
        self.assertNotIn("UpgradeCancelled", self.notifier.reasons())

    def test_cancel_without_attempt_or_drift_is_cleared(self):
        self.build(
            current_image=NEW_IMAGE,
            **in_state(UpgradeState.IDLE, **{ANNOTATION_CANCEL_UPGRADE: "true"}),
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertNotIn(ANNOTATION_CANCEL_UPGRADE, self.store.annotations())
        self.assertEqual(self.store.annotations()[ANNOTATION_UPGRADE_STATE], "Idle")

    def test_cancel_refused_during_rollout(self):
        self.build(**in_state(UpgradeState.IN_PROGRESS, **{ANNOTATION_CANCEL_UPGRADE: "true"}))

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IN_PROGRESS)
        self.assertEqual(result.requeue_after, 120)
        self.assertIn("CancellationDenied", self.notifier.reasons())
        self.assertEqual(self.store.writes, [])
        self.assertEqual(self.state(), "UpgradeInProgress")

    def test_cancelled_image_is_not_retriggered_automatically(self):
        self.build(**in_state(UpgradeState.CANCELLED, **{ANNOTATION_HALTED_IMAGE: NEW_IMAGE}))

        self.assertEqual(self.tick().state, UpgradeState.IDLE)
        writes = len(self.store.writes)

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertFalse(result.transitioned)
        self.assertEqual(len(self.store.writes), writes)

        self.signal(**{ANNOTATION_TRIGGER_UPGRADE: "true"})
        result = self.tick()
        self.assertEqual(result.state, UpgradeState.PRECHECK_STARTED)
        self.assertNotIn(ANNOTATION_HALTED_IMAGE, self.store.annotations())


class TestFailureAndRetry(OrchestratorTestCase):
    """Collaborator errors and retry."""

    def test_rollout_error_fails_attempt(self):
        self.build(**in_state(UpgradeState.IN_PROGRESS))
        self.rollout.status_error = RolloutTimeoutError("did not converge")

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.FAILED)
        self.assertIn("UpgradeError", self.notifier.reasons())
        status = self.store.status()
        self.assertTrue(status["message"].startswith("Error during rolling upgrade"))
        condition = next(c for c in status["conditions"] if c["type"] == CONDITION_TYPE)
        self.assertEqual(condition["status"], "False")

    def test_precheck_start_error_fails_attempt(self):
        self.build(annotations={ANNOTATION_TRIGGER_UPGRADE: "true"})
        self.prechecks.start_error = ApiError("forbidden", 403)

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.FAILED)
        self.assertIn("PrecheckFailed", self.notifier.reasons())

    def test_precheck_status_error_fails_attempt(self):
        self.build(**in_state(UpgradeState.PRECHECK_STARTED, **{ANNOTATION_PRECHECK_STARTED_AT: "x"}))
        self.prechecks.status_error = ApiError("boom", 500)

        self.assertEqual(self.tick().state, UpgradeState.FAILED)
        self.assertIn("PrecheckError", self.notifier.reasons())

    def test_failed_without_retry_returns_to_idle(self):
        self.build(**in_state(UpgradeState.FAILED, **{ANNOTATION_PROCEED_UPGRADE: "true"}))

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertNotIn(ANNOTATION_PROCEED_UPGRADE, self.store.annotations())

    def test_retry_from_failed_starts_fresh_attempt(self):
        self.build(
            **in_state(
                UpgradeState.FAILED,
                **{
                    ANNOTATION_RETRY_UPGRADE: "true",
                    ANNOTATION_PROCEED_UPGRADE: "true",
                    ANNOTATION_PRECHECK_STARTED_AT: "2024-04-01T00:00:00+00:00",
                    ANNOTATION_HALTED_IMAGE: NEW_IMAGE,
                },
            )
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.PRECHECK_STARTED)
        annotations = self.store.annotations()
        self.assertEqual(annotations[ANNOTATION_RETRY_COUNT], "1")
        self.assertNotIn(ANNOTATION_RETRY_UPGRADE, annotations)
        self.assertNotIn(ANNOTATION_PROCEED_UPGRADE, annotations)
        self.assertNotIn(ANNOTATION_HALTED_IMAGE, annotations)
        self.assertEqual(annotations[ANNOTATION_PRECHECK_STARTED_AT], self.clock().isoformat())
        self.assertIn("UpgradeRetry", self.notifier.reasons())

    def test_retry_in_idle_acts_as_trigger(self):
        self.build(annotations={ANNOTATION_RETRY_UPGRADE: "true", ANNOTATION_HALTED_IMAGE: NEW_IMAGE})

        self.assertEqual(self.tick().state, UpgradeState.PRECHECK_STARTED)
        self.assertEqual(self.store.annotations()[ANNOTATION_RETRY_COUNT], "1")


class TestPause(OrchestratorTestCase):
    """Pause and resume."""

    def setUp(self):
        self.build(
            **in_state(
                UpgradeState.WAITING_FOR_APPROVAL,
                **{
                    ANNOTATION_PRECHECK_RESULTS: make_report().to_json(),
                    ANNOTATION_UPGRADE_PAUSED: "true",
                    ANNOTATION_PROCEED_UPGRADE: "true",
                },
            )
        )

    def test_pause_holds_then_resume_continues(self):
        result = self.tick()
        self.assertEqual(result.state, UpgradeState.WAITING_FOR_APPROVAL)
        self.assertEqual(result.message, "paused")
        self.assertEqual(result.requeue_after, 300)
        self.assertTrue(self.store.status()["upgradePaused"])
        self.assertEqual(self.notifier.reasons().count("UpgradePaused"), 1)
        self.assertEqual(self.rollout.started, [])

        writes = len(self.store.writes)
        self.tick()
        self.assertEqual(len(self.store.writes), writes)
        self.assertEqual(self.notifier.reasons().count("UpgradePaused"), 1)

        del self.store.annotations()[ANNOTATION_UPGRADE_PAUSED]
        result = self.tick()
        self.assertIn("UpgradeResumed", self.notifier.reasons())
        self.assertEqual(result.state, UpgradeState.IN_PROGRESS)
        self.assertFalse(self.store.status()["upgradePaused"])

    def test_pause_refused_during_rollout(self):
        self.build(**in_state(UpgradeState.IN_PROGRESS, **{ANNOTATION_UPGRADE_PAUSED: "true"}))
        self.rollout.completed = True

        result = self.tick()

        self.assertIn("PauseDenied", self.notifier.reasons())
        self.assertEqual(result.state, UpgradeState.COMPLETED)
        self.assertNotIn(ANNOTATION_UPGRADE_PAUSED, self.store.annotations())


class TestIdleBehaviour(OrchestratorTestCase):
    """Baseline recording and image-drift triggering."""

    def test_new_cluster_records_baseline(self):
        self.build(current_image=None)

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertEqual(result.message, "baseline recorded")
        self.assertEqual(self.store.status()["currentImage"], NEW_IMAGE)
        self.assertEqual(self.store.writes, [("status", "marklogic/ml-prod")])

    def test_image_drift_triggers_upgrade(self):
        self.build()

        self.assertEqual(self.tick().state, UpgradeState.PRECHECK_STARTED)

    def test_young_cluster_is_not_auto_triggered(self):
        self.build(created="2024-05-01T11:59:00Z")

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertEqual(self.store.writes, [])

    def test_ready_condition_overrides_age(self):
        self.build(
            created="2024-05-01T11:59:00Z",
            status={"conditions": [{"type": "Ready", "status": "True", "reason": "Deployed"}]},
        )

        self.assertEqual(self.tick().state, UpgradeState.PRECHECK_STARTED)

    def test_same_image_stays_idle(self):
        self.build(current_image=NEW_IMAGE)

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertIsNone(result.requeue_after)
        self.assertEqual(self.store.writes, [])


class TestRobustness(OrchestratorTestCase):
    """Unknown states, drift repair, conflicts and idempotence."""

    def test_unknown_state_resets_to_idle(self):
        self.build(annotations={ANNOTATION_UPGRADE_STATE: "Rebooting"})

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertTrue(result.transitioned)
        self.assertEqual(self.state(), "Idle")

    def test_status_drift_is_repaired(self):
        self.build(
            annotations={ANNOTATION_UPGRADE_STATE: "WaitingForUserApproval"},
            status={"upgradeState": "PrecheckCompleted"},
        )

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.WAITING_FOR_APPROVAL)
        self.assertEqual(self.store.writes, [("status", "marklogic/ml-prod")])
        self.assertEqual(self.store.status()["upgradeState"], "WaitingForUserApproval")
        self.assertEqual(self.store.status()["progress"], "40%")

    def test_conflict_abandons_transition(self):
        self.build(annotations={ANNOTATION_TRIGGER_UPGRADE: "true"})

        with patch.object(self.store, "commit", side_effect=ConflictError("stale", 409)):
            result = self.tick()

        self.assertEqual(result.state, UpgradeState.IDLE)
        self.assertEqual(result.requeue_after, 5)
        self.assertEqual(result.message, "conflict")
        self.assertFalse(result.transitioned)
        self.assertNotIn(ANNOTATION_UPGRADE_STATE, self.store.annotations())

    def test_waiting_without_signal_is_idempotent(self):
        self.build(**in_state(UpgradeState.WAITING_FOR_APPROVAL))

        first = self.tick()
        second = self.tick()

        self.assertEqual(first, second)
        self.assertEqual(self.store.writes, [])
        self.assertEqual(self.notifier.events, [])

    def test_same_inputs_give_same_outcome(self):
        outcomes = []
        for _ in range(2):
            self.build(annotations={ANNOTATION_TRIGGER_UPGRADE: "true"})
            for _ in range(3):
                self.tick()
            outcomes.append((self.store.annotations(), self.store.status()))

        self.assertEqual(outcomes[0], outcomes[1])

    def test_not_done_prechecks_requeue(self):
        self.build(**in_state(UpgradeState.PRECHECK_STARTED, **{ANNOTATION_PRECHECK_STARTED_AT: "x"}))
        self.prechecks.done = False

        result = self.tick()

        self.assertEqual(result.state, UpgradeState.PRECHECK_STARTED)
        self.assertEqual(result.requeue_after, 120)
        self.assertEqual(self.store.writes, [])


if __name__ == "__main__":
    unittest.main()
