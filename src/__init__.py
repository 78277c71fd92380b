"""
MarkLogic Cluster Upgrade Orchestrator.
"""

from clients import ApiError, ConflictError, KubernetesRestClient, NotFoundError
from config import OrchestratorConfig
from log_utils import setup_logging
from models import (
    AdvanceResult,
    CheckStatus,
    ClusterRecord,
    PrecheckReport,
    PrecheckResult,
    UpgradeState,
)
from notifier import EventNotifier
from orchestrator import UpgradeOrchestrator
from prechecks import PrecheckRunner
from probes import ClusterProbe
from reconciler import FleetReconciler
from rollout import RolloutExecutor, RolloutError, RolloutTimeoutError
from signals import Intent, IntentAction, apply_intent, parse_signals
from store import ClusterStateStore

__all__ = [
    "ApiError",
    "ConflictError",
    "NotFoundError",
    "KubernetesRestClient",
    "OrchestratorConfig",
    "setup_logging",
    "AdvanceResult",
    "CheckStatus",
    "ClusterRecord",
    "PrecheckReport",
    "PrecheckResult",
    "UpgradeState",
    "EventNotifier",
    "UpgradeOrchestrator",
    "PrecheckRunner",
    "ClusterProbe",
    "FleetReconciler",
    "RolloutExecutor",
    "RolloutError",
    "RolloutTimeoutError",
    "Intent",
    "IntentAction",
    "apply_intent",
    "parse_signals",
    "ClusterStateStore",
]
