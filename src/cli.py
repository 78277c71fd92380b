"""Console entry point for the MarkLogic Cluster Upgrade Orchestrator CLI."""

from __future__ import annotations

import argparse
import json
import logging
from typing import List

from clients import ApiError, ConflictError, NotFoundError
from config import OrchestratorConfig
from log_utils import setup_logging
from models import ClusterRecord
from reconciler import FleetReconciler
from signals import Intent, IntentAction, apply_intent
from store import ClusterStateStore

logger = logging.getLogger(__name__)

SIGNAL_WRITE_ATTEMPTS = 3


def send_signal(store: ClusterStateStore, namespace: str, name: str, intent: Intent) -> ClusterRecord:
    """
    Record an intent on a cluster object.

    The object is re-read and the intent re-applied when another writer got
    there first.

    Raises:
        NotFoundError: If the cluster does not exist
        ConflictError: If every attempt lost the race
    """
    for attempt in range(1, SIGNAL_WRITE_ATTEMPTS + 1):
        record = store.load(namespace, name)
        record.annotations = apply_intent(record.annotations, intent)
        try:
            written = store.commit(record)
        except ConflictError:
            if attempt == SIGNAL_WRITE_ATTEMPTS:
                raise
            logger.warning(
                f"[{record.ref}] Conflict writing {intent.action.value} signal, retrying "
                f"(attempt {attempt}/{SIGNAL_WRITE_ATTEMPTS})"
            )
            continue
        logger.info(f"[{record.ref}] ✓ Recorded {intent.action.value} signal")
        return written
    raise ConflictError(f"Could not record {intent.action.value} signal on {namespace}/{name}")


def describe(record: ClusterRecord) -> dict:
    """Summary of a cluster's upgrade status for display."""
    status = record.status.to_dict()
    return {
        "cluster": record.ref,
        "image": record.image,
        "annotations": {k: v for k, v in record.annotations.items() if k.startswith("marklogic.com/")},
        "status": status,
    }


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    defaults = OrchestratorConfig()

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--api-server", default=defaults.api_server, help="Kubernetes API server URL")
    common.add_argument("--ca-cert", help="Path to the API server CA bundle")
    common.add_argument(
        "--namespaces",
        nargs="+",
        default=[],
        metavar="NAMESPACE",
        help="Namespaces to operate on (default: all namespaces)",
    )
    common.add_argument("--cluster", help="Specific cluster name (single cluster mode)")
    common.add_argument("--container-name", default=defaults.container_name)
    common.add_argument("--precheck-poll-interval", type=int, default=defaults.precheck_poll_interval)
    common.add_argument("--approval-poll-interval", type=int, default=defaults.approval_poll_interval)
    common.add_argument("--rollout-poll-interval", type=int, default=defaults.rollout_poll_interval)
    common.add_argument(
        "--rollout-timeout",
        type=int,
        default=defaults.rollout_timeout,
        metavar="SECONDS",
        help="Fail a rolling upgrade that has not converged after this long (0 disables)",
    )
    common.add_argument("--min-cluster-age", type=int, default=defaults.min_cluster_age)
    common.add_argument("--max-parallel", type=int, default=defaults.max_parallel)
    common.add_argument("--loop-interval", type=int, default=defaults.loop_interval)
    common.add_argument("--log-file", default="marklogic-upgrade.log")
    common.add_argument("--verbose", action="store_true")
    common.add_argument("--json-logs", action="store_true", help="Emit one JSON object per log line")

    parser = argparse.ArgumentParser(
        description="MarkLogic Cluster Upgrade Orchestrator CLI",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("advance", parents=[common], help="Advance one cluster by a single step")

    reconcile = sub.add_parser(
        "reconcile", parents=[common], help="Reconcile every cluster in scope"
    )
    reconcile.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    reconcile.add_argument("--max-cycles", type=int, help="Stop after this many cycles")

    signal = sub.add_parser("signal", parents=[common], help="Send a control signal to a cluster")
    signal.add_argument("action", choices=[a.value for a in IntentAction])
    signal.add_argument("--reason", default="", help="Why the action is requested")
    signal.add_argument("--requested-by", default="", help="Who requests the action")

    sub.add_parser("status", parents=[common], help="Show upgrade status of clusters")

    return parser


def _single_cluster(config: OrchestratorConfig) -> tuple:
    if not config.cluster or len(config.namespaces) != 1:
        raise ValueError("--cluster and exactly one --namespaces value are required")
    return config.namespaces[0], config.cluster


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file, json_format=args.json_logs)

    try:
        config = OrchestratorConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    reconciler = FleetReconciler.from_config(config)

    try:
        if args.command == "advance":
            namespace, name = _single_cluster(config)
            result = reconciler.orchestrator.advance(namespace, name)
            logger.info(
                f"[{namespace}/{name}] state={result.state.value} "
                f"transitioned={result.transitioned} requeue_after={result.requeue_after}"
            )
            return 0

        if args.command == "reconcile":
            max_cycles = 1 if args.once else args.max_cycles
            stats = reconciler.run(cluster=config.cluster, max_cycles=max_cycles)
            return 1 if stats.get("errors", 0) > 0 else 0

        if args.command == "signal":
            namespace, name = _single_cluster(config)
            intent = Intent(
                action=IntentAction(args.action),
                reason=args.reason,
                requested_by=args.requested_by,
            )
            send_signal(reconciler.store, namespace, name, intent)
            return 0

        if args.command == "status":
            refs = reconciler.scan(config.cluster)
            for ref in refs:
                record = reconciler.store.load(ref.namespace, ref.name)
                print(json.dumps(describe(record), indent=2))
            return 0 if refs else 1
    except ValueError as e:
        logger.error(str(e))
        return 2
    except NotFoundError as e:
        logger.error(f"Cluster not found: {e}")
        return 1
    except ApiError as e:
        logger.error(f"API error: {e}")
        return 1

    return 0
