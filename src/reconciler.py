"""
Fleet reconciler: drives the upgrade orchestrator across many clusters.

Each cycle lists the clusters in the configured namespaces, advances every
cluster whose requeue hint has elapsed, and records when it is next due.
A cluster is never advanced by two workers at once.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, List, Optional

from clients import KubernetesRestClient, NotFoundError
from config import OrchestratorConfig
from models import ClusterRef, ReconcileResult, UpgradeState
from notifier import EventNotifier
from orchestrator import UpgradeOrchestrator
from prechecks import PrecheckRunner
from probes import ClusterProbe
from rollout import RolloutExecutor
from store import ClusterStateStore

logger = logging.getLogger(__name__)


class FleetReconciler:
    """Periodically advances the upgrade workflow of every cluster in scope."""

    def __init__(
        self,
        orchestrator: UpgradeOrchestrator,
        store: ClusterStateStore,
        namespaces: List[str],
        max_parallel: int = 5,
        loop_interval: int = 20,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the fleet reconciler.

        Args:
            orchestrator: Orchestrator used to advance each cluster
            store: State store used to discover clusters
            namespaces: Namespaces to scan (empty means all namespaces)
            max_parallel: Maximum number of clusters advanced concurrently
            loop_interval: Upper bound (seconds) between two visits of a cluster
            clock: Time source returning epoch seconds
        """
        self.orchestrator = orchestrator
        self.store = store
        self.namespaces = namespaces
        self.max_parallel = max_parallel
        self.loop_interval = loop_interval
        self.clock = clock

        self.stats = {
            "total": 0,
            "advanced": 0,
            "waiting": 0,
            "idle": 0,
            "skipped": 0,
            "errors": 0,
        }
        self.results: List[ReconcileResult] = []

        self._due: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(
        cls, config: OrchestratorConfig, client: Optional[KubernetesRestClient] = None
    ) -> "FleetReconciler":
        """
        Wire the client, store, collaborators and orchestrator from configuration.

        Args:
            config: Orchestrator configuration
            client: Optional pre-built API client (one is created otherwise)

        Returns:
            FleetReconciler instance
        """
        client = client or KubernetesRestClient(api_server=config.api_server, ca_cert=config.ca_cert)
        store = ClusterStateStore(
            client, group=config.crd_group, version=config.crd_version, plural=config.crd_plural
        )
        notifier = EventNotifier(
            client if config.emit_events else None,
            api_version=f"{config.crd_group}/{config.crd_version}",
        )
        probe = ClusterProbe(client, container_name=config.container_name)
        orchestrator = UpgradeOrchestrator(
            store=store,
            prechecks=PrecheckRunner(probe, notifier, backup_max_age=config.backup_max_age),
            rollout=RolloutExecutor(
                client,
                probe,
                notifier,
                container_name=config.container_name,
                timeout=config.rollout_timeout,
            ),
            notifier=notifier,
            precheck_poll_interval=config.precheck_poll_interval,
            approval_poll_interval=config.approval_poll_interval,
            rollout_poll_interval=config.rollout_poll_interval,
            settle_interval=config.settle_interval,
            conflict_retry_interval=config.conflict_retry_interval,
            min_cluster_age=config.min_cluster_age,
        )
        return cls(
            orchestrator,
            store,
            namespaces=config.namespaces,
            max_parallel=config.max_parallel,
            loop_interval=config.loop_interval,
        )

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _forget_missing(self, refs: List[ClusterRef]) -> None:
        """Drop schedule and lock entries for clusters no longer found."""
        live = {ref.key for ref in refs}
        for key in [k for k in self._due if k not in live]:
            logger.debug(f"[{key}] No longer present, dropping from schedule")
            del self._due[key]
        with self._locks_guard:
            for key in [k for k, lock in self._locks.items() if k not in live and not lock.locked()]:
                del self._locks[key]

    def scan(self, cluster: Optional[str] = None) -> List[ClusterRef]:
        """
        Discover clusters to reconcile.

        Args:
            cluster: Optional cluster name to restrict the scan to

        Returns:
            List of cluster references
        """
        found: List[ClusterRef] = []
        scopes = self.namespaces or [None]

        if cluster:
            for ns in scopes:
                if ns is None:
                    records = [r for r in self.store.list() if r.name == cluster]
                    found.extend(ClusterRef(r.namespace, r.name) for r in records)
                    continue
                logger.info(f"Looking for cluster '{cluster}' in namespace: {ns}")
                try:
                    record = self.store.load(ns, cluster)
                except NotFoundError:
                    logger.debug(f"Cluster '{cluster}' not found in {ns}")
                    continue
                logger.info(f"✓ Found cluster '{cluster}' in {ns}")
                found.append(ClusterRef(record.namespace, record.name))
                return found

            if not found:
                logger.error(
                    f"Cluster '{cluster}' not found in any of the specified namespaces: "
                    f"{', '.join(n for n in scopes if n) or 'all'}"
                )
            return found

        for ns in scopes:
            logger.info(f"Scanning clusters in namespace: {ns or 'all'}")
            try:
                records = self.store.list(ns)
            except Exception as e:
                logger.error(f"Failed to list clusters in {ns or 'all namespaces'}: {e}")
                continue
            logger.info(f"Found {len(records)} cluster(s) in {ns or 'all namespaces'}")
            found.extend(ClusterRef(r.namespace, r.name) for r in records)

        return found

    def _is_due(self, ref: ClusterRef, now: float) -> bool:
        return self._due.get(ref.key, 0.0) <= now

    def _reconcile_cluster(self, ref: ClusterRef) -> ReconcileResult:
        lock = self._lock_for(ref.key)
        if not lock.acquire(blocking=False):
            logger.debug(f"[{ref.key}] Already being reconciled, skipping")
            return ReconcileResult(cluster=ref.key, status="skipped")

        started = self.clock()
        try:
            result = self.orchestrator.advance(ref.namespace, ref.name)
        except Exception as e:
            logger.error(f"[{ref.key}] Reconcile failed: {e}")
            self._due[ref.key] = started + self.loop_interval
            return ReconcileResult(
                cluster=ref.key,
                status="error",
                duration_seconds=self.clock() - started,
                error_message=str(e),
            )
        finally:
            lock.release()

        delay = result.requeue_after if result.requeue_after is not None else self.loop_interval
        self._due[ref.key] = started + delay

        if result.transitioned:
            status = "advanced"
        elif result.state == UpgradeState.IDLE:
            status = "idle"
        else:
            status = "waiting"

        return ReconcileResult(
            cluster=ref.key,
            status=status,
            state=result.state.value,
            requeue_after=result.requeue_after,
            duration_seconds=self.clock() - started,
        )

    def reconcile_once(self, cluster: Optional[str] = None) -> Dict:
        """
        Run one reconcile cycle over every due cluster.

        Args:
            cluster: Optional cluster name for single cluster mode

        Returns:
            Statistics dictionary for this cycle
        """
        self.stats = {k: 0 for k in self.stats}
        self.results = []

        now = self.clock()
        refs = self.scan(cluster)
        self._forget_missing(refs)
        due = [ref for ref in refs if self._is_due(ref, now)]
        self.stats["total"] = len(refs)
        self.stats["skipped"] = len(refs) - len(due)

        if not due:
            logger.info("No clusters due for reconciliation")
            return self.stats

        with ThreadPoolExecutor(max_workers=max(1, self.max_parallel)) as executor:
            futures = {executor.submit(self._reconcile_cluster, ref): ref for ref in due}
            for future in as_completed(futures):
                ref = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"[{ref.key}] Unexpected reconcile error: {e}")
                    result = ReconcileResult(cluster=ref.key, status="error", error_message=str(e))
                self.results.append(result)
                self.stats["errors" if result.status == "error" else result.status] += 1

        logger.info(
            f"Cycle complete: {self.stats['advanced']} advanced, {self.stats['waiting']} waiting, "
            f"{self.stats['idle']} idle, {self.stats['skipped']} skipped, {self.stats['errors']} error(s)"
        )
        return self.stats

    def next_wakeup(self) -> float:
        """Seconds until the earliest cluster is due, bounded by loop_interval."""
        now = self.clock()
        if not self._due:
            return float(self.loop_interval)
        earliest = min(self._due.values())
        return max(0.0, min(earliest - now, float(self.loop_interval)))

    def run(self, cluster: Optional[str] = None, max_cycles: Optional[int] = None) -> Dict:
        """
        Reconcile continuously until interrupted or max_cycles is reached.

        Args:
            cluster: Optional cluster name for single cluster mode
            max_cycles: Stop after this many cycles (None runs forever)

        Returns:
            Statistics accumulated over all cycles
        """
        totals = {k: 0 for k in self.stats}

        logger.info("=" * 70)
        logger.info("MarkLogic Cluster Upgrade Reconciler")
        logger.info("=" * 70)
        logger.info(f"Namespaces: {', '.join(self.namespaces) or 'all'}")
        if cluster:
            logger.info(f"Cluster: {cluster}")
        logger.info(f"Max parallel: {self.max_parallel}")
        logger.info(f"Loop interval: {self.loop_interval}s")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

        cycles = 0
        try:
            while max_cycles is None or cycles < max_cycles:
                stats = self.reconcile_once(cluster)
                for k, v in stats.items():
                    totals[k] += v
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                time.sleep(self.next_wakeup())
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping reconciler")

        logger.info("")
        logger.info("=" * 70)
        logger.info(f"RECONCILER SUMMARY ({cycles} cycle(s))")
        logger.info("=" * 70)
        for k, v in totals.items():
            logger.info(f"{k:20s}: {v}")
        logger.info("=" * 70)
        return totals
