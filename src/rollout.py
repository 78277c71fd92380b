"""
Rolling upgrade execution for MarkLogic clusters.

Applies the desired image to every member group's StatefulSet and reports
convergence. Nothing here blocks: callers poll status() on their own cadence.
"""

import logging
from datetime import datetime
from typing import Callable

from clients import KubernetesRestClient
from models import ClusterRecord, parse_time, utcnow
from notifier import EventNotifier
from probes import ClusterProbe
from signals import ANNOTATION_PREVIOUS_IMAGE, ANNOTATION_ROLLOUT_STARTED_AT

logger = logging.getLogger(__name__)


class RolloutError(RuntimeError):
    """The rollout failed and will not converge on its own."""


class RolloutTimeoutError(RolloutError):
    """The rollout did not converge within the configured timeout."""


class RolloutExecutor:
    """Starts rolling upgrades and checks their convergence."""

    def __init__(
        self,
        client: KubernetesRestClient,
        probe: ClusterProbe,
        notifier: EventNotifier,
        container_name: str = "marklogic-server",
        timeout: int = 7200,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Set up the rollout executor.

        Args:
            client: Kubernetes API client
            probe: Read-only cluster probe
            notifier: Event notifier
            container_name: Container whose image is replaced
            timeout: Maximum rollout duration in seconds (0 disables)
            clock: Time source
        """
        self.client = client
        self.probe = probe
        self.notifier = notifier
        self.container_name = container_name
        self.timeout = timeout
        self.clock = clock

    def start(self, record: ClusterRecord) -> None:
        """
        Apply the desired image to every member group.

        Safe to call again: patching an image that is already set is a no-op
        and the start stamp is only written once. The stamp and previous image
        are persisted by the caller together with the state change.

        Raises:
            RolloutError: If the cluster declares no member groups
            ApiError: If a StatefulSet cannot be patched
        """
        if not record.groups:
            raise RolloutError(f"Cluster {record.ref} declares no member groups")

        logger.info(f"[{record.ref}] Starting rolling upgrade to {record.image}")

        for group in record.groups:
            self.client.patch_statefulset_image(
                record.namespace, group.name, self.container_name, record.image
            )
            logger.info(f"[{record.ref}] Applied {record.image} to {group.name}")
            self.notifier.normal(
                record, "UpgradeProgress", f"Rolling out {record.image} to {group.name}"
            )

        if not record.annotations.get(ANNOTATION_ROLLOUT_STARTED_AT):
            record.annotations[ANNOTATION_ROLLOUT_STARTED_AT] = self.clock().isoformat()
        if record.status.current_image:
            record.annotations[ANNOTATION_PREVIOUS_IMAGE] = record.status.current_image

        self.notifier.normal(record, "RollingUpgradeStarted", "Rolling upgrade initiated")

    def status(self, record: ClusterRecord) -> bool:
        """
        Check whether the rollout has converged and the cluster is healthy.

        All member groups must converge before the health probe is consulted.

        Returns:
            True when converged and healthy, False while still in progress

        Raises:
            RolloutTimeoutError: If the rollout exceeded the timeout
            ApiError: If the cluster cannot be observed
        """
        groups = self.probe.member_groups(record)

        pending = [g for g in groups if not g.converged or g.image != record.image]
        for group in groups:
            if group not in pending:
                logger.info(f"[{record.ref}] {group.name} converged ({group.ready_replicas}/{group.desired_replicas})")
            else:
                logger.info(
                    f"[{record.ref}] {group.name} in progress ({group.ready_replicas}/{group.desired_replicas} ready)"
                )

        if not pending:
            healthy, message = self.probe.cluster_health(record, groups)
            if healthy:
                logger.info(f"[{record.ref}] ✓ Rolling upgrade converged: {message}")
                self.notifier.normal(
                    record, "HealthCheckPassed", "Post-upgrade cluster health check passed"
                )
                return True
            logger.info(f"[{record.ref}] Cluster health check not passing yet: {message}")

        self._check_timeout(record)
        return False

    def _check_timeout(self, record: ClusterRecord) -> None:
        if self.timeout <= 0:
            return
        started = parse_time(record.annotations.get(ANNOTATION_ROLLOUT_STARTED_AT))
        if started is None:
            return
        elapsed = (self.clock() - started).total_seconds()
        if elapsed > self.timeout:
            raise RolloutTimeoutError(
                f"Rolling upgrade did not converge within {self.timeout}s ({elapsed:.0f}s elapsed)"
            )
