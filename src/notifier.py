"""
Human-readable progress events for the upgrade workflow.

Events are a side channel: they are posted as Kubernetes Events against the
cluster object and mirrored to the log, and nothing reads them back.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from clients import ApiError, KubernetesRestClient
from models import ClusterRecord, format_k8s_time, utcnow

logger = logging.getLogger(__name__)

NORMAL = "Normal"
WARNING = "Warning"


class EventNotifier:
    """Posts Normal/Warning events about a cluster, fire-and-forget."""

    def __init__(
        self,
        client: Optional[KubernetesRestClient] = None,
        api_version: str = "marklogic.progress.com/v1",
        kind: str = "MarklogicCluster",
        component: str = "marklogic-upgrade-orchestrator",
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            client: API client used to post events; log-only when None
            api_version: apiVersion of the involved object
            kind: Kind of the involved object
            component: Reported event source
            clock: Time source for event timestamps
        """
        self.client = client
        self.api_version = api_version
        self.kind = kind
        self.component = component
        self.clock = clock

    def normal(self, record: ClusterRecord, reason: str, message: str) -> None:
        self.emit(record, NORMAL, reason, message)

    def warning(self, record: ClusterRecord, reason: str, message: str) -> None:
        self.emit(record, WARNING, reason, message)

    def emit(self, record: ClusterRecord, severity: str, reason: str, message: str) -> None:
        """Log the event and post it; posting errors are logged, never raised."""
        log = logger.warning if severity == WARNING else logger.info
        log(f"[{record.ref}] {reason}: {message}")

        if self.client is None:
            return

        try:
            self.client.create_event(record.namespace, self._event_body(record, severity, reason, message))
        except (ApiError, ValueError) as e:
            logger.warning(f"Failed to record event {reason} for {record.ref}: {e}")

    def _event_body(
        self, record: ClusterRecord, severity: str, reason: str, message: str
    ) -> dict:
        now = format_k8s_time(self.clock())
        involved = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": record.name,
            "namespace": record.namespace,
        }
        if record.uid:
            involved["uid"] = record.uid
        if record.resource_version:
            involved["resourceVersion"] = record.resource_version
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{record.name}.",
                "namespace": record.namespace,
            },
            "involvedObject": involved,
            "reason": reason,
            "message": message,
            "type": severity,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
