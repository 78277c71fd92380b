"""
State store for the upgrade workflow.

The cluster custom resource is the only durable record of progress: its
annotations hold the workflow state, control signals and precheck report,
its status subresource holds the typed status record.
"""

import logging
from typing import List, Optional

from clients import KubernetesRestClient
from models import ClusterRecord

logger = logging.getLogger(__name__)


class ClusterStateStore:
    """Reads and writes ClusterRecords through the Kubernetes API."""

    def __init__(
        self,
        client: KubernetesRestClient,
        group: str = "marklogic.progress.com",
        version: str = "v1",
        plural: str = "marklogicclusters",
    ):
        self.client = client
        self.group = group
        self.version = version
        self.plural = plural

    def load(self, namespace: str, name: str) -> ClusterRecord:
        """
        Read the current record for a cluster.

        Raises:
            NotFoundError: If the cluster does not exist
            ApiError: If API call fails
        """
        obj = self.client.get_custom_object(
            self.group, self.version, namespace, self.plural, name
        )
        return ClusterRecord.from_resource(obj)

    def list(self, namespace: Optional[str] = None) -> List[ClusterRecord]:
        """List cluster records in a namespace, or in all namespaces."""
        items = self.client.list_custom_objects(
            self.group, self.version, self.plural, namespace=namespace
        )
        return [ClusterRecord.from_resource(item) for item in items]

    def commit(self, record: ClusterRecord) -> ClusterRecord:
        """
        Persist annotations and status as one logical write.

        The object write goes first and is guarded by the record's
        resourceVersion; the status write then uses the version returned by
        it. If the status write is lost the annotations still carry the
        authoritative state.

        Args:
            record: Record as read by load(), with pending changes applied

        Returns:
            Record reflecting what the server stored

        Raises:
            ConflictError: If the object changed since it was read
            ApiError: If API call fails
        """
        stored = self.client.replace_custom_object(
            self.group,
            self.version,
            record.namespace,
            self.plural,
            record.name,
            record.to_resource(),
        )
        written = ClusterRecord.from_resource(stored)
        written.status = record.status
        return self.commit_status(written)

    def commit_status(self, record: ClusterRecord) -> ClusterRecord:
        """
        Persist only the status subresource.

        Raises:
            ConflictError: If the object changed since it was read
            ApiError: If API call fails
        """
        stored = self.client.replace_custom_object_status(
            self.group,
            self.version,
            record.namespace,
            self.plural,
            record.name,
            record.to_resource(),
        )
        logger.debug(
            f"Committed status for {record.ref} (resourceVersion={stored.get('metadata', {}).get('resourceVersion')})"
        )
        return ClusterRecord.from_resource(stored)
