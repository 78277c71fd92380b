"""
Read-only probes against a live MarkLogic cluster.

Member-group readiness comes from the StatefulSets backing each group.
Application-level health (databases, forests, backups, license, host
connectivity, resource usage) is reported by in-cluster agents into the
``status.health`` section of the cluster object; the probe only reads it.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from clients import KubernetesRestClient, NotFoundError
from models import ClusterRecord, MemberGroup

logger = logging.getLogger(__name__)

# [registry[:port]/]repository[:tag][@sha256:digest]
IMAGE_REFERENCE = re.compile(
    r"^(?:(?P<registry>[a-zA-Z0-9.-]+(?::\d+)?)/)?"
    r"(?P<repository>[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*)"
    r"(?::(?P<tag>\w[\w.-]{0,127}))?"
    r"(?:@(?P<digest>sha256:[a-f0-9]{64}))?$"
)

UNHEALTHY_STATES = {"unhealthy", "failed", "error"}


def parse_image_reference(image: str) -> Optional[Dict[str, Optional[str]]]:
    """Split an image reference into its parts, or None if it is malformed."""
    match = IMAGE_REFERENCE.match(image or "")
    if not match:
        return None
    return match.groupdict()


class ClusterProbe:
    """Read-only view of a cluster's member groups and reported health."""

    def __init__(self, client: KubernetesRestClient, container_name: str = "marklogic-server"):
        self.client = client
        self.container_name = container_name

    def member_groups(self, record: ClusterRecord) -> List[MemberGroup]:
        """
        Observe every member group declared in the cluster spec.

        A group whose StatefulSet does not exist yet is reported with
        found=False rather than raising.

        Raises:
            ApiError: If API call fails for a reason other than not-found
        """
        groups: List[MemberGroup] = []
        for spec in record.groups:
            try:
                sts = self.client.get_statefulset(record.namespace, spec.name)
            except NotFoundError:
                logger.info(f"[{record.ref}] StatefulSet {spec.name} not found")
                groups.append(
                    MemberGroup(
                        name=spec.name,
                        desired_replicas=spec.replicas if spec.replicas is not None else 1,
                        found=False,
                    )
                )
                continue
            groups.append(self._member_group(spec.name, spec.replicas, sts))
        return groups

    def _member_group(self, name: str, replicas: Optional[int], sts: Dict) -> MemberGroup:
        metadata = sts.get("metadata") or {}
        spec = sts.get("spec") or {}
        status = sts.get("status") or {}

        desired = replicas if replicas is not None else spec.get("replicas", 1)
        generation = metadata.get("generation", 0)
        containers = (((spec.get("template") or {}).get("spec") or {}).get("containers")) or []
        image = next(
            (c.get("image", "") for c in containers if c.get("name") == self.container_name),
            containers[0].get("image", "") if containers else "",
        )
        return MemberGroup(
            name=name,
            desired_replicas=desired,
            ready_replicas=status.get("readyReplicas", 0) or 0,
            image=image,
            found=True,
            generation=generation,
            observed_generation=status.get("observedGeneration", generation),
        )

    def health_report(self, record: ClusterRecord) -> Dict:
        """Agent-reported health section of the cluster status (may be empty)."""
        health = record.status.extra.get("health")
        return health if isinstance(health, dict) else {}

    def cluster_health(
        self, record: ClusterRecord, groups: Optional[List[MemberGroup]] = None
    ) -> Tuple[bool, str]:
        """
        Cluster-wide health gate.

        Healthy when every member group is converged and the agent-reported
        health state (if any) is not unhealthy.

        Returns:
            Tuple of (is_healthy, message)
        """
        groups = self.member_groups(record) if groups is None else groups
        not_ready = [g.name for g in groups if not g.converged]
        if not_ready:
            return False, f"Member groups not ready: {', '.join(not_ready)}"

        state = str(self.health_report(record).get("state", "")).lower()
        if state in UNHEALTHY_STATES:
            return False, f"Cluster reports health state {state}"

        return True, f"All {len(groups)} member group(s) ready"
