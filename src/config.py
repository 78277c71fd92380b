"""
Configuration management for the MarkLogic Cluster Upgrade Orchestrator.
"""

import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

# Kubernetes object names (RFC 1123 labels)
K8S_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")

ENV_PREFIX = "ML_UPGRADE_"


def validate_k8s_name(value: str) -> bool:
    """Validate a Kubernetes namespace or object name."""
    return bool(K8S_NAME_PATTERN.match(value or ""))


@dataclass
class OrchestratorConfig:
    """Configuration for the upgrade orchestrator and reconciler."""

    api_server: str = "https://kubernetes.default.svc"
    namespaces: List[str] = field(default_factory=list)
    cluster: Optional[str] = None
    ca_cert: Optional[str] = None
    crd_group: str = "marklogic.progress.com"
    crd_version: str = "v1"
    crd_plural: str = "marklogicclusters"
    container_name: str = "marklogic-server"
    precheck_poll_interval: int = 120
    approval_poll_interval: int = 300
    rollout_poll_interval: int = 120
    rollout_timeout: int = 7200
    settle_interval: int = 5
    conflict_retry_interval: int = 5
    min_cluster_age: int = 300
    backup_max_age: int = 86400
    max_parallel: int = 5
    loop_interval: int = 20
    emit_events: bool = True
    verbose: bool = False

    def validate(self) -> "OrchestratorConfig":
        """
        Check names and intervals.

        Returns:
            self, for chaining

        Raises:
            ValueError: If a value is out of range or malformed
        """
        for ns in self.namespaces:
            if not validate_k8s_name(ns):
                raise ValueError(f"Invalid namespace format: {ns}")
        if self.cluster and not validate_k8s_name(self.cluster):
            raise ValueError(f"Invalid cluster name format: {self.cluster}")
        if not self.api_server:
            raise ValueError("api_server is required")
        if self.max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        if self.rollout_timeout < 0:
            raise ValueError("rollout_timeout must not be negative (0 disables it)")
        for name in (
            "precheck_poll_interval",
            "approval_poll_interval",
            "rollout_poll_interval",
            "settle_interval",
            "conflict_retry_interval",
            "loop_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self

    @classmethod
    def from_args(cls, args) -> "OrchestratorConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments

        Returns:
            OrchestratorConfig instance
        """
        return cls(
            api_server=args.api_server,
            namespaces=list(args.namespaces or []),
            cluster=getattr(args, "cluster", None),
            ca_cert=args.ca_cert,
            container_name=args.container_name,
            precheck_poll_interval=args.precheck_poll_interval,
            approval_poll_interval=args.approval_poll_interval,
            rollout_poll_interval=args.rollout_poll_interval,
            rollout_timeout=args.rollout_timeout,
            min_cluster_age=args.min_cluster_age,
            max_parallel=args.max_parallel,
            loop_interval=args.loop_interval,
            verbose=args.verbose,
        ).validate()

    @classmethod
    def from_env(cls, overrides: Optional[Dict[str, Any]] = None) -> "OrchestratorConfig":
        """
        Build configuration from overrides and environment variables.

        Priority: overrides > ML_UPGRADE_* environment variables > defaults.
        List values may be given as a list or a whitespace/comma separated
        string.

        Raises:
            ValueError: If a value cannot be parsed or fails validation
        """
        overrides = overrides or {}
        values: Dict[str, Any] = {}

        for f in fields(cls):
            raw = overrides.get(f.name)
            if raw is None:
                raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw)

        return cls(**values).validate()


def _coerce(name: str, type_hint: Any, raw: Any) -> Any:
    hint = str(type_hint)
    try:
        if type_hint is bool or hint == "bool":
            if isinstance(raw, bool):
                return raw
            value = str(raw).strip().lower()
            if value in ("true", "1", "yes"):
                return True
            if value in ("false", "0", "no"):
                return False
            raise ValueError(value)
        if type_hint is int or hint == "int":
            return int(raw)
        if "List" in hint:
            if isinstance(raw, list):
                return [str(v).strip() for v in raw if str(v).strip()]
            return [v for v in re.split(r"[\s,]+", str(raw)) if v]
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {name}: {raw!r}") from None
    return str(raw)
