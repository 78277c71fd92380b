"""
Upgrade prechecks for MarkLogic clusters.

Runs a fixed battery of read-only validations against the live cluster and
produces a PrecheckReport. Warnings never block an upgrade; failures block
it unless an operator forces the upgrade to proceed.
"""

import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from models import (
    CheckStatus,
    ClusterRecord,
    MemberGroup,
    PrecheckReport,
    PrecheckResult,
    parse_time,
    utcnow,
)
from notifier import EventNotifier
from probes import ClusterProbe, parse_image_reference
from signals import ANNOTATION_PRECHECK_STARTED_AT, parse_signals

logger = logging.getLogger(__name__)

HEALTHY_FOREST_STATES = {"open", "open replica", "sync replicating"}
FAILED_FOREST_STATES = {"error", "failed", "unmounted", "offline"}
RESOURCE_WARN_PERCENT = 80.0
RESOURCE_FAIL_PERCENT = 90.0


class PrecheckRunner:
    """Starts and evaluates upgrade prechecks for a cluster."""

    def __init__(
        self,
        probe: ClusterProbe,
        notifier: EventNotifier,
        backup_max_age: int = 86400,
        license_warning_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Set up the precheck runner.

        Args:
            probe: Read-only cluster probe
            notifier: Event notifier
            backup_max_age: Age (seconds) after which the last backup is stale
            license_warning_days: Warn when the license expires within this many days
            clock: Time source
        """
        self.probe = probe
        self.notifier = notifier
        self.backup_max_age = backup_max_age
        self.license_warning_days = license_warning_days
        self.clock = clock

    def start(self, record: ClusterRecord) -> None:
        """
        Mark prechecks as started on the pending record.

        Idempotent: a record that already carries a start stamp is left as is.
        The stamp is persisted by the caller together with the state change.
        """
        if record.annotations.get(ANNOTATION_PRECHECK_STARTED_AT):
            logger.debug(f"[{record.ref}] Prechecks already started")
            return

        record.annotations[ANNOTATION_PRECHECK_STARTED_AT] = self.clock().isoformat()
        self.notifier.normal(record, "PrecheckStarted", "Starting upgrade prechecks")

    def status(self, record: ClusterRecord) -> Tuple[bool, Optional[PrecheckReport]]:
        """
        Report whether prechecks are done, running the battery if they were started.

        Returns:
            Tuple of (done, report); report is None while not done
        """
        if not record.annotations.get(ANNOTATION_PRECHECK_STARTED_AT):
            logger.info(f"[{record.ref}] Prechecks not started yet")
            return False, None

        report = self.run_checks(record)
        summary = report.summary
        logger.info(
            f"[{record.ref}] Prechecks completed: total={summary.total} passed={summary.passed} "
            f"warnings={summary.warnings} failed={summary.failed} canProceed={summary.can_proceed}"
        )
        return True, report

    def run_checks(self, record: ClusterRecord) -> PrecheckReport:
        """Run every check in order and assemble the report."""
        signals = parse_signals(record.annotations)
        health = self.probe.health_report(record)
        groups: List[MemberGroup] = []

        def observe_groups() -> PrecheckResult:
            groups.extend(self.probe.member_groups(record))
            return self._check_cluster_health(groups)

        checks: List[Tuple[str, Callable[[], PrecheckResult]]] = [
            ("Image Change Validation", lambda: self._check_image(record)),
            ("Cluster Health Check", observe_groups),
            ("Database Connectivity", lambda: self._check_database_connectivity(health)),
            (
                "Forest Health Check",
                lambda: self._check_forest_health(health, signals.skip_forest_check),
            ),
            ("Resource Availability", lambda: self._check_resources(health)),
            ("Backup Status", lambda: self._check_backup(health)),
            ("License Validation", lambda: self._check_license(health)),
            ("Network Connectivity", lambda: self._check_network(health, groups)),
        ]

        results = []
        for name, check in checks:
            result = self._run_check(name, check)
            logger.info(f"  [{record.ref}] {name}: {result.status.value} - {result.message}")
            results.append(result)

        return PrecheckReport(
            results=results, timestamp=self.clock(), cluster_ref=record.ref
        )

    def _run_check(self, name: str, check: Callable[[], PrecheckResult]) -> PrecheckResult:
        """Run one check, timing it and turning an exception into a FAIL result."""
        started = time.monotonic()
        try:
            result = check()
        except Exception as e:
            logger.error(f"Precheck '{name}' raised: {e}")
            result = self._result(
                name,
                CheckStatus.FAIL,
                f"Check could not be completed: {e}",
                remediation="Verify API access to the cluster and re-run prechecks",
            )
        elapsed = time.monotonic() - started
        return replace(result, name=name, duration=f"{elapsed:.3f}s")

    def _result(
        self,
        name: str,
        status: CheckStatus,
        message: str,
        details: Optional[str] = None,
        remediation: Optional[str] = None,
    ) -> PrecheckResult:
        return PrecheckResult(
            name=name,
            status=status,
            message=message,
            timestamp=self.clock(),
            details=details,
            remediation=remediation,
        )

    def _check_image(self, record: ClusterRecord) -> PrecheckResult:
        """Pre-check: target image reference is well formed and pinned."""
        name = "Image Change Validation"
        target = record.image
        current = record.status.current_image
        details = f"Target image: {target}, current image: {current or 'unknown'}"

        parts = parse_image_reference(target)
        if not target or parts is None:
            return self._result(
                name,
                CheckStatus.FAIL,
                f"Invalid target image reference: {target!r}",
                details=details,
                remediation="Set spec.image to a valid image reference",
            )

        tag = parts.get("tag")
        if not parts.get("digest") and (not tag or tag == "latest"):
            return self._result(
                name,
                CheckStatus.WARN,
                "Target image uses a mutable tag",
                details=details,
                remediation="Pin the image to an explicit version tag or digest",
            )

        if current and current == target:
            return self._result(
                name,
                CheckStatus.WARN,
                "Target image matches the currently deployed image",
                details=details,
            )

        return self._result(
            name, CheckStatus.PASS, "New image version validated", details=details
        )

    def _check_cluster_health(self, groups: List[MemberGroup]) -> PrecheckResult:
        """Pre-check: every member group is present and fully ready."""
        name = "Cluster Health Check"
        if not groups:
            return self._result(
                name, CheckStatus.WARN, "No member groups declared in cluster spec"
            )

        missing = [g.name for g in groups if not g.found]
        if missing:
            return self._result(
                name,
                CheckStatus.FAIL,
                f"Member groups not deployed: {', '.join(missing)}",
                remediation="Wait for the initial deployment to finish",
            )

        not_ready = [g for g in groups if not g.converged]
        if not_ready:
            details = ", ".join(
                f"{g.name}: {g.ready_replicas}/{g.desired_replicas} ready" for g in not_ready
            )
            return self._result(
                name,
                CheckStatus.FAIL,
                f"{len(not_ready)} member group(s) not fully ready",
                details=details,
                remediation="Resolve unready pods before upgrading",
            )

        return self._result(
            name,
            CheckStatus.PASS,
            f"All {len(groups)} member group(s) are healthy and ready",
        )

    def _check_database_connectivity(self, health: Dict) -> PrecheckResult:
        """Pre-check: every reported database is available."""
        name = "Database Connectivity"
        databases = health.get("databases")
        if not databases:
            return self._result(
                name,
                CheckStatus.WARN,
                "Database availability not reported",
                remediation="Check that the health agent is running",
            )

        unavailable = sorted(
            db for db, state in databases.items() if str(state).lower() != "available"
        )
        if unavailable:
            return self._result(
                name,
                CheckStatus.FAIL,
                f"Databases not available: {', '.join(unavailable)}",
                remediation="Restore database availability before upgrading",
            )
        return self._result(
            name,
            CheckStatus.PASS,
            f"All {len(databases)} database(s) are accessible",
        )

    def _check_forest_health(self, health: Dict, skip: bool) -> PrecheckResult:
        """Pre-check: forests are open; skippable by annotation."""
        name = "Forest Health Check"
        if skip:
            return self._result(
                name, CheckStatus.PASS, "Forest health check skipped per annotation"
            )

        forests = health.get("forests")
        if not forests:
            return self._result(
                name,
                CheckStatus.WARN,
                "Forest states not reported",
                remediation="Check that the health agent is running",
            )

        failed = sorted(
            f for f, state in forests.items() if str(state).lower() in FAILED_FOREST_STATES
        )
        degraded = sorted(
            f
            for f, state in forests.items()
            if str(state).lower() not in HEALTHY_FOREST_STATES
            and str(state).lower() not in FAILED_FOREST_STATES
        )
        if failed:
            return self._result(
                name,
                CheckStatus.FAIL,
                f"{len(failed)} forest(s) unavailable",
                details=", ".join(f"{f}={forests[f]}" for f in failed),
                remediation="Bring all forests online before upgrading",
            )
        if degraded:
            return self._result(
                name,
                CheckStatus.WARN,
                f"{len(degraded)} forest(s) not fully open",
                details=", ".join(f"{f}={forests[f]}" for f in degraded),
                remediation="Monitor forest performance during upgrade",
            )
        return self._result(
            name, CheckStatus.PASS, f"All {len(forests)} forest(s) are open"
        )

    def _check_resources(self, health: Dict) -> PrecheckResult:
        """Pre-check: CPU, memory and storage headroom."""
        name = "Resource Availability"
        resources = health.get("resources")
        if not resources:
            return self._result(
                name, CheckStatus.WARN, "Resource usage not reported"
            )

        usage = {k: float(v) for k, v in resources.items()}
        details = ", ".join(f"{k}: {v:.0f}% used" for k, v in sorted(usage.items()))
        critical = sorted(k for k, v in usage.items() if v >= RESOURCE_FAIL_PERCENT)
        high = sorted(k for k, v in usage.items() if RESOURCE_WARN_PERCENT <= v < RESOURCE_FAIL_PERCENT)

        if critical:
            return self._result(
                name,
                CheckStatus.FAIL,
                f"Insufficient headroom: {', '.join(critical)}",
                details=details,
                remediation="Free capacity or scale the cluster before upgrading",
            )
        if high:
            return self._result(
                name,
                CheckStatus.WARN,
                f"High utilisation: {', '.join(high)}",
                details=details,
                remediation="Rolling restarts temporarily reduce capacity",
            )
        return self._result(
            name,
            CheckStatus.PASS,
            "Sufficient CPU and memory available for upgrade",
            details=details,
        )

    def _check_backup(self, health: Dict) -> PrecheckResult:
        """Pre-check: a recent backup exists (warning only)."""
        name = "Backup Status"
        last_backup = parse_time(health.get("lastBackupTime"))
        if last_backup is None:
            return self._result(
                name,
                CheckStatus.WARN,
                "No successful backup recorded",
                remediation="Consider creating a fresh backup before proceeding",
            )

        age = self.clock() - last_backup
        hours = age.total_seconds() / 3600
        details = f"Last successful backup: {last_backup.isoformat()}"
        if age > timedelta(seconds=self.backup_max_age):
            return self._result(
                name,
                CheckStatus.WARN,
                f"Latest backup is {hours:.0f} hours old",
                details=details,
                remediation="Consider creating a fresh backup before proceeding",
            )
        return self._result(
            name, CheckStatus.PASS, f"Latest backup is {hours:.0f} hours old", details=details
        )

    def _check_license(self, health: Dict) -> PrecheckResult:
        """Pre-check: license is valid and not about to expire."""
        name = "License Validation"
        license_info = health.get("license")
        if not license_info:
            return self._result(name, CheckStatus.WARN, "License status not reported")

        if not license_info.get("valid", False):
            return self._result(
                name,
                CheckStatus.FAIL,
                "License is not valid",
                remediation="Install a valid license before upgrading",
            )

        expires = parse_time(license_info.get("expires"))
        if expires is not None:
            remaining = expires - self.clock()
            if remaining < timedelta(days=self.license_warning_days):
                return self._result(
                    name,
                    CheckStatus.WARN,
                    f"License expires in {max(remaining.days, 0)} day(s)",
                    details=f"Expires: {expires.isoformat()}",
                    remediation="Renew the license",
                )
        return self._result(name, CheckStatus.PASS, "License is valid")

    def _check_network(self, health: Dict, groups: List[MemberGroup]) -> PrecheckResult:
        """Pre-check: inter-node connectivity."""
        name = "Network Connectivity"
        hosts = health.get("hosts")
        if hosts:
            disconnected = sorted(
                h for h, state in hosts.items() if str(state).lower() != "connected"
            )
            if disconnected:
                return self._result(
                    name,
                    CheckStatus.FAIL,
                    f"Hosts unreachable: {', '.join(disconnected)}",
                    remediation="Restore inter-node connectivity before upgrading",
                )
            return self._result(
                name,
                CheckStatus.PASS,
                f"All {len(hosts)} inter-node connection(s) are healthy",
            )

        # Without agent data, fall back to pod readiness
        if groups and all(g.converged for g in groups):
            pods = sum(g.ready_replicas for g in groups)
            return self._result(
                name, CheckStatus.PASS, f"All {pods} pod(s) ready; host status not reported"
            )
        return self._result(
            name, CheckStatus.WARN, "Host connectivity not reported"
        )
