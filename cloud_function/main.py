"""
Google Cloud Function entry point for the MarkLogic Cluster Upgrade Orchestrator.

This module provides HTTP endpoints for:
- /reconcile: Run one reconcile cycle over the configured clusters
- /advance: Advance a single cluster by one workflow step
- /signal: Send a control signal (trigger, proceed, cancel, ...) to a cluster
- /status: Show the upgrade status of clusters
- /health: Health check endpoint

Configuration comes from ML_UPGRADE_* environment variables, overridable per
request in the JSON body.
"""

import logging
import os
import sys
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

import functions_framework
from flask import Request

# Shared modules live in src/ (deployed alongside, or one level up in a checkout)
HERE = os.path.dirname(os.path.abspath(__file__))
for _path in (os.path.join(HERE, "src"), os.path.join(HERE, "..", "src")):
    if os.path.isdir(_path) and _path not in sys.path:
        sys.path.insert(0, _path)

from cli import describe, send_signal
from clients import ApiError, NotFoundError
from config import OrchestratorConfig, validate_k8s_name
from log_utils import setup_logging
from models import ReconcileResult
from reconciler import FleetReconciler
from signals import Intent, IntentAction

# Cloud Functions capture stdout; one JSON object per line for Cloud Logging
setup_logging(log_file=None, json_format=True)
logger = logging.getLogger(__name__)

# Fields a request body may override; everything else comes from the environment
REQUEST_OVERRIDES = (
    "namespaces",
    "cluster",
    "max_parallel",
    "rollout_timeout",
    "min_cluster_age",
)

MAX_PARALLEL_CAP = 20


# =============================================================================
# Security and Validation
# =============================================================================


def validate_request(func: Callable) -> Callable:
    """
    Decorator to validate incoming requests.

    Checks:
    - Content-Type for POST requests
    """

    @wraps(func)
    def wrapper(request: Request) -> Tuple[Dict[str, Any], int]:
        if request.method == "POST":
            content_type = request.headers.get("Content-Type", "")
            if "application/json" not in content_type:
                return {
                    "error": "Invalid content type",
                    "message": "Content-Type must be application/json",
                }, 415

        return func(request)

    return wrapper


def sanitize_input(value: Any, max_length: int = 256) -> str:
    """Sanitize string input to prevent injection attacks."""
    if not value:
        return ""
    sanitized = "".join(c for c in str(value) if c.isprintable())
    return sanitized[:max_length]


# =============================================================================
# Configuration Loading
# =============================================================================


def request_params(request: Request) -> Dict[str, Any]:
    """Merge query parameters and the JSON body (body wins)."""
    params: Dict[str, Any] = dict(request.args.items()) if request.args else {}
    params.update(request.get_json(silent=True) or {})
    return params


def get_config_from_request(request: Request) -> OrchestratorConfig:
    """
    Build configuration from request body and environment variables.

    Priority: Request body > Environment variables > Defaults
    """
    params = request_params(request)
    overrides: Dict[str, Any] = {}
    for key in REQUEST_OVERRIDES:
        value = params.get(key)
        if value is None or value == "":
            continue
        if isinstance(value, list):
            overrides[key] = [sanitize_input(v, 63) for v in value if v]
        elif isinstance(value, str):
            overrides[key] = sanitize_input(value)
        else:
            overrides[key] = value

    config = OrchestratorConfig.from_env(overrides)
    config.max_parallel = min(config.max_parallel, MAX_PARALLEL_CAP)
    return config


def get_target(request: Request, config: OrchestratorConfig) -> Tuple[str, str]:
    """Resolve the single cluster a request addresses."""
    params = request_params(request)
    namespace = sanitize_input(params.get("namespace", ""), 63)
    if not namespace and len(config.namespaces) == 1:
        namespace = config.namespaces[0]
    name = sanitize_input(params.get("cluster", ""), 63) or (config.cluster or "")

    if not namespace or not name:
        raise ValueError("namespace and cluster are required")
    if not validate_k8s_name(namespace):
        raise ValueError(f"Invalid namespace format: {namespace}")
    if not validate_k8s_name(name):
        raise ValueError(f"Invalid cluster name format: {name}")
    return namespace, name


# =============================================================================
# Response Helpers
# =============================================================================


def create_response(
    success: bool,
    data: Optional[Dict] = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
    status_code: int = 200,
) -> Tuple[Dict[str, Any], int]:
    """Create a standardized API response."""
    response = {
        "success": success,
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
    }

    if data:
        response["data"] = data
    if error:
        response["error"] = error
    if message:
        response["message"] = message

    return response, status_code


def format_results(results: List[ReconcileResult], stats: Dict) -> Dict[str, Any]:
    """Format reconcile results for API response."""
    return {
        "statistics": stats,
        "results": [
            {
                "cluster": r.cluster,
                "status": r.status,
                "state": r.state,
                "requeue_after": r.requeue_after,
                "duration_seconds": r.duration_seconds,
                "error_message": r.error_message,
            }
            for r in results
        ],
    }


def build_reconciler(config: OrchestratorConfig) -> FleetReconciler:
    return FleetReconciler.from_config(config)


# =============================================================================
# HTTP Endpoint Handlers
# =============================================================================


@functions_framework.http
def main(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Main entry point for Cloud Function.

    Routes requests based on path:
    - POST /reconcile: Reconcile clusters
    - POST /advance: Advance one cluster
    - POST /signal: Send a control signal
    - GET /status: Get cluster upgrade status
    - GET /health: Health check
    - GET /: API info
    """
    path = request.path.rstrip("/")

    routes = {
        "": handle_info,
        "/": handle_info,
        "/reconcile": handle_reconcile,
        "/advance": handle_advance,
        "/signal": handle_signal,
        "/status": handle_status,
        "/health": handle_health,
    }

    handler = routes.get(path)
    if not handler:
        return create_response(
            success=False,
            error="Not Found",
            message=f"Unknown endpoint: {path}",
            status_code=404,
        )

    try:
        return handler(request)
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        return create_response(
            success=False,
            error="Validation Error",
            message=str(e),
            status_code=400,
        )
    except NotFoundError as e:
        logger.error(f"Cluster not found: {e}")
        return create_response(
            success=False,
            error="Not Found",
            message=str(e),
            status_code=404,
        )
    except ApiError as e:
        logger.error(f"Kubernetes API error: {e}")
        return create_response(
            success=False,
            error="Upstream Error",
            message=str(e),
            status_code=502,
        )
    except Exception as e:
        logger.exception(f"Internal error: {e}")
        return create_response(
            success=False,
            error="Internal Server Error",
            message="An unexpected error occurred. Check Cloud Function logs for details.",
            status_code=500,
        )


def _method_not_allowed(expected: str, what: str) -> Tuple[Dict[str, Any], int]:
    return create_response(
        success=False,
        error="Method Not Allowed",
        message=f"Use {expected} for {what}",
        status_code=405,
    )


def handle_info(request: Request) -> Tuple[Dict[str, Any], int]:
    """Handle API info request."""
    return create_response(
        success=True,
        data={
            "service": "MarkLogic Cluster Upgrade Orchestrator",
            "version": os.environ.get("APP_VERSION", "0.1.0"),
            "endpoints": {
                "POST /reconcile": "Run one reconcile cycle",
                "POST /advance": "Advance a single cluster by one step",
                "POST /signal": "Send a control signal to a cluster",
                "GET /status": "Get cluster upgrade status",
                "GET /health": "Health check",
            },
            "signals": [a.value for a in IntentAction],
        },
    )


@validate_request
def handle_reconcile(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Handle reconcile request.

    Request body:
    {
        "namespaces": ["marklogic"],  // or use ML_UPGRADE_NAMESPACES env var
        "cluster": "ml-prod",  // optional, for single cluster mode
        "max_parallel": 5
    }
    """
    if request.method != "POST":
        return _method_not_allowed("POST", "reconcile operations")

    config = get_config_from_request(request)
    logger.info(f"Starting reconcile: namespaces={config.namespaces}, cluster={config.cluster}")

    reconciler = build_reconciler(config)
    stats = reconciler.reconcile_once(cluster=config.cluster)

    success = stats.get("errors", 0) == 0
    return create_response(
        success=success,
        data=format_results(reconciler.results, stats),
        message="Reconcile completed",
        status_code=200 if success else 207,  # 207 Multi-Status for partial failures
    )


@validate_request
def handle_advance(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Handle a single-step advance request.

    Request body:
    {
        "namespace": "marklogic",
        "cluster": "ml-prod"
    }
    """
    if request.method != "POST":
        return _method_not_allowed("POST", "advance operations")

    config = get_config_from_request(request)
    namespace, name = get_target(request, config)

    result = build_reconciler(config).orchestrator.advance(namespace, name)
    return create_response(
        success=True,
        data={
            "cluster": f"{namespace}/{name}",
            "state": result.state.value,
            "transitioned": result.transitioned,
            "requeue_after": result.requeue_after,
            "message": result.message,
        },
    )


@validate_request
def handle_signal(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Handle a control signal request.

    Request body:
    {
        "namespace": "marklogic",
        "cluster": "ml-prod",
        "action": "proceed",  // trigger, proceed, cancel, pause, resume, retry, force-proceed, skip-forest-check
        "reason": "change window approved",
        "requested_by": "alice"
    }
    """
    if request.method != "POST":
        return _method_not_allowed("POST", "signal operations")

    config = get_config_from_request(request)
    namespace, name = get_target(request, config)
    params = request_params(request)

    action_raw = sanitize_input(params.get("action", ""), 32)
    try:
        action = IntentAction(action_raw)
    except ValueError:
        raise ValueError(
            f"Invalid action: {action_raw!r} (expected one of {', '.join(a.value for a in IntentAction)})"
        ) from None

    intent = Intent(
        action=action,
        reason=sanitize_input(params.get("reason", "")),
        requested_by=sanitize_input(params.get("requested_by", ""), 128),
    )
    logger.info(f"Signal {action.value} for {namespace}/{name} by {intent.requested_by or 'unknown'}")

    reconciler = build_reconciler(config)
    record = send_signal(reconciler.store, namespace, name, intent)
    return create_response(
        success=True,
        data=describe(record),
        message=f"Signal {action.value} recorded",
    )


@validate_request
def handle_status(request: Request) -> Tuple[Dict[str, Any], int]:
    """
    Handle status request - get current upgrade state of clusters.

    Query parameters or JSON body:
    - namespaces / namespace: Namespaces to look in
    - cluster: Optional specific cluster
    """
    config = get_config_from_request(request)
    reconciler = build_reconciler(config)

    params = request_params(request)
    if params.get("namespace") and config.cluster:
        namespace, name = get_target(request, config)
        clusters = [describe(reconciler.store.load(namespace, name))]
    else:
        clusters = []
        for ref in reconciler.scan(config.cluster):
            try:
                clusters.append(describe(reconciler.store.load(ref.namespace, ref.name)))
            except ApiError as e:
                logger.warning(f"Failed to read {ref.key}: {e}")

    return create_response(
        success=True,
        data={
            "namespaces": config.namespaces,
            "cluster_count": len(clusters),
            "clusters": clusters,
        },
    )


def handle_health(request: Request) -> Tuple[Dict[str, Any], int]:
    """Handle health check request."""
    try:
        import google.auth  # noqa: F401

        return create_response(
            success=True,
            data={"status": "healthy"},
        )
    except Exception as e:
        return create_response(
            success=False,
            error="Unhealthy",
            message=str(e),
            status_code=503,
        )
