"""
REST client for the Kubernetes API server hosting the MarkLogic clusters.

Authenticates with Google application default credentials, which GKE
control planes accept as bearer tokens.
"""

import logging
import time
from typing import Dict, Iterable, List, Optional

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"
STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"


class ApiError(RuntimeError):
    """Non-retryable error returned by the API server."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ApiError):
    """The requested object does not exist (HTTP 404)."""


class ConflictError(ApiError):
    """The object changed since it was read (HTTP 409, stale resourceVersion)."""


class KubernetesRestClient:
    """Thin REST client for the custom resource, StatefulSets and Events."""

    # 409 (stale resourceVersion) surfaces as ConflictError, never retried
    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        api_server: str,
        ca_cert: Optional[str] = None,
        timeout_s: int = 30,
        max_retries: int = 3,
        base_delay: float = 0.5,
    ):
        """
        Initialize the Kubernetes REST client.

        Args:
            api_server: API server base URL (e.g. https://10.0.0.2)
            ca_cert: Optional path to the cluster CA bundle
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
        """
        self.api_server = api_server.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        creds, _ = google.auth.default(
            scopes=["https://www.googleapis.com/auth/cloud-platform"]
        )
        self.session = AuthorizedSession(creds)
        if ca_cert:
            self.session.verify = ca_cert

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{self.api_server}/{path.lstrip('/')}"

    def _request_with_retry(self, method: str, url: str, **kwargs) -> dict:
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Args:
            method: HTTP method (GET, PUT, PATCH, POST)
            url: Request URL
            **kwargs: Additional request parameters

        Returns:
            Dictionary with 'response' and 'status_code' keys

        Raises:
            ValueError: If the method is not supported
            ApiError: If max retries exceeded
        """
        if method.upper() not in ("GET", "PUT", "PATCH", "POST"):
            raise ValueError(f"Unsupported method: {method}")

        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except requests.RequestException as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                if attempt < self.max_retries:
                    time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                delay = self._calculate_delay(attempt, resp)
                error_info = self._error_message(resp)
                logger.warning(
                    f"Retryable error {resp.status_code} ({error_info}), attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {error_info or resp.text[:200]}"
                if attempt < self.max_retries:
                    time.sleep(delay)
                continue

            return {"response": resp, "status_code": resp.status_code}

        raise ApiError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return min(float(resp.headers["Retry-After"]), 30.0)
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 10.0)

    @staticmethod
    def _error_message(resp) -> str:
        """Extract the Status message from an error response, if any."""
        try:
            return str(resp.json().get("message", ""))
        except ValueError:
            return ""

    def _check(self, resp, action: str, expected: Iterable[int] = (200,)) -> Dict:
        """
        Map an HTTP response to its JSON body or a typed error.

        Raises:
            NotFoundError: On 404
            ConflictError: On 409
            ApiError: On any other unexpected status
        """
        if resp.status_code in expected:
            return resp.json()
        message = f"{action} failed ({resp.status_code}): {self._error_message(resp) or resp.text[:200]}"
        if resp.status_code == 404:
            raise NotFoundError(message, resp.status_code)
        if resp.status_code == 409:
            raise ConflictError(message, resp.status_code)
        raise ApiError(message, resp.status_code)

    @staticmethod
    def _custom_path(
        group: str, version: str, plural: str, namespace: Optional[str] = None
    ) -> str:
        if namespace:
            return f"apis/{group}/{version}/namespaces/{namespace}/{plural}"
        return f"apis/{group}/{version}/{plural}"

    def get_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> Dict:
        """
        Get a namespaced custom resource.

        Returns:
            Resource as dictionary

        Raises:
            NotFoundError: If the resource does not exist
            ApiError: If API call fails
        """
        url = self._url(f"{self._custom_path(group, version, plural, namespace)}/{name}")
        result = self._request_with_retry("GET", url)
        return self._check(result["response"], f"Get {plural}/{name}")

    def list_custom_objects(
        self,
        group: str,
        version: str,
        plural: str,
        namespace: Optional[str] = None,
        page_size: int = 100,
    ) -> List[Dict]:
        """
        List custom resources in one namespace, or across all namespaces.

        Follows the list ``continue`` token until exhausted.

        Returns:
            List of resource dictionaries
        """
        url = self._url(self._custom_path(group, version, plural, namespace))

        items: List[Dict] = []
        continue_token: Optional[str] = None

        while True:
            params = {"limit": page_size}
            if continue_token:
                params["continue"] = continue_token

            result = self._request_with_retry("GET", url, params=params)
            data = self._check(result["response"], f"List {plural}")
            items.extend(data.get("items", []))

            continue_token = (data.get("metadata") or {}).get("continue")
            if not continue_token:
                break

        return items

    def replace_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str, body: Dict
    ) -> Dict:
        """
        Replace a custom resource (metadata and spec).

        The body must carry ``metadata.resourceVersion``; the server rejects
        the write with 409 if the object changed since it was read.

        Raises:
            ConflictError: If the resourceVersion is stale
            ApiError: If API call fails
        """
        url = self._url(f"{self._custom_path(group, version, plural, namespace)}/{name}")
        result = self._request_with_retry("PUT", url, json=body)
        return self._check(result["response"], f"Replace {plural}/{name}", (200, 201))

    def replace_custom_object_status(
        self, group: str, version: str, namespace: str, plural: str, name: str, body: Dict
    ) -> Dict:
        """
        Replace the status subresource of a custom resource.

        Raises:
            ConflictError: If the resourceVersion is stale
            ApiError: If API call fails
        """
        url = self._url(
            f"{self._custom_path(group, version, plural, namespace)}/{name}/status"
        )
        result = self._request_with_retry("PUT", url, json=body)
        return self._check(result["response"], f"Replace {plural}/{name}/status", (200, 201))

    def get_statefulset(self, namespace: str, name: str) -> Dict:
        """
        Get a StatefulSet.

        Raises:
            NotFoundError: If the StatefulSet does not exist
            ApiError: If API call fails
        """
        url = self._url(f"apis/apps/v1/namespaces/{namespace}/statefulsets/{name}")
        result = self._request_with_retry("GET", url)
        return self._check(result["response"], f"Get statefulset {name}")

    def patch_statefulset_image(
        self, namespace: str, name: str, container: str, image: str
    ) -> Dict:
        """
        Set the image of one container in a StatefulSet pod template.

        Uses a strategic merge patch keyed on container name, so re-applying
        the same image is a no-op.

        Returns:
            Patched StatefulSet as dictionary

        Raises:
            NotFoundError: If the StatefulSet does not exist
            ApiError: If API call fails
        """
        url = self._url(f"apis/apps/v1/namespaces/{namespace}/statefulsets/{name}")
        body = {
            "spec": {
                "template": {
                    "spec": {"containers": [{"name": container, "image": image}]}
                }
            }
        }
        result = self._request_with_retry(
            "PATCH", url, json=body, headers={"Content-Type": STRATEGIC_MERGE_PATCH}
        )
        return self._check(result["response"], f"Patch statefulset {name}")

    def create_event(self, namespace: str, body: Dict) -> Dict:
        """
        Create a core/v1 Event.

        Raises:
            ApiError: If API call fails
        """
        url = self._url(f"api/v1/namespaces/{namespace}/events")
        result = self._request_with_retry("POST", url, json=body)
        return self._check(result["response"], "Create event", (200, 201))
