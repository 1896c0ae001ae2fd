"""
Hopsworks admin REST client.

One client per cluster, authenticated with the cluster's API key, and used as
a context manager so its connection pool is closed after each unit of work.
Calls are synchronous with a bounded timeout; transport errors and 5xx
responses are retryable, other 4xx responses are not, and 409 means the user
already exists.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx

from portal.core.config import settings
from portal.models.cluster import Cluster

logger = logging.getLogger("portal.hopsworks")

HOPSWORKS_API_BASE = "/hopsworks-api/api"
ADMIN_API_BASE = f"{HOPSWORKS_API_BASE}/admin"

# Hopsworks account status vocabulary
STATUS_ACTIVATED = 2
STATUS_DEACTIVATED = 3

_RETRYABLE_STATUS = {408, 425, 429}

T = TypeVar("T")


class HopsworksError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if retryable is None:
            retryable = status_code is None or status_code >= 500 or status_code in _RETRYABLE_STATUS
        self.retryable = retryable

    @property
    def already_exists(self) -> bool:
        return self.status_code == 409 or "already exist" in self.message.lower()


class HopsworksClient:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        verify: bool = True,
        timeout: Optional[float] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._http = http or httpx.Client(
            base_url=self.api_url,
            timeout=timeout or settings.HOPSWORKS_TIMEOUT_SECONDS,
            verify=verify,
            headers={"Authorization": f"ApiKey {api_key}", "Content-Type": "application/json"},
        )

    @classmethod
    def for_cluster(cls, cluster: Cluster) -> "HopsworksClient":
        return cls(
            cluster.api_url,
            cluster.api_key,
            verify=cluster.verify_tls and settings.HOPSWORKS_VERIFY_TLS,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HopsworksClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise HopsworksError(f"Hopsworks request timed out: {method} {path}", retryable=True) from e
        except httpx.TransportError as e:
            raise HopsworksError(f"Hopsworks transport error: {e}", retryable=True) from e

        if response.status_code >= 300:
            raise HopsworksError(
                f"Hopsworks {method} {path} failed: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def create_oauth_user(
        self,
        *,
        email: str,
        given_name: str,
        surname: str,
        subject: str,
        max_num_projects: int,
        client_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "accountType": "REMOTE_ACCOUNT_TYPE",
            "type": "OAUTH2",
            "subject": subject,
            "email": email,
            "givenName": given_name,
            "surname": surname,
            "maxNumProjects": max_num_projects,
            "status": "ACTIVATED",
        }
        if client_id:
            payload["clientId"] = client_id
        response = self._request("POST", f"{ADMIN_API_BASE}/users", json=payload)
        return response.json()

    def get_user(self, hopsworks_user_id: int) -> Dict[str, Any]:
        return self._request("GET", f"{ADMIN_API_BASE}/users/{hopsworks_user_id}").json()

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", f"{ADMIN_API_BASE}/users", params={"filter_by": f"email:{email}"})
        items = response.json().get("items") or []
        return items[0] if items else None

    def set_max_projects(self, hopsworks_user_id: int, max_num_projects: int) -> None:
        self._request("PUT", f"{ADMIN_API_BASE}/users/{hopsworks_user_id}", json={"maxNumProjects": max_num_projects})

    def raise_max_projects(self, hopsworks_user_id: int, max_num_projects: int) -> bool:
        """Raise the quota only when below the target; never lowers it. Returns True if changed."""
        current = self.get_user(hopsworks_user_id).get("maxNumProjects") or 0
        if current >= max_num_projects:
            return False
        self.set_max_projects(hopsworks_user_id, max_num_projects)
        return True

    def set_status(self, hopsworks_user_id: int, status: int) -> None:
        self._request("PUT", f"{ADMIN_API_BASE}/users/{hopsworks_user_id}", json={"status": status})

    def list_user_projects(self, username: str) -> List[Dict[str, Any]]:
        try:
            response = self._request("GET", f"{ADMIN_API_BASE}/users/{username}/projects")
        except HopsworksError as e:
            if e.status_code == 404:
                return []
            raise
        return response.json().get("items") or []

    def add_project_member(self, project_name: str, username: str, project_role: str) -> None:
        self._request(
            "POST",
            f"{HOPSWORKS_API_BASE}/project/{project_name}/projectMembers",
            json={"username": username, "projectRole": project_role},
        )

    def list_project_members(self, project_id: int) -> List[Dict[str, Any]]:
        data = self._request("GET", f"{HOPSWORKS_API_BASE}/project/{project_id}/projectMembers").json()
        return data if isinstance(data, list) else data.get("items") or []


ClientFactory = Callable[[Cluster], HopsworksClient]


def call_with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None],
    description: str = "hopsworks call",
) -> T:
    """Run fn up to max_attempts times, doubling the delay after each retryable failure."""
    delay = base_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except HopsworksError as e:
            if e.already_exists or not e.retryable or attempt == max_attempts:
                raise
            logger.warning(
                "hopsworks.retry",
                extra={"operation": description, "attempt": attempt, "delay_s": delay, "error": e.message},
            )
            sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")
