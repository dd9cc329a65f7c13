"""
API client for the VisionEra Gateway.

Wraps the dashboard, share, API key and admin endpoints for scripts and
the admin tooling. Authenticates with a Firebase ID token (dashboard and
admin routes) or a tenant API key (v1 routes).
"""

from typing import Any, Dict, List, Optional, Tuple

import httpx

# (filename, content, content_type)
FileSpec = Tuple[str, bytes, str]


class GatewayClientError(Exception):
    """Non-2xx response from the gateway."""

    def __init__(self, status_code: int, code: Optional[str], message: str, body: Any = None):
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.body = body


class GatewayClient:
    """
    Client for the VisionEra Gateway REST API.

    Args:
        base_url: Gateway root URL.
        token: Firebase ID token, API key or share token sent as Bearer.
        timeout_sec: Request timeout.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        token: Optional[str] = None,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout_sec,
            transport=transport,
        )
        self.set_token(token)

    def set_token(self, token: Optional[str]) -> None:
        self.token = token
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        else:
            self._client.headers.pop("Authorization", None)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayClientError(0, "CONNECTION_ERROR", str(e)) from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"message": response.text}

        if response.is_error:
            code = body.get("code") if isinstance(body, dict) else None
            message = (
                body.get("message") or body.get("error") or response.reason_phrase
                if isinstance(body, dict) else response.reason_phrase
            )
            raise GatewayClientError(response.status_code, code, message, body)
        return body

    @staticmethod
    def _files(field: str, files: List[FileSpec]) -> List[Tuple[str, FileSpec]]:
        return [(field, f) for f in files]

    # ==================== System ====================

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")

    def check_backend_available(self) -> bool:
        """Check if the gateway is reachable."""
        try:
            self.health()
        except GatewayClientError:
            return False
        return True

    # ==================== Account ====================

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/api/me")

    def init_account(self) -> Dict[str, Any]:
        return self._request("POST", "/api/auth/init")

    # ==================== Face Search ====================

    def one_to_one(self, source: FileSpec, target: FileSpec) -> Dict[str, Any]:
        return self._request(
            "POST", "/api/face-search/one-to-one", files=[("source", source), ("target", target)]
        )

    def one_to_n(self, source: FileSpec, targets: List[FileSpec]) -> Dict[str, Any]:
        files = [("source", source)] + self._files("targets", targets)
        return self._request("POST", "/api/face-search/one-to-n", files=files)

    def n_to_n(self, set1: List[FileSpec], set2: List[FileSpec]) -> Dict[str, Any]:
        files = self._files("set1", set1) + self._files("set2", set2)
        return self._request("POST", "/api/face-search/n-to-n", files=files)

    def list_requests(
        self,
        request_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        sort: str = "desc",
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit, "offset": offset, "sort": sort}
        if request_type:
            params["type"] = request_type
        return self._request("GET", "/api/face-search/requests", params=params)

    def get_request(self, request_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/face-search/requests/{request_id}")

    def delete_request(self, request_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/face-search/requests/{request_id}")

    def store_result(self, request_type: str, request_data: Any, result_data: Any) -> Dict[str, Any]:
        return self._request("POST", "/api/face-search/store-result", json={
            "type": request_type,
            "request_data": request_data,
            "result_data": result_data,
        })

    # ==================== Share ====================

    def create_share(self, request_id: str) -> Dict[str, Any]:
        return self._request("POST", "/api/share", json={"request_id": request_id})

    def get_shared_result(self, share_token: str) -> Dict[str, Any]:
        """Fetch a shared result; uses the share token instead of the client token."""
        return self._request(
            "GET", "/api/result", headers={"Authorization": f"Bearer {share_token}"}
        )

    def list_share_tokens(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/share/tokens")["tokens"]

    def revoke_share_token(self, token_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/share/tokens/{token_id}")

    # ==================== API Keys ====================

    def create_api_key(self, name: str, expiry: str = "90d") -> Dict[str, Any]:
        return self._request("POST", "/api/api-keys", json={"name": name, "expiry": expiry})

    def list_api_keys(self) -> Dict[str, Any]:
        return self._request("GET", "/api/api-keys")

    def reveal_api_key(self, key_id: str) -> str:
        return self._request("GET", f"/api/api-keys/{key_id}/reveal")["data"]["key"]

    def revoke_api_key(self, key_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/api-keys/{key_id}")

    # ==================== Payments ====================

    def payment_status(self) -> Dict[str, Any]:
        return self._request("GET", "/api/payments/status")

    def subscribe(self, plan_code: str, billing: str = "monthly") -> Dict[str, Any]:
        return self._request(
            "POST", "/api/payments/subscribe", json={"plan_code": plan_code, "billing": billing}
        )

    def cancel_subscription(self, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", "/api/payments/cancel", json={"reason": reason})

    # ==================== Admin ====================

    def admin_stats(self) -> Dict[str, Any]:
        return self._request("GET", "/api/admin/stats")

    def admin_list_users(self, **params: Any) -> Dict[str, Any]:
        """List users; accepts page, limit, plan, status, role, search, sort, order."""
        return self._request("GET", "/api/admin/users", params=params)

    def admin_get_user(self, user_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/api/admin/users/{user_id}")

    def admin_change_plan(self, user_id: int, plan_code: str) -> Dict[str, Any]:
        return self._request(
            "POST", f"/api/admin/users/{user_id}/change-plan", json={"plan_code": plan_code}
        )

    def admin_change_role(self, user_id: int, system_role: str) -> Dict[str, Any]:
        return self._request(
            "POST", f"/api/admin/users/{user_id}/change-role", json={"system_role": system_role}
        )

    def admin_suspend(self, user_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/api/admin/users/{user_id}/suspend", json={"reason": reason})

    def admin_unsuspend(self, user_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/api/admin/users/{user_id}/unsuspend")

    def admin_ban(self, user_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", f"/api/admin/users/{user_id}/ban", json={"reason": reason})

    def admin_unban(self, user_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/api/admin/users/{user_id}/unban")

    def admin_extend_trial(self, user_id: int, days: int = 14) -> Dict[str, Any]:
        return self._request("POST", f"/api/admin/users/{user_id}/extend-trial", json={"days": days})

    def admin_reset_usage(self, user_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/api/admin/users/{user_id}/reset-usage")

    def admin_audit_logs(self, **params: Any) -> Dict[str, Any]:
        return self._request("GET", "/api/admin/audit-logs", params=params)

    def admin_abuse_flags(self, resolved: str = "false", **params: Any) -> Dict[str, Any]:
        return self._request("GET", "/api/admin/abuse-flags", params={"resolved": resolved, **params})

    def admin_resolve_flag(self, flag_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/admin/abuse-flags/{flag_id}/resolve")

    def admin_abuse_scan(self) -> Dict[str, Any]:
        return self._request("POST", "/api/admin/abuse-scan")

    def admin_plans(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/admin/plans")["plans"]

    def admin_list_api_keys(self, **params: Any) -> Dict[str, Any]:
        return self._request("GET", "/api/admin/api-keys", params=params)

    def admin_get_api_key(self, key_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/admin/api-keys/{key_id}")

    def admin_revoke_api_key(self, key_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/admin/api-keys/{key_id}")
