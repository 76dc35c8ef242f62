"""
HTTP client for the ACE CBT token authority (the Django backend).

Every call is bounded by one overall timeout that covers connecting,
sending and reading the whole body. Responses that are not JSON are failures regardless of status.
Admin calls send the bearer token from the admin login.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout

import requests

from .errors import NetworkUnavailable, RemoteError, RemoteTimeout

logger = logging.getLogger(__name__)

TIMEOUT = 5  # seconds


class BackendAPIError(RemoteError):
    def __init__(self, message: str, status_code: int | None = None, code: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class NonJSONResponse(BackendAPIError):
    pass


def _response_error(resp: requests.Response, data) -> BackendAPIError:
    message = f"HTTP {resp.status_code}"
    code = ""
    if isinstance(data, dict):
        if data.get("error"):
            message = str(data["error"])
        code = str(data.get("code") or "")
    return BackendAPIError(message, status_code=resp.status_code, code=code)


class TokenAuthorityClient:
    def __init__(self, base_url: str, timeout: float = TIMEOUT, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _send(self, method: str, url: str, payload, headers: dict, timeout: float) -> requests.Response:
        resp = self.session.request(method, url, json=payload, headers=headers, timeout=timeout)
        try:
            # Read the whole body in this thread so the caller's wait covers it.
            _ = resp.content
        finally:
            resp.close()
        return resp

    def _request(self, method: str, endpoint: str, payload: dict | None = None, *,
                 auth_token: str = "", timeout: float | None = None):
        url = f"{self.base_url}{endpoint}"
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        budget = timeout if timeout is not None else self.timeout

        # `requests` timeouts apply per socket read; the future bounds the whole exchange.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="token-authority")
        future = executor.submit(self._send, method, url, payload, headers, budget)
        try:
            resp = future.result(timeout=budget)
        except requests.Timeout as exc:
            raise RemoteTimeout() from exc
        except requests.RequestException as exc:
            raise NetworkUnavailable(str(exc)) from exc
        except FuturesTimeout as exc:
            logger.warning("%s %s took longer than %.1fs; abandoning it", method, endpoint, budget)
            raise RemoteTimeout() from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        content_type = resp.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            raise NonJSONResponse(f"Non-JSON response (Status {resp.status_code})", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise NonJSONResponse(f"Malformed JSON (Status {resp.status_code})",
                                  status_code=resp.status_code) from exc

        if not resp.ok:
            raise _response_error(resp, data)
        return data

    # -------------------------------------------------------------- students

    def login_with_token(self, code: str, fingerprint: str, confirm_binding: bool = False, *,
                         timeout: float | None = None) -> dict:
        """
        Returns the identity payload, or {"requires_binding": true} when the
        code is unbound and binding was not confirmed.
        """
        return self._request("POST", "/api/auth/login-with-token/", {
            "token": code,
            "deviceFingerprint": fingerprint,
            "confirm_binding": confirm_binding,
        }, timeout=timeout)

    def verify_payment(self, reference: str, email: str, full_name: str, phone_number: str,
                       exam_type: str, *, timeout: float | None = None) -> dict:
        return self._request("POST", "/api/payments/verify/", {
            "reference": reference,
            "email": email,
            "fullName": full_name,
            "phoneNumber": phone_number,
            "examType": exam_type,
        }, timeout=timeout)

    def login(self, username: str, password: str, role: str, *, timeout: float | None = None) -> dict:
        return self._request("POST", "/api/auth/login/", {
            "username": username,
            "password": password,
            "role": role,
        }, timeout=timeout)

    def register_student(self, full_name: str, reg_number: str, exam_type: str = "BOTH",
                         password: str = "", *, timeout: float | None = None) -> dict:
        payload = {"fullName": full_name, "regNumber": reg_number, "examType": exam_type}
        if password:
            payload["password"] = password
        return self._request("POST", "/api/auth/register/", payload, timeout=timeout)

    # -------------------------------------------------------------- admin

    def update_credentials(self, current_username: str, current_password: str, new_username: str,
                           new_password: str, *, auth_token: str, timeout: float | None = None) -> dict:
        return self._request("POST", "/api/auth/update-credentials/", {
            "currentUsername": current_username,
            "currentPassword": current_password,
            "newUsername": new_username,
            "newPassword": new_password,
            "role": "admin",
        }, auth_token=auth_token, timeout=timeout)

    def list_students(self, *, auth_token: str, timeout: float | None = None) -> list:
        return self._request("GET", "/api/users/students/", auth_token=auth_token, timeout=timeout)

    def delete_student(self, username: str, *, auth_token: str, timeout: float | None = None) -> dict:
        return self._request("DELETE", f"/api/users/{username}/", auth_token=auth_token, timeout=timeout)

    def generate_token(self, reference: str, amount: float, exam_type: str, full_name: str,
                       phone_number: str, email: str = "", *, auth_token: str,
                       timeout: float | None = None) -> dict:
        return self._request("POST", "/api/admin/generate-token/", {
            "reference": reference,
            "amount": amount,
            "examType": exam_type,
            "fullName": full_name,
            "phoneNumber": phone_number,
            "email": email,
        }, auth_token=auth_token, timeout=timeout)

    def list_tokens(self, *, auth_token: str, timeout: float | None = None) -> list:
        return self._request("GET", "/api/admin/tokens/", auth_token=auth_token, timeout=timeout)

    def set_token_status(self, code: str, is_active: bool, *, auth_token: str,
                         timeout: float | None = None) -> dict:
        return self._request("POST", "/api/admin/token-status/", {"tokenCode": code, "isActive": is_active},
                             auth_token=auth_token, timeout=timeout)

    def reset_token_device(self, code: str, *, auth_token: str, timeout: float | None = None) -> dict:
        return self._request("POST", "/api/admin/reset-token-device/", {"tokenCode": code},
                             auth_token=auth_token, timeout=timeout)

    def delete_token(self, code: str, *, auth_token: str, timeout: float | None = None) -> dict:
        return self._request("DELETE", f"/api/admin/tokens/{code}/", auth_token=auth_token, timeout=timeout)

    def check_connection(self, timeout: float | None = None) -> bool:
        """Ping the backend health endpoint."""
        try:
            data = self._request("GET", "/health", timeout=timeout)
        except RemoteError:
            return False
        return isinstance(data, dict) and bool(data.get("ok"))
