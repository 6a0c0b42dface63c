from __future__ import annotations

import logging
import threading
from typing import Any

import httpx

logger = logging.getLogger("salesforce_pro.importer")

DEFAULT_TIMEOUT = 20.0
_NO_REFRESH_PATHS = ("/auth/login", "/auth/refresh", "/auth/logout")


class ApiError(Exception):
    def __init__(self, status_code: int, message: str, payload: Any = None) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail")
        if message:
            return str(message)
    return response.reason_phrase


class CrmApiClient:
    """Thin JSON client for the SalesforcePro API.

    The refresh token lives in the client's cookie jar after ``login``; a request answered
    with 401 triggers one ``POST /auth/refresh`` and is replayed with the new access token.
    """

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.BaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._http = httpx.Client(base_url=base_url.rstrip("/"), transport=transport, timeout=timeout)
        self._access_token: str | None = None
        self._refresh_lock = threading.Lock()

    def __enter__(self) -> CrmApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def _headers(self) -> dict[str, str]:
        if not self._access_token:
            return {}
        return {"Authorization": f"Bearer {self._access_token}"}

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return self._http.request(method, path, headers=self._headers(), **kwargs)

    def _refresh_token(self) -> bool:
        response = self._http.post("/auth/refresh")
        if response.status_code != 200:
            logger.warning("importer.refresh_failed", extra={"status_code": response.status_code})
            return False
        self._access_token = response.json().get("accessToken")
        return bool(self._access_token)

    def _refresh_after(self, stale_token: str | None) -> bool:
        with self._refresh_lock:
            # another thread already refreshed while this one waited
            if self._access_token and self._access_token != stale_token:
                return True
            return self._refresh_token()

    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        token = self._access_token
        try:
            response = self._send(method, path, **kwargs)
            if response.status_code == 401 and not path.startswith(_NO_REFRESH_PATHS):
                if self._refresh_after(token):
                    response = self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ApiError(0, f"request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ApiError(response.status_code, _error_message(response), _safe_json(response))
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def login(self, email: str, password: str) -> dict[str, Any]:
        body = self.request("POST", "/auth/login", json={"email": email, "password": password})
        self._access_token = body["accessToken"]
        return body["user"]

    def refresh(self) -> bool:
        with self._refresh_lock:
            return self._refresh_token()

    def me(self) -> dict[str, Any]:
        return self.request("GET", "/auth/me")

    def preview_import(self, rows: list[dict[str, Any]]) -> dict[str, Any]:
        return self.request("POST", "/clients/import/preview", json={"rows": rows})

    def import_clients(self, rows: list[dict[str, Any]]) -> dict[str, Any]:
        return self.request("POST", "/clients/import", json={"rows": rows})

    def create_client(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/clients", json=payload)

    def update_client(self, client_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self.request("PUT", f"/clients/{client_id}", json=payload)


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
