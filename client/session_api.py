from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from shared.protocol import BoardMessage, Role, normalize_session_code

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class ApiError(Exception):
    """Raised when the pairing server answers with an error or cannot be reached."""

    def __init__(self, status_code: Optional[int], message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"{status_code}: {message}" if status_code is not None else message)

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class SessionApiClient:
    """Thin async wrapper around the pairing server's HTTP endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SessionApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def register(self, code: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/sessions/register", json={"sessionCode": normalize_session_code(code)})

    async def pair(
        self,
        code: str,
        *,
        user_id: Optional[str] = None,
        board_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"sessionCode": normalize_session_code(code)}
        if user_id:
            body["userId"] = user_id
        if board_id:
            body["boardId"] = board_id
        if device_id:
            body["deviceId"] = device_id
        return await self._request("POST", "/api/sessions/pair", json=body)

    async def get_status(self, code: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/sessions/{normalize_session_code(code)}/status")

    async def exists(self, code: str) -> bool:
        result = await self._request("GET", f"/api/session/exists/{normalize_session_code(code)}")
        return bool(result.get("exists"))

    async def publish_message(self, code: str, message: BoardMessage) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/session/{normalize_session_code(code)}/message",
            json=message.to_dict(),
        )

    async def end_session(self, code: str, reason: Optional[str] = None) -> Dict[str, Any]:
        body = {"reason": reason} if reason else {}
        return await self._request("POST", f"/api/session/{normalize_session_code(code)}/end", json=body)

    async def presence_join(
        self,
        code: str,
        user_id: str,
        user_type: Role,
        *,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/session/{normalize_session_code(code)}/presence/join",
            json={
                "userId": user_id,
                "type": user_type.value,
                "name": name or user_id,
                "metadata": metadata or {},
            },
        )

    async def presence_leave(self, code: str, user_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/session/{normalize_session_code(code)}/presence/leave",
            json={"userId": user_id},
        )

    async def presence_activity(self, code: str, user_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/api/session/{normalize_session_code(code)}/presence/activity",
            json={"userId": user_id},
        )

    async def presence_summary(self, code: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/session/{normalize_session_code(code)}/presence")

    async def presence_users(self, code: str) -> list[Dict[str, Any]]:
        result = await self._request("GET", f"/api/session/{normalize_session_code(code)}/presence/users")
        users = result.get("users")
        return users if isinstance(users, list) else []

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ApiError(None, f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            raise ApiError(response.status_code, self._error_detail(response))
        try:
            body = response.json()
        except ValueError as exc:
            raise ApiError(response.status_code, "response was not valid JSON") from exc
        if not isinstance(body, dict):
            raise ApiError(response.status_code, "response was not a JSON object")
        logger.debug("%s %s -> %s", method, path, response.status_code)
        return body

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            detail = body.get("detail") or body.get("message") or body.get("error")
            if detail:
                return str(detail)
        return response.reason_phrase
