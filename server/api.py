from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, WebSocket

from shared.protocol import (
    IP_RATE_LIMIT,
    RELAY_PATH,
    BoardMessage,
    DisconnectReason,
    InvalidSessionCode,
    Role,
    normalize_session_code,
)

from .presence import PresenceRegistry
from .rate_limit import RateLimiter
from .relay import SignalingRelay
from .session_registry import AlreadyPaired, AlreadyTerminated, SessionNotFound, SessionRegistry

logger = logging.getLogger(__name__)


_LOG_BUFFER_LIMIT = 200
_log_buffer = deque(maxlen=_LOG_BUFFER_LIMIT)


class _InMemoryLogHandler(logging.Handler):
    """Collect recent log records for diagnostics."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        try:
            message = self.format(record)
        except Exception:
            message = record.getMessage()
        _log_buffer.append(
            {
                "message": message,
                "level": record.levelname.lower(),
                "logger": record.name,
                "timestamp": record.created,
            }
        )


def _ensure_log_handler() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler, _InMemoryLogHandler) for handler in root_logger.handlers):
        return
    handler = _InMemoryLogHandler(level=logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def _get_log_tail(limit: int = 50) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    return list(_log_buffer)[-limit:]


def _session_code(value: Any) -> str:
    try:
        return normalize_session_code(value)
    except InvalidSessionCode as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _optional_str(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _enforce(limiter: RateLimiter, key: Optional[str]) -> None:
    result = limiter.check(key)
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Too many requests; retry in {result.retry_after}s",
            headers={"Retry-After": str(result.retry_after)},
        )


def _disconnect_reason(raw: Any, default: DisconnectReason) -> DisconnectReason:
    if raw is None or raw == "":
        return default
    try:
        return DisconnectReason(str(raw).lower())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"unknown reason {raw!r}") from exc


_ensure_log_handler()


class PairingApi:
    """FastAPI application exposing the session control plane and the relay socket."""

    def __init__(
        self,
        registry: SessionRegistry,
        presence: PresenceRegistry,
        relay: SignalingRelay,
        *,
        pair_limiter: Optional[RateLimiter] = None,
        broker_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._registry = registry
        self._presence = presence
        self._relay = relay
        self._pair_limiter = pair_limiter or RateLimiter(name="pairing")
        self._broker_limiter = broker_limiter or RateLimiter(IP_RATE_LIMIT, name="broker messages")
        self._started_at = time.time()
        self._app = FastAPI(title="flipsync")

        @self._app.post("/api/sessions/register", status_code=201)
        async def register(payload: dict = Body(...)) -> dict:
            code = _session_code(payload.get("sessionCode"))
            try:
                status = await self._registry.register(code)
            except AlreadyPaired as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            return {"ok": True, "sessionCode": code, "status": status["status"]}

        @self._app.post("/api/sessions/pair")
        async def pair(request: Request, payload: dict = Body(...)) -> dict:
            _enforce(self._pair_limiter, _client_ip(request))
            code = _session_code(payload.get("sessionCode"))
            user_id = _optional_str(payload, "userId")
            board_id = _optional_str(payload, "boardId")
            try:
                status = await self._registry.pair(
                    code,
                    user_id=user_id,
                    board_id=board_id,
                    device_id=_optional_str(payload, "deviceId"),
                )
            except SessionNotFound as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            except AlreadyTerminated as exc:
                raise HTTPException(status_code=410, detail=str(exc)) from exc
            except AlreadyPaired as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            await self._relay.notify_paired(code, user_id, status.get("boardId"))
            return {
                "ok": True,
                "sessionCode": code,
                "boardId": status.get("boardId"),
                "userTier": await self._relay.lookup_tier(user_id),
            }

        @self._app.get("/api/sessions/{code}/status")
        async def session_status(code: str) -> dict:
            try:
                return await self._registry.get_status(_session_code(code))
            except SessionNotFound as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc

        @self._app.get("/api/session/exists/{code}")
        async def session_exists(code: str) -> dict:
            return {"exists": await self._registry.exists(_session_code(code))}

        @self._app.post("/api/session/{code}/message")
        async def publish_message(code: str, request: Request, payload: dict = Body(...)) -> dict:
            code = _session_code(code)
            _enforce(self._broker_limiter, _client_ip(request))
            try:
                message = BoardMessage.from_dict(payload)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            try:
                status = await self._registry.get_status(code)
            except SessionNotFound as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            if not status["paired"]:
                raise HTTPException(status_code=409, detail=f"Session {code} is not paired")
            published, duplicate = await self._relay.publish_message(code, message)
            return {"success": True, "published": published, "duplicate": duplicate}

        @self._app.post("/api/session/{code}/end")
        async def end_session(code: str, payload: Optional[dict] = Body(None)) -> dict:
            code = _session_code(code)
            payload = payload or {}
            try:
                await self._registry.get_status(code)
            except SessionNotFound as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            reason = _disconnect_reason(payload.get("reason"), DisconnectReason.ENDED)
            terminated = await self._relay.terminate_session(code, reason, _optional_str(payload, "message"))
            logger.info("Session %s end requested (reason=%s, terminated=%s)", code, reason.value, terminated)
            return {"ok": True, "sessionCode": code, "terminated": terminated}

        @self._app.get("/api/session/{code}/presence")
        async def presence_summary(code: str) -> dict:
            return await self._presence.summary(_session_code(code))

        @self._app.get("/api/session/{code}/presence/users")
        async def presence_users(code: str) -> dict:
            code = _session_code(code)
            return {"sessionCode": code, "users": await self._presence.users(code)}

        @self._app.post("/api/session/{code}/presence/join")
        async def presence_join(code: str, payload: dict = Body(...)) -> dict:
            code = _session_code(code)
            user_id = _optional_str(payload, "userId")
            if not user_id:
                raise HTTPException(status_code=400, detail="userId is required")
            try:
                user_type = Role(str(payload.get("type") or "").lower())
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="type must be controller or display") from exc
            metadata = payload.get("metadata")
            if metadata is not None and not isinstance(metadata, dict):
                raise HTTPException(status_code=400, detail="metadata must be an object")
            if not await self._registry.exists(code):
                raise HTTPException(status_code=404, detail=f"Session {code} not found")
            entry = await self._presence.join(
                code,
                user_id,
                user_type,
                name=_optional_str(payload, "name"),
                metadata=metadata,
            )
            await self._relay.broadcast_presence(code)
            return {"success": True, "user": entry.to_dict()}

        @self._app.post("/api/session/{code}/presence/leave")
        async def presence_leave(code: str, payload: dict = Body(...)) -> dict:
            code = _session_code(code)
            user_id = _optional_str(payload, "userId")
            if not user_id:
                raise HTTPException(status_code=400, detail="userId is required")
            removed = await self._presence.leave(code, user_id)
            if removed:
                await self._relay.broadcast_presence(code)
            return {"success": removed}

        @self._app.post("/api/session/{code}/presence/activity")
        async def presence_activity(code: str, payload: dict = Body(...)) -> dict:
            code = _session_code(code)
            user_id = _optional_str(payload, "userId")
            if not user_id:
                raise HTTPException(status_code=400, detail="userId is required")
            updated = await self._presence.update_activity(code, user_id)
            if updated:
                await self._registry.record_activity(code)
            return {"success": updated}

        @self._app.post("/api/session/{code}/presence/cleanup")
        async def presence_cleanup(code: str, payload: Optional[dict] = Body(None)) -> dict:
            code = _session_code(code)
            raw_idle = (payload or {}).get("idleSeconds")
            idle_seconds: Optional[float] = None
            if raw_idle is not None:
                try:
                    idle_seconds = float(raw_idle)
                except (TypeError, ValueError) as exc:
                    raise HTTPException(status_code=400, detail="idleSeconds must be numeric") from exc
            removed = await self._presence.cleanup_idle(code, idle_seconds)
            if removed:
                await self._relay.broadcast_presence(code)
            return {"success": True, "removed": removed}

        @self._app.post("/api/admin/sessions/{code}/terminate")
        async def admin_terminate(code: str, payload: Optional[dict] = Body(None)) -> dict:
            code = _session_code(code)
            payload = payload or {}
            reason = _disconnect_reason(payload.get("reason"), DisconnectReason.ADMIN)
            terminated = await self._relay.terminate_session(code, reason, _optional_str(payload, "message"))
            if not terminated:
                raise HTTPException(status_code=404, detail=f"Session {code} is not active")
            logger.info("Admin terminated session %s (reason=%s)", code, reason.value)
            return {"status": "ok", "sessionCode": code}

        @self._app.post("/api/admin/connections/{peer_id}/disconnect")
        async def admin_disconnect(peer_id: str, payload: Optional[dict] = Body(None)) -> dict:
            payload = payload or {}
            reason = _disconnect_reason(payload.get("reason"), DisconnectReason.ADMIN)
            removed = await self._relay.force_disconnect(peer_id, reason, _optional_str(payload, "message"))
            if not removed:
                raise HTTPException(status_code=404, detail=f"{peer_id} is not connected")
            logger.info("Admin disconnected peer %s", peer_id)
            return {"status": "ok"}

        @self._app.get("/api/debug/sessions")
        async def debug_sessions() -> dict:
            snapshot = await self._registry.snapshot()
            snapshot["relay"] = await self._relay.snapshot()
            snapshot["timestamp"] = time.time()
            return snapshot

        @self._app.get("/api/debug/session-events")
        async def debug_session_events(
            session_code: Optional[str] = Query(None, alias="sessionCode"),
            limit: int = Query(100, ge=1, le=1000),
        ) -> dict:
            code = _session_code(session_code) if session_code else None
            return {"events": await self._registry.get_recent_events(code, limit=limit)}

        @self._app.get("/api/health")
        async def health() -> dict:
            relay = await self._relay.snapshot()
            return {
                "status": "ok",
                "sessions": len(await self._registry.live_codes()),
                "connections": relay["connection_count"],
                "uptime": time.time() - self._started_at,
                "timestamp": time.time(),
            }

        @self._app.get("/api/diagnostics")
        async def diagnostics(limit: int = Query(50, ge=1, le=_LOG_BUFFER_LIMIT)) -> dict:
            return {"log_tail": _get_log_tail(limit), "timestamp": time.time()}

        @self._app.websocket(RELAY_PATH)
        async def relay_socket(websocket: WebSocket) -> None:
            await websocket.accept()
            ip = websocket.client.host if websocket.client else None
            await self._relay.serve(websocket, ip)

    @property
    def app(self) -> FastAPI:
        return self._app


class ApiServer:
    """Background task helper for running the FastAPI app under uvicorn."""

    def __init__(self, api: PairingApi, *, host: str, port: int, log_level: str = "info") -> None:
        self._api = api
        self._host = host
        self._port = port
        self._log_level = log_level
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._api.app, host=self._host, port=self._port, log_level=self._log_level)
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Pairing server available at http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
