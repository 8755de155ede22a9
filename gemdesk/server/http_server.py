"""HTTP + SSE server for gemdesk.

Exposes the session store and command submission as a REST API, and
pushes worker output and session lifecycle changes to every connected
client over Server-Sent Events.

Usage:
    gemdesk --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from gemdesk.adapters.controller import SessionController
from gemdesk.adapters.event_bus import EventBus
from gemdesk.adapters.events import event_to_dict
from gemdesk.engine.config import BridgeConfig
from gemdesk.engine.errors import (
    InvalidSessionIdError,
    InvocationInProgressError,
    SessionNotFoundError,
    StaleSessionError,
)
from gemdesk.engine.process_bridge import ProcessBridge
from gemdesk.shared.models.session import Session
from gemdesk.shared.services.persistence import SessionStore

logger = logging.getLogger(__name__)


class GemdeskServer:
    """HTTP + SSE server wrapping SessionController.

    Thin adapter: sessions live in the SessionStore and worker state in
    the ProcessBridge. This class only handles HTTP routing, SSE fan-out,
    and lifecycle.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        sse_keepalive_seconds: float = 30.0,
    ) -> None:
        self._config = config or BridgeConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._sse_keepalive_seconds = sse_keepalive_seconds
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._started_at = time.time()

        self._store = SessionStore(self._config.sessions_dir)
        self._bridge = ProcessBridge(self._config)
        self._event_bus = EventBus()
        self._controller = SessionController(
            self._store, self._bridge, event_callback=self._event_bus.make_callback(),
        )
        self._event_task: asyncio.Task | None = None

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def controller(self) -> SessionController:
        return self._controller

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-gemdesk-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        # Session CRUD
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions", self._handle_create_session)
        r.add_get("/sessions/{id}", self._handle_get_session)
        r.add_put("/sessions/{id}", self._handle_save_session)
        r.add_delete("/sessions/{id}", self._handle_delete_session)
        r.add_post("/sessions/{id}/rename", self._handle_rename_session)
        # Worker invocations
        r.add_post("/sessions/{id}/command", self._handle_command)
        r.add_get("/sessions/{id}/status", self._handle_status)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        self._event_task = asyncio.create_task(self._consume_events())

    async def _on_cleanup(self, app: web.Application) -> None:
        self._event_bus.close()
        await self._bridge.shutdown()
        if self._event_task is not None:
            self._event_task.cancel()
            try:
                await self._event_task
            except asyncio.CancelledError:
                pass

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("gemdesk server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info(
            "gemdesk server listening on %s:%d data_dir=%s",
            self._host, actual_port, self._config.data_dir,
        )

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── SSE fan-out ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping %s event", event_type)

    async def _consume_events(self) -> None:
        try:
            async for event in self._event_bus.consume():
                try:
                    self._broadcast_sse("bridge_event", event_to_dict(event))
                except Exception:
                    logger.exception(
                        "Error broadcasting %s event for session %s (consumer continues)",
                        event.type, event.session_id,
                    )
        except asyncio.CancelledError:
            pass

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> tuple[dict[str, Any] | None, web.Response | None]:
        """Return (body, None) or (None, 400 response). An empty body is {}."""
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except ValueError:
            return None, web.json_response({"error": "Request body must be valid JSON"}, status=400)
        if not isinstance(body, dict):
            return None, web.json_response({"error": "Request body must be a JSON object"}, status=400)
        return body, None

    @staticmethod
    def _not_found(session_id: str) -> web.Response:
        return web.json_response({"error": f"Session {session_id} not found"}, status=404)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "running_sessions": len(self._bridge.running_sessions),
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            session_ids = await asyncio.to_thread(self._store.list_sessions)
            await response.write(
                f"event: connected\ndata: {json.dumps({'sessions': session_ids})}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=self._sse_keepalive_seconds)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = await self._controller.load_all()
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        name = body.get("name")
        if name is not None and not isinstance(name, str):
            return web.json_response({"error": "name must be a string"}, status=400)
        session = await self._controller.create_session((name or "").strip() or None)
        self._broadcast_sse(
            "session_created",
            {"session_id": session.id, "name": session.name},
        )
        return web.json_response(session.to_dict(), status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        session = await self._controller.load_one(session_id)
        if session is None:
            return self._not_found(session_id)
        return web.json_response(session.to_dict())

    async def _handle_save_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body, err = await self._read_json(request)
        if err:
            return err
        body.setdefault("id", session_id)
        if body["id"] != session_id:
            return web.json_response(
                {"error": f"Body id {body['id']!r} does not match path id {session_id!r}"},
                status=400,
            )
        version = body.get("version")
        if isinstance(version, bool) or not isinstance(version, int):
            return web.json_response(
                {"error": "version is required: send the version the session was loaded at"},
                status=400,
            )
        try:
            session = Session.from_dict(body)
        except ValueError as exc:
            return web.json_response({"error": f"Malformed session: {exc}"}, status=400)

        try:
            await self._controller.save_session(session, expected_version=version)
        except InvalidSessionIdError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except StaleSessionError as exc:
            return web.json_response(
                {"error": str(exc), "version": exc.actual},
                status=409,
            )
        self._broadcast_sse(
            "session_saved",
            {"session_id": session.id, "version": session.version},
        )
        return web.json_response({"status": "saved", "version": session.version}, status=202)

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        deleted = await self._controller.delete_session(session_id)
        if deleted:
            self._broadcast_sse("session_removed", {"session_id": session_id})
        return web.json_response({"deleted": deleted})

    async def _handle_rename_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body, err = await self._read_json(request)
        if err:
            return err
        new_name = body.get("name")
        if not isinstance(new_name, str) or not new_name.strip():
            return web.json_response({"error": "Name is required"}, status=400)
        session = await self._controller.rename_session(session_id, new_name.strip())
        if session is None:
            return self._not_found(session_id)
        self._broadcast_sse(
            "session_renamed",
            {"session_id": session.id, "name": session.name},
        )
        return web.json_response(session.to_dict())

    async def _handle_command(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body, err = await self._read_json(request)
        if err:
            return err
        command = body.get("command")
        try:
            invocation, message = await self._controller.submit(session_id, command)
        except ValueError:
            return web.json_response({"error": "command is required"}, status=400)
        except SessionNotFoundError:
            return self._not_found(session_id)
        except InvocationInProgressError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        return web.json_response(
            {
                "status": "started",
                "session_id": session_id,
                "invocation_id": invocation.id,
                "message": message.to_dict(),
            },
            status=202,
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            status = await self._controller.status(session_id)
        except SessionNotFoundError:
            return self._not_found(session_id)
        return web.json_response(status)
