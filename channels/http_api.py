"""HTTP API server for the Clawd daemon.

REST endpoints for the settings UI, scripts and monitoring, plus the
WhatsApp Cloud API webhook. Runs alongside the other channels and feeds
the same orchestrator.

Endpoints:
    GET    /api/v1/status                     — Health check + orchestrator state
    POST   /api/v1/chat                       — Send a local message, await the reply
    GET    /api/v1/groups/{group}/messages    — Conversation history
    POST   /api/v1/groups/{group}/reset       — Start a new session
    POST   /api/v1/groups/{group}/compact     — Summarize and replace history
    POST   /api/v1/cancel                     — Abort the in-flight request
    GET    /api/v1/tasks                      — List scheduled tasks
    POST   /api/v1/tasks                      — Create a scheduled task
    POST   /api/v1/tasks/{id}/toggle          — Enable/disable a task
    DELETE /api/v1/tasks/{id}                 — Delete a task
    GET    /api/v1/whatsapp/webhook           — Meta subscription handshake
    POST   /api/v1/whatsapp/webhook           — Meta message delivery
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import time
from collections import defaultdict
from typing import Any

from aiohttp import web

import cron
from channels.local import DEFAULT_GROUP, PREFIX as LOCAL_PREFIX, LocalChannel
from channels.whatsapp import WhatsAppChannel
from store import StoredMessage

log = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/v1/whatsapp/webhook"


class _RateLimiter:
    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        now = time.monotonic()
        # Periodic sweep: evict stale keys when dict grows large
        if len(self._hits) > 1000:
            stale = [k for k, v in self._hits.items()
                     if not v or now - v[-1] >= self.window]
            for k in stale:
                del self._hits[k]
        hits = [t for t in self._hits[key] if now - t < self.window]
        if len(hits) >= self.max_requests:
            self._hits[key] = hits
            return False
        hits.append(now)
        self._hits[key] = hits
        return True


class HTTPApi:
    """HTTP front end for the orchestrator."""

    _AUTH_EXEMPT_PATHS = frozenset({"/api/v1/status", WEBHOOK_PATH})

    def __init__(
        self,
        orchestrator,
        local: LocalChannel,
        host: str,
        port: int,
        auth_token: str,
        response_timeout: float = 300.0,
        whatsapp: WhatsAppChannel | None = None,
        rate_limit: int = 30,
        rate_window: int = 60,
    ):
        self.orchestrator = orchestrator
        self.local = local
        self.whatsapp = whatsapp
        self.host = host
        self.port = port
        self.auth_token = auth_token
        self.response_timeout = response_timeout
        self._runner: web.AppRunner | None = None
        self._rate_limiter = _RateLimiter(max_requests=rate_limit, window_seconds=rate_window)

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware, self._rate_middleware])
        app.router.add_get("/api/v1/status", self._handle_status)
        app.router.add_post("/api/v1/chat", self._handle_chat)
        app.router.add_get("/api/v1/groups/{group}/messages", self._handle_messages)
        app.router.add_post("/api/v1/groups/{group}/reset", self._handle_reset)
        app.router.add_post("/api/v1/groups/{group}/compact", self._handle_compact)
        app.router.add_post("/api/v1/cancel", self._handle_cancel)
        app.router.add_get("/api/v1/tasks", self._handle_list_tasks)
        app.router.add_post("/api/v1/tasks", self._handle_create_task)
        app.router.add_post("/api/v1/tasks/{task_id}/toggle", self._handle_toggle_task)
        app.router.add_delete("/api/v1/tasks/{task_id}", self._handle_delete_task)
        app.router.add_get(WEBHOOK_PATH, self._handle_webhook_verify)
        app.router.add_post(WEBHOOK_PATH, self._handle_webhook)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("HTTP API stopped")

    # ─── Middleware ───────────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        # Health check and the Meta webhook carry no bearer token
        if request.path in self._AUTH_EXEMPT_PATHS:
            return await handler(request)

        if not self.auth_token:
            return web.json_response({"error": "No auth token configured"}, status=503)

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], self.auth_token):
            log.warning("HTTP API: auth failed from %s %s", request.remote, request.path)
            return web.json_response({"error": "unauthorized"}, status=401)
        return await handler(request)

    @web.middleware
    async def _rate_middleware(self, request: web.Request, handler):
        client_ip = request.remote or "unknown"
        if not self._rate_limiter.check(client_ip):
            return web.json_response({"error": "rate limit exceeded"}, status=429)
        return await handler(request)

    # ─── Helpers ──────────────────────────────────────────────────

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any] | None:
        try:
            body = await request.json()
        except web.HTTPException:
            raise
        except (json.JSONDecodeError, ValueError):
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _bad_request(message: str) -> web.Response:
        return web.json_response({"error": message}, status=400)

    # ─── Status / chat ────────────────────────────────────────────

    async def _handle_status(self, request: web.Request) -> web.Response:
        """GET /api/v1/status — health check + stats."""
        return web.json_response({"status": "ok", **self.orchestrator.status()})

    async def _handle_chat(self, request: web.Request) -> web.Response:
        """POST /api/v1/chat — submit a local message and wait for the reply."""
        body = await self._json_body(request)
        if body is None:
            return self._bad_request("invalid JSON body")
        message = str(body.get("message", "")).strip()
        if not message:
            return self._bad_request("\"message\" field is required")
        group_id = str(body.get("group") or DEFAULT_GROUP)
        if not group_id.startswith(LOCAL_PREFIX):
            return self._bad_request(f"group must start with {LOCAL_PREFIX!r}")

        loop = asyncio.get_running_loop()
        reply: asyncio.Future[StoredMessage] = loop.create_future()

        def on_message(stored: StoredMessage) -> None:
            if stored.is_from_me and stored.group_id == group_id and not reply.done():
                reply.set_result(stored)

        self.orchestrator.events.on("message", on_message)
        try:
            msg = self.local.submit(message, group_id=group_id,
                                    sender=str(body.get("sender") or "You"))
            if not self.orchestrator.is_trigger(msg):
                return web.json_response({"accepted": True, "triggered": False}, status=202)
            log.info("HTTP /chat queued for %s", group_id)
            try:
                stored = await asyncio.wait_for(reply, timeout=self.response_timeout)
            except TimeoutError:
                log.error("HTTP /chat timeout for %s", group_id)
                return web.json_response({"error": "processing timeout"}, status=408)
        finally:
            self.orchestrator.events.off("message", on_message)

        return web.json_response({
            "groupId": group_id,
            "reply": stored.content,
            "id": stored.id,
            "timestamp": stored.timestamp,
        })

    # ─── Groups ───────────────────────────────────────────────────

    async def _handle_messages(self, request: web.Request) -> web.Response:
        """GET /api/v1/groups/{group}/messages — history, oldest first."""
        group_id = request.match_info["group"]
        limit_raw = request.query.get("limit")
        limit = None
        if limit_raw is not None:
            if not limit_raw.isdigit() or int(limit_raw) == 0:
                return self._bad_request("limit must be a positive integer")
            limit = int(limit_raw)
        messages = self.orchestrator.store.get_messages(group_id, limit=limit)
        return web.json_response({
            "groupId": group_id,
            "messages": [m.to_dict() for m in messages],
        })

    async def _handle_reset(self, request: web.Request) -> web.Response:
        group_id = request.match_info["group"]
        await self.orchestrator.new_session(group_id)
        return web.json_response({"groupId": group_id, "reset": True})

    async def _handle_compact(self, request: web.Request) -> web.Response:
        group_id = request.match_info["group"]
        compacted = await self.orchestrator.compact_context(group_id)
        return web.json_response({"groupId": group_id, "compacted": compacted},
                                 status=200 if compacted else 409)

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        cancelled = await self.orchestrator.cancel()
        return web.json_response({"cancelled": cancelled})

    # ─── Tasks ────────────────────────────────────────────────────

    async def _handle_list_tasks(self, request: web.Request) -> web.Response:
        group_id = request.query.get("group")
        tasks = self.orchestrator.store.list_tasks(group_id)
        return web.json_response({"tasks": [
            {**t.to_dict(), "description": cron.humanize(t.schedule)} for t in tasks
        ]})

    async def _handle_create_task(self, request: web.Request) -> web.Response:
        """POST /api/v1/tasks — body: prompt, schedule or frequency preset, groupId."""
        body = await self._json_body(request)
        if body is None:
            return self._bad_request("invalid JSON body")
        prompt = str(body.get("prompt", "")).strip()
        if not prompt:
            return self._bad_request("\"prompt\" field is required")

        schedule = body.get("schedule")
        if not schedule and body.get("frequency"):
            try:
                schedule = cron.build_cron(
                    body["frequency"],
                    hour=int(body.get("hour", 9)),
                    minute=int(body.get("minute", 0)),
                    day_of_week=int(body.get("dayOfWeek", 1)),
                    day_of_month=int(body.get("dayOfMonth", 1)),
                    custom=str(body.get("custom", "")),
                )
            except (TypeError, ValueError) as e:
                return self._bad_request(f"invalid frequency: {e}")
        if not schedule:
            return self._bad_request("\"schedule\" or \"frequency\" is required")
        error = cron.validate(str(schedule))
        if error:
            return self._bad_request(f"invalid schedule: {error}")

        group_id = str(body.get("groupId") or self.orchestrator.primary_group)
        task = self.orchestrator.create_task(group_id, str(schedule), prompt)
        log.info("HTTP task created: %s (%s)", task.id, task.schedule)
        return web.json_response(
            {**task.to_dict(), "description": cron.humanize(task.schedule)}, status=201,
        )

    async def _handle_toggle_task(self, request: web.Request) -> web.Response:
        task = self.orchestrator.toggle_task(request.match_info["task_id"])
        if task is None:
            return web.json_response({"error": "task not found"}, status=404)
        return web.json_response(task.to_dict())

    async def _handle_delete_task(self, request: web.Request) -> web.Response:
        if not self.orchestrator.delete_task(request.match_info["task_id"]):
            return web.json_response({"error": "task not found"}, status=404)
        return web.json_response({"deleted": True})

    # ─── WhatsApp webhook ─────────────────────────────────────────

    async def _handle_webhook_verify(self, request: web.Request) -> web.Response:
        if self.whatsapp is None:
            return web.json_response({"error": "WhatsApp not enabled"}, status=404)
        challenge = self.whatsapp.verify_webhook(
            request.query.get("hub.mode", ""),
            request.query.get("hub.verify_token", ""),
            request.query.get("hub.challenge", ""),
        )
        if challenge is None:
            log.warning("WhatsApp webhook verification failed from %s", request.remote)
            return web.Response(status=403, text="forbidden")
        return web.Response(text=challenge)

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        if self.whatsapp is None:
            return web.json_response({"error": "WhatsApp not enabled"}, status=404)
        body = await self._json_body(request)
        if body is None:
            return self._bad_request("invalid JSON body")
        accepted = self.whatsapp.handle_webhook(body)
        log.debug("WhatsApp webhook: %d message(s) accepted", len(accepted))
        return web.json_response({"received": len(accepted)})
