"""Loopback HTTP API used by the hook client and local tooling."""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any

from aiohttp import web

from discord_hook_bridge.application.events import (
    SessionNotFoundError,
    TerminalGoneError,
)
from discord_hook_bridge.application.models import parse_hook_event
from discord_hook_bridge.application.requests import (
    AlreadyResolvedError,
    AnswerSource,
    InvalidActionError,
    PromptNotFoundError,
    StaleRequestError,
)
from discord_hook_bridge.application.routing import (
    AmbiguousRouteError,
    RouteKind,
    RouteNotFoundError,
)
from discord_hook_bridge.infrastructure.config import LOOPBACK_HOSTS
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.tmux import ModeSwitchError, TmuxError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

    from discord_hook_bridge.application.events import HookEventService
    from discord_hook_bridge.application.requests import (
        RequestCoordinator,
        Resolution,
    )
    from discord_hook_bridge.application.routing import RouteService
    from discord_hook_bridge.application.sessions import SessionRegistry

logger = get_logger(__name__)

# 例外とHTTPステータスの対応（上から順に判定する）
ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (PromptNotFoundError, 404),
    (RouteNotFoundError, 404),
    (SessionNotFoundError, 404),
    (AlreadyResolvedError, 409),
    (AmbiguousRouteError, 409),
    (StaleRequestError, 410),
    (TerminalGoneError, 410),
    (InvalidActionError, 400),
    (ModeSwitchError, 409),
    (TmuxError, 502),
    (ValueError, 400),
)


def error_status(error: Exception) -> int | None:
    """例外に対応するHTTPステータスを返す（想定外の例外はNone）."""
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return None


def _resolution_body(resolution: Resolution) -> dict[str, Any]:
    return {
        "ok": True,
        "request_id": resolution.request_id,
        "resolved": resolution.resolved,
        "decision": resolution.decision,
    }


class BridgeApiServer:
    """
    ループバック専用のHTTP APIサーバー.

    フッククライアントからの通知（pending通知・中断・フックイベント）と、
    外部ツールからの回答・ルーティング・端末操作を受け付ける。
    """

    def __init__(
        self,
        coordinator: RequestCoordinator,
        events: HookEventService,
        routes: RouteService,
        registry: SessionRegistry,
        *,
        host: str = "127.0.0.1",
        port: int = 12500,
    ) -> None:
        """
        Initialize BridgeApiServer.

        Args:
            coordinator: 判定リクエストのコーディネーター
            events: フックイベントサービス
            routes: ルーティングサービス
            registry: セッションレジストリ
            host: 待ち受けホスト（ループバックのみ）
            port: 待ち受けポート

        Raises:
            ValueError: ホストがループバックアドレスでない場合
        """
        if host not in LOOPBACK_HOSTS:
            msg = f"API host must be a loopback address, got {host!r}"
            raise ValueError(msg)

        self._coordinator = coordinator
        self._events = events
        self._routes = routes
        self._registry = registry
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        self.app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    # --- Middleware ---

    @web.middleware
    async def _request_logging_middleware(
        self,
        request: web.Request,
        handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
    ) -> web.StreamResponse:
        start = time.monotonic()
        try:
            response = await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            status = error_status(e)
            elapsed_ms = (time.monotonic() - start) * 1000
            if status is None:
                logger.exception(
                    "HTTP request failed",
                    method=request.method,
                    path=request.path_qs,
                    duration_ms=round(elapsed_ms, 1),
                )
                return web.json_response(
                    {"ok": False, "error": "internal error"}, status=500
                )
            logger.info(
                "HTTP request rejected",
                method=request.method,
                path=request.path_qs,
                status=status,
                error=str(e),
            )
            return web.json_response(
                {"ok": False, "error": str(e), "type": type(e).__name__},
                status=status,
            )

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP request",
            method=request.method,
            path=request.path_qs,
            status=response.status,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    # --- Route setup ---

    def _setup_routes(self) -> None:
        r = self.app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/pending/notify", self._handle_pending_notify)
        r.add_post("/pending/cancel", self._handle_pending_cancel)
        r.add_post("/hook/{event}", self._handle_hook_event)
        r.add_post("/permission/decide", self._handle_permission_decide)
        r.add_post("/question/respond", self._handle_question_respond)
        r.add_post("/route/bind", self._handle_route_bind)
        r.add_post("/route/unbind", self._handle_route_unbind)
        r.add_get("/route/list", self._handle_route_list)
        r.add_get("/session/alive", self._handle_session_alive)
        r.add_get("/session/list", self._handle_session_list)
        r.add_post("/terminal/inject", self._handle_terminal_inject)
        r.add_get("/terminal/capture", self._handle_terminal_capture)
        r.add_post("/terminal/escape", self._handle_terminal_escape)
        r.add_get("/perm/status", self._handle_perm_status)
        r.add_post("/perm/switch", self._handle_perm_switch)
        r.add_get("/session/idle", self._handle_session_idle)
        r.add_get("/resume/list", self._handle_resume_list)
        r.add_post("/resume/select", self._handle_resume_select)

    # --- Lifecycle ---

    async def start(self) -> None:
        """サーバーを起動する."""
        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner
        logger.info("HTTP API listening", host=self._host, port=self._port)

    async def drain(self) -> None:
        """処理中のフックイベントが全て終わるまで待つ."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self) -> None:
        """サーバーを停止する（処理中のフックイベントは完了を待つ）."""
        await self.drain()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("HTTP API stopped")

    # --- Helpers ---

    @staticmethod
    async def _params(request: web.Request) -> dict[str, Any]:
        """
        クエリとJSONボディを合わせたパラメータを返す（ボディ優先）.

        Raises:
            ValueError: ボディがJSONオブジェクトでない場合
        """
        params: dict[str, Any] = dict(request.query)
        if request.can_read_body:
            try:
                body = await request.json()
            except json.JSONDecodeError as e:
                msg = f"invalid JSON body: {e}"
                raise ValueError(msg) from e
            if not isinstance(body, dict):
                msg = "JSON body must be an object"
                raise ValueError(msg)
            params.update(body)
        return params

    @staticmethod
    def _require(params: dict[str, Any], name: str) -> str:
        """
        必須パラメータを文字列で返す.

        Raises:
            ValueError: パラメータがない場合
        """
        value = params.get(name)
        if value is None or str(value) == "":
            msg = f"missing parameter: {name}"
            raise ValueError(msg)
        return str(value)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --- Handlers ---

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "sessions": len(self._registry),
                "prompts": len(self._coordinator.permissions)
                + len(self._coordinator.questions),
            }
        )

    async def _handle_pending_notify(self, request: web.Request) -> web.Response:
        request_id = self._require(dict(request.query), "id")
        self._coordinator.schedule(request_id)
        return web.json_response({"ok": True, "id": request_id}, status=202)

    async def _handle_pending_cancel(self, request: web.Request) -> web.Response:
        request_id = self._require(dict(request.query), "id")
        cancelled = await self._coordinator.cancel_request(request_id)
        return web.json_response({"ok": True, "cancelled": cancelled})

    async def _handle_hook_event(self, request: web.Request) -> web.Response:
        event_name = request.match_info["event"]
        raw = await self._params(request)
        raw.setdefault("hook_event_name", event_name)
        event = parse_hook_event(raw)

        async def handle() -> None:
            try:
                await self._events.handle(event)
            except Exception:
                logger.exception(
                    "Failed to handle hook event",
                    event=event_name,
                    session_id=event.session_id,
                )

        # 同じセッションのイベントはロックの待ち順（到着順）で処理される
        self._spawn(handle())
        return web.json_response({"ok": True, "event": event_name}, status=202)

    async def _handle_permission_decide(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        message_id = int(self._require(params, "message_id"))
        decision = self._require(params, "decision")
        resolution = await self._coordinator.decide_permission(
            message_id, decision, AnswerSource.API
        )
        return web.json_response(_resolution_body(resolution))

    async def _handle_question_respond(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        message_id = int(self._require(params, "message_id"))
        action = self._require(params, "action")

        if action == "option":
            resolution = await self._coordinator.select_option(
                message_id,
                int(params.get("question", 0)),
                int(self._require(params, "option")),
            )
        elif action == "submit":
            resolution = await self._coordinator.submit_answers(message_id)
        elif action == "chat":
            resolution = await self._coordinator.choose_chat(message_id)
        elif action == "text":
            resolution = await self._coordinator.answer_with_text(
                message_id, self._require(params, "text"), AnswerSource.API
            )
        else:
            msg = f"unknown action: {action}"
            raise InvalidActionError(msg)
        return web.json_response(_resolution_body(resolution))

    async def _handle_route_bind(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        route = self._routes.bind(
            RouteKind(self._require(params, "kind")),
            self._require(params, "key"),
            int(self._require(params, "channel_id")),
        )
        return web.json_response({"ok": True, "route": route.model_dump(mode="json")})

    async def _handle_route_unbind(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        removed = self._routes.unbind(
            RouteKind(self._require(params, "kind")), self._require(params, "key")
        )
        return web.json_response({"ok": True, "removed": removed})

    async def _handle_route_list(self, request: web.Request) -> web.Response:
        routes = [route.model_dump(mode="json") for route in self._routes.list_routes()]
        return web.json_response(
            {
                "ok": True,
                "routes": routes,
                "default_channel_id": self._routes.default_channel_id,
            }
        )

    async def _handle_session_alive(self, request: web.Request) -> web.Response:
        target = self._require(dict(request.query), "target")
        alive = await self._events.ensure_alive(target)
        return web.json_response({"ok": True, "target": target, "alive": alive})

    async def _handle_session_list(self, request: web.Request) -> web.Response:
        sessions = [record.model_dump(mode="json") for record in self._registry.all()]
        return web.json_response({"ok": True, "sessions": sessions})

    async def _handle_terminal_inject(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        target = self._require(params, "target")
        await self._events.relay_input(target, self._require(params, "text"))
        return web.json_response({"ok": True, "target": target})

    async def _handle_terminal_capture(self, request: web.Request) -> web.Response:
        target = self._require(dict(request.query), "target")
        content = await self._events.capture(target)
        return web.json_response({"ok": True, "target": target, "content": content})

    async def _handle_terminal_escape(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        target = self._require(params, "target")
        await self._events.send_escape(target)
        return web.json_response({"ok": True, "target": target})

    async def _handle_perm_status(self, request: web.Request) -> web.Response:
        target = self._require(dict(request.query), "target")
        mode, content = await self._events.permission_mode(target)
        return web.json_response(
            {"ok": True, "target": target, "mode": mode, "content": content}
        )

    async def _handle_perm_switch(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        target = self._require(params, "target")
        mode = await self._events.switch_permission_mode(
            target, self._require(params, "mode")
        )
        return web.json_response({"ok": True, "target": target, "mode": mode})

    async def _handle_session_idle(self, request: web.Request) -> web.Response:
        statuses = await self._events.idle_status(request.query.get("target", ""))
        # 該当するセッションがなければ入力待ちとはみなさない
        idle = bool(statuses) and all(s.idle for s in statuses)
        return web.json_response(
            {
                "ok": True,
                "idle": idle,
                "sessions": {
                    s.session_id: {"target": s.terminal_target, "idle": s.idle}
                    for s in statuses
                },
            }
        )

    async def _handle_resume_list(self, request: web.Request) -> web.Response:
        target = self._require(dict(request.query), "target")
        sessions = self._events.resumable_sessions(target)
        return web.json_response(
            {
                "ok": True,
                "target": target,
                "sessions": [s.model_dump(mode="json") for s in sessions],
            }
        )

    async def _handle_resume_select(self, request: web.Request) -> web.Response:
        params = await self._params(request)
        target = self._require(params, "target")
        session_id = self._require(params, "session_id")
        await self._events.resume_session(target, session_id)
        return web.json_response(
            {"ok": True, "target": target, "session_id": session_id}
        )
