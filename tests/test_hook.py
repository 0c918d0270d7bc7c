"""Tests for the hook client."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
import structlog
from aiohttp import web
from aiohttp.test_utils import TestServer
from conftest import permission_payload, question_payload

from discord_hook_bridge.application.models import (
    MessageRef,
    PermissionRequestEvent,
    RequestKind,
    RequestStatus,
)
from discord_hook_bridge.hook import (
    HookClient,
    PollOutcome,
    enrich_payload,
    main,
)
from discord_hook_bridge.infrastructure.config import HookConfig
from discord_hook_bridge.infrastructure.store import FileRequestStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
    from pathlib import Path

SENT_REF = MessageRef(channel_id=1, message_id=2)


@pytest.fixture
def hook_config(tmp_path: Path) -> HookConfig:
    """短いタイムアウトのフック設定."""
    return HookConfig(
        _env_file=None,  # type: ignore[call-arg]
        pending_dir=tmp_path / "pending",
        hook_timeout=0.2,
        poll_interval=0.01,
        notify_timeout=1.0,
    )


@pytest.fixture
def hook_store(hook_config: HookConfig) -> FileRequestStore:
    """フックと共有するストア."""
    return FileRequestStore(hook_config.pending_dir)


@pytest.fixture
def client(hook_config: HookConfig, hook_store: FileRequestStore) -> HookClient:
    """テスト用のフッククライアント."""
    return HookClient(hook_config, hook_store, pid=4242)


def _event(payload: dict[str, Any]) -> PermissionRequestEvent:
    return PermissionRequestEvent.model_validate(payload)


class TestEnrichPayload:
    """enrich_payloadのテスト."""

    def test_adds_terminal_target(self) -> None:
        """tmux内では宛先を追加する."""
        raw = {"hook_event_name": "Stop"}
        env = {"TMUX": "/tmp/tmux-1000/default,123,0", "TMUX_PANE": "%3"}

        enriched = enrich_payload(raw, env)

        assert enriched["terminal_target"] == "%3@/tmp/tmux-1000/default"
        assert "terminal_target" not in raw

    def test_outside_tmux(self) -> None:
        """tmux外ではそのまま返す."""
        raw = {"hook_event_name": "Stop"}
        assert enrich_payload(raw, {}) == raw

    def test_existing_target_kept(self) -> None:
        """既に宛先があれば上書きしない."""
        raw = {"hook_event_name": "Stop", "terminal_target": "%9"}
        env = {"TMUX": "/tmp/sock,1,0", "TMUX_PANE": "%3"}
        assert enrich_payload(raw, env)["terminal_target"] == "%9"


class TestWaitForDecision:
    """wait_for_decisionのテスト."""

    @pytest.mark.asyncio
    async def test_answered(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """回答済みになったら判定を返す."""
        payload = permission_payload()
        request = client.create_request(_event(payload), payload)

        async def answer_later() -> None:
            await asyncio.sleep(0.03)
            hook_store.update(request.id, lambda r: r.mark_sent(SENT_REF))
            hook_store.update(
                request.id, lambda r: r.mark_answered({"behavior": "allow"})
            )

        answering = asyncio.create_task(answer_later())
        result = await client.wait_for_decision(request.id)
        await answering

        assert result.outcome == PollOutcome.ANSWERED
        assert result.decision == {"behavior": "allow"}

    @pytest.mark.asyncio
    async def test_cancelled(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """キャンセル済みならCANCELLED."""
        payload = permission_payload()
        request = client.create_request(_event(payload), payload)
        hook_store.update(request.id, lambda r: r.mark_sent(SENT_REF))
        hook_store.update(request.id, lambda r: r.mark_cancelled())

        result = await client.wait_for_decision(request.id)

        assert result.outcome == PollOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_missing(self, client: HookClient) -> None:
        """ファイルがなければMISSING."""
        result = await client.wait_for_decision("missing")
        assert result.outcome == PollOutcome.MISSING

    @pytest.mark.asyncio
    async def test_timeout(self, client: HookClient) -> None:
        """回答がなければタイムアウトする."""
        payload = permission_payload()
        request = client.create_request(_event(payload), payload)

        result = await client.wait_for_decision(request.id)

        assert result.outcome == PollOutcome.TIMEOUT

    @pytest.mark.asyncio
    async def test_interrupted(self, client: HookClient) -> None:
        """停止イベントがセットされたら待機をやめる."""
        payload = permission_payload()
        request = client.create_request(_event(payload), payload)
        stop = asyncio.Event()
        stop.set()

        result = await client.wait_for_decision(request.id, stop)

        assert result.outcome == PollOutcome.INTERRUPTED

    @pytest.mark.asyncio
    async def test_corrupt_file_keeps_polling(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """読めないファイルは待ち続けてタイムアウトする."""
        hook_store.directory.mkdir(parents=True)
        (hook_store.directory / "broken.json").write_text("{", encoding="utf-8")

        result = await client.wait_for_decision("broken")

        assert result.outcome == PollOutcome.TIMEOUT


class TestRequestDecision:
    """request_decisionとhandleのテスト."""

    def test_create_request_records_origin(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """リクエストファイルにPIDと宛先を記録する."""
        payload = question_payload({"question": "Q", "options": [{"label": "a"}]})

        request = client.create_request(_event(payload), payload)

        stored = hook_store.read(request.id)
        assert stored.kind == RequestKind.QUESTION
        assert stored.status == RequestStatus.PENDING
        assert stored.origin_pid == 4242
        assert stored.terminal_target == "%1@/tmp/sock"
        assert stored.session_id == "s1"

    @pytest.mark.asyncio
    async def test_answered_outputs_decision_and_deletes(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """回答されたら出力JSONを返し、ファイルを削除する."""

        async def daemon_answers(request_id: str) -> bool:
            hook_store.update(request_id, lambda r: r.mark_sent(SENT_REF))
            hook_store.update(
                request_id, lambda r: r.mark_answered({"behavior": "deny"})
            )
            return True

        with patch.object(client, "notify_pending", side_effect=daemon_answers):
            output = await client.handle(permission_payload())

        assert output == {
            "hookSpecificOutput": {
                "hookEventName": "PermissionRequest",
                "decision": {"behavior": "deny"},
            }
        }
        assert hook_store.list_ids() == []

    @pytest.mark.asyncio
    async def test_cancelled_outputs_nothing(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """キャンセルされたら何も出力せずにファイルを削除する."""

        async def daemon_cancels(request_id: str) -> bool:
            hook_store.update(request_id, lambda r: r.mark_sent(SENT_REF))
            hook_store.update(request_id, lambda r: r.mark_cancelled())
            return True

        with patch.object(client, "notify_pending", side_effect=daemon_cancels):
            output = await client.handle(permission_payload())

        assert output is None
        assert hook_store.list_ids() == []

    @pytest.mark.asyncio
    async def test_timeout_notifies_cancel(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """タイムアウトしたらデーモンに取り消しを伝え、片付けは任せる."""
        with (
            patch.object(client, "notify_pending", AsyncMock(return_value=False)),
            patch.object(
                client, "notify_cancel", AsyncMock(return_value=True)
            ) as cancel,
        ):
            output = await client.handle(permission_payload())

        assert output is None
        (request_id,) = hook_store.list_ids()
        cancel.assert_awaited_once_with(request_id)

    @pytest.mark.asyncio
    async def test_other_events_forwarded(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """判定の不要なイベントは転送するだけ."""
        raw = {"hook_event_name": "Stop", "session_id": "s1"}
        with patch.object(client, "forward_event", AsyncMock(return_value=True)) as fwd:
            output = await client.handle(raw)

        assert output is None
        assert fwd.await_args is not None
        assert fwd.await_args.args[0]["hook_event_name"] == "Stop"
        assert hook_store.list_ids() == []

    @pytest.mark.asyncio
    async def test_invalid_permission_payload(
        self, client: HookClient, hook_store: FileRequestStore
    ) -> None:
        """tool_nameのない許可要求は何もしない."""
        output = await client.handle({"hook_event_name": "PermissionRequest"})

        assert output is None
        assert hook_store.list_ids() == []

    @pytest.mark.asyncio
    async def test_missing_event_name(self, client: HookClient) -> None:
        """イベント名がなければ何もしない."""
        assert await client.handle({"session_id": "s1"}) is None


@pytest_asyncio.fixture
async def daemon() -> AsyncIterator[tuple[TestServer, list[web.Request]]]:
    """受け取ったリクエストを記録するだけのデーモン."""
    received: list[web.Request] = []

    async def record(request: web.Request) -> web.Response:
        received.append(request)
        if request.match_info.get("event") == "Broken":
            return web.json_response({"error": "bad"}, status=400)
        await request.read()
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_post("/pending/notify", record)
    app.router.add_post("/pending/cancel", record)
    app.router.add_post("/hook/{event}", record)
    server = TestServer(app)
    await server.start_server()
    yield server, received
    await server.close()


def _client_for(server: TestServer, tmp_path: Path) -> HookClient:
    config = HookConfig(
        _env_file=None,  # type: ignore[call-arg]
        bridge_api_port=server.port,
        pending_dir=tmp_path / "pending",
    )
    return HookClient(config)


class TestDaemonCalls:
    """デーモンへのHTTP呼び出しのテスト."""

    @pytest.mark.asyncio
    async def test_notify_pending(
        self, daemon: tuple[TestServer, list[web.Request]], tmp_path: Path
    ) -> None:
        """リクエストIDをクエリで渡す."""
        server, received = daemon
        client = _client_for(server, tmp_path)

        assert await client.notify_pending("abc") is True
        assert await client.notify_cancel("abc") is True

        assert [r.path for r in received] == ["/pending/notify", "/pending/cancel"]
        assert received[0].query["id"] == "abc"

    @pytest.mark.asyncio
    async def test_forward_event(
        self, daemon: tuple[TestServer, list[web.Request]], tmp_path: Path
    ) -> None:
        """イベント名のパスにJSONを送る."""
        server, received = daemon
        client = _client_for(server, tmp_path)

        assert await client.forward_event({"hook_event_name": "Stop"}) is True
        assert received[0].path == "/hook/Stop"

    @pytest.mark.asyncio
    async def test_rejected(
        self, daemon: tuple[TestServer, list[web.Request]], tmp_path: Path
    ) -> None:
        """2xx以外の応答はFalse."""
        server, _ = daemon
        client = _client_for(server, tmp_path)

        assert await client.forward_event({"hook_event_name": "Broken"}) is False

    @pytest.mark.asyncio
    async def test_daemon_down(self, tmp_path: Path) -> None:
        """接続できなければFalse."""
        config = HookConfig(
            _env_file=None,  # type: ignore[call-arg]
            bridge_api_port=1,
            pending_dir=tmp_path / "pending",
        )
        assert await HookClient(config).notify_pending("abc") is False


class TestMain:
    """mainのテスト."""

    @pytest.fixture(autouse=True)
    def _env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PENDING_DIR", str(tmp_path / "pending"))
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))

    @pytest.fixture(autouse=True)
    def _stderr_logging(self) -> Iterator[None]:
        # configure_logging をパッチするテストでも stdout にログを出さない
        structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
        yield
        structlog.reset_defaults()

    @pytest.mark.asyncio
    async def test_invalid_json(self, capsys: pytest.CaptureFixture[str]) -> None:
        """不正なJSONでも終了コード0で何も出力しない."""
        with patch("discord_hook_bridge.hook.configure_logging"):
            assert await main("{not json") == 0
            assert await main("[1, 2]") == 0

        assert capsys.readouterr().out == ""

    @pytest.mark.asyncio
    async def test_writes_decision(self, capsys: pytest.CaptureFixture[str]) -> None:
        """判定結果をstdoutに書き出す."""
        output = {"hookSpecificOutput": {"decision": {"behavior": "allow"}}}
        with (
            patch("discord_hook_bridge.hook.configure_logging"),
            patch.object(HookClient, "handle", AsyncMock(return_value=output)),
        ):
            assert await main(json.dumps(permission_payload())) == 0

        assert json.loads(capsys.readouterr().out) == output

    @pytest.mark.asyncio
    async def test_unexpected_error(self, capsys: pytest.CaptureFixture[str]) -> None:
        """想定外の例外でも終了コード0."""
        with (
            patch("discord_hook_bridge.hook.configure_logging"),
            patch.object(HookClient, "handle", AsyncMock(side_effect=RuntimeError)),
        ):
            assert await main(json.dumps(permission_payload())) == 0

        assert capsys.readouterr().out == ""

    @pytest.mark.asyncio
    async def test_invalid_config(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """設定が不正ならstderrに出力して終了コード0."""
        monkeypatch.setenv("BRIDGE_API_HOST", "0.0.0.0")

        assert await main("{}") == 0

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "invalid configuration" in captured.err
