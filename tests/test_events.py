"""Tests for hook event handling and terminal relay."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import (
    CHANNEL_ID,
    RecordingGateway,
    create_request,
    permission_payload,
)

from discord_hook_bridge.application.events import (
    ACK_REACTION,
    HookEventService,
    SessionNotFoundError,
    TerminalGoneError,
)
from discord_hook_bridge.application.mirrors import ReactionTracker
from discord_hook_bridge.application.models import (
    MessageRef,
    RequestStatus,
    parse_hook_event,
)
from discord_hook_bridge.application.rendering import PROJECT_MARK
from discord_hook_bridge.application.routing import RouteKind
from discord_hook_bridge.application.transcript import TranscriptTracker
from discord_hook_bridge.infrastructure.tmux import TmuxClient, TmuxError, TmuxTarget

if TYPE_CHECKING:
    from pathlib import Path

    from discord_hook_bridge.application.requests import RequestCoordinator
    from discord_hook_bridge.application.sessions import SessionRegistry
    from discord_hook_bridge.infrastructure.store import FileRequestStore

TARGET = "%1@/tmp/sock"


def _event(name: str, **fields: object):  # type: ignore[no-untyped-def]
    raw = {
        "hook_event_name": name,
        "session_id": "s1",
        "cwd": "/home/user/app",
        "terminal_target": TARGET,
        "transcript_path": "/tmp/t.jsonl",
        **fields,
    }
    return parse_hook_event(raw)


@pytest.fixture
def tmux() -> AsyncMock:
    """テスト用のtmuxクライアント."""
    client = AsyncMock(spec=TmuxClient)
    client.session_exists.return_value = True
    client.capture_pane.return_value = "pane output"
    client.is_idle.return_value = True
    return client


@pytest.fixture
def transcript() -> MagicMock:
    """テスト用のトランスクリプト管理."""
    tracker = MagicMock(spec=TranscriptTracker)
    tracker.collect.return_value = ""
    return tracker


@pytest.fixture
def reactions() -> ReactionTracker:
    """テスト用のリアクション記録."""
    return ReactionTracker()


@pytest.fixture
def service(
    coordinator: RequestCoordinator,
    registry: SessionRegistry,
    routes: MagicMock,
    tmux: AsyncMock,
    gateway: RecordingGateway,
    transcript: MagicMock,
    reactions: ReactionTracker,
) -> HookEventService:
    """テスト用のイベントサービス."""
    return HookEventService(
        coordinator, registry, routes, tmux, gateway, transcript, reactions
    )


class TestHandle:
    """handleのテスト."""

    @pytest.mark.asyncio
    async def test_session_start_registers_and_notifies(
        self,
        service: HookEventService,
        registry: SessionRegistry,
        gateway: RecordingGateway,
        transcript: MagicMock,
    ) -> None:
        """セッション開始でセッションを登録し、通知を送る."""
        await service.handle(_event("SessionStart", source="startup"))

        record = registry.get("s1")
        assert record is not None
        assert record.terminal_target == TARGET
        transcript.mark.assert_called_once_with("s1", "/tmp/t.jsonl")
        assert len(gateway.sent) == 1
        assert "🚀 セッション開始" in (gateway.sent[0].text or "")
        assert "startup" in (gateway.sent[0].text or "")

    @pytest.mark.asyncio
    async def test_stop_sends_transcript_body(
        self,
        service: HookEventService,
        gateway: RecordingGateway,
        transcript: MagicMock,
    ) -> None:
        """応答完了では未通知のアシスタント応答を送る."""
        transcript.collect.return_value = "実装しました。"

        await service.handle(_event("Stop", last_assistant_message="fallback"))

        text = gateway.sent[0].text or ""
        assert "✅ 応答完了" in text
        assert "実装しました。" in text
        assert "fallback" not in text

    @pytest.mark.asyncio
    async def test_stop_falls_back_to_last_message(
        self, service: HookEventService, gateway: RecordingGateway
    ) -> None:
        """トランスクリプトが読めなければイベントの最終メッセージを使う."""
        await service.handle(_event("Stop", last_assistant_message="fallback"))

        assert "fallback" in (gateway.sent[0].text or "")

    @pytest.mark.asyncio
    async def test_prompt_submit_sweeps_open_prompts(
        self,
        service: HookEventService,
        coordinator: RequestCoordinator,
        store: FileRequestStore,
        gateway: RecordingGateway,
        reactions: ReactionTracker,
    ) -> None:
        """端末で入力が始まったら古いプロンプトを取り消し、受付リアクションを外す."""
        request = create_request(store, permission_payload())
        await coordinator.process_pending(request.id)
        acked = MessageRef(channel_id=CHANNEL_ID, message_id=1)
        reactions.record(TARGET, acked)

        await service.handle(_event("UserPromptSubmit", prompt="continue"))

        assert store.read(request.id).status == RequestStatus.CANCELLED
        assert gateway.removed == [acked]
        assert reactions.pending(TARGET) == []

    @pytest.mark.asyncio
    async def test_pre_tool_use_sweeps_open_prompts(
        self,
        service: HookEventService,
        coordinator: RequestCoordinator,
        store: FileRequestStore,
        gateway: RecordingGateway,
    ) -> None:
        """ツール実行直前のイベントはプロンプトを取り消す."""
        request = create_request(store, permission_payload())
        await coordinator.process_pending(request.id)

        await service.handle(_event("PreToolUse", tool_name="Bash"))

        assert store.read(request.id).status == RequestStatus.CANCELLED
        assert len(gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_pre_tool_use_sends_progress(
        self,
        service: HookEventService,
        gateway: RecordingGateway,
        transcript: MagicMock,
    ) -> None:
        """ツール実行前に未通知のアシスタント応答があれば途中経過として送る."""
        transcript.collect.return_value = "テストを実行します。"

        await service.handle(_event("PreToolUse", tool_name="Bash"))

        transcript.collect.assert_called_once_with("s1", "/tmp/t.jsonl")
        assert len(gateway.sent) == 1
        assert "テストを実行します。" in (gateway.sent[0].text or "")

    @pytest.mark.asyncio
    async def test_pre_tool_use_question_leaves_transcript(
        self,
        service: HookEventService,
        gateway: RecordingGateway,
        transcript: MagicMock,
    ) -> None:
        """AskUserQuestionの途中経過は質問の表示時に送るので読まない."""
        transcript.collect.return_value = "確認させてください。"

        await service.handle(_event("PreToolUse", tool_name="AskUserQuestion"))

        transcript.collect.assert_not_called()
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_session_end_discards_everything(
        self,
        service: HookEventService,
        coordinator: RequestCoordinator,
        store: FileRequestStore,
        registry: SessionRegistry,
        transcript: MagicMock,
        gateway: RecordingGateway,
    ) -> None:
        """セッション終了でファイル・セッション・ロックを片付けて通知する."""
        request = create_request(store, permission_payload())
        await coordinator.process_pending(request.id)

        await service.handle(_event("SessionEnd", reason="logout"))

        assert store.list_ids() == []
        assert registry.get("s1") is None
        transcript.forget.assert_called_once_with("s1")
        assert "🔚 セッション終了" in (gateway.sent[-1].text or "")

    @pytest.mark.asyncio
    async def test_notification_without_channel(
        self,
        service: HookEventService,
        routes: MagicMock,
        gateway: RecordingGateway,
    ) -> None:
        """送り先がなければ通知しない."""
        routes.resolve_channel.return_value = None

        await service.handle(_event("Notification", message="waiting"))

        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_event_without_session_ignored(
        self,
        service: HookEventService,
        registry: SessionRegistry,
        gateway: RecordingGateway,
    ) -> None:
        """セッションIDのないイベントは無視する."""
        await service.handle(_event("Notification", session_id="", message="x"))

        assert len(registry) == 0
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_unknown_event_registers_only(
        self,
        service: HookEventService,
        registry: SessionRegistry,
        gateway: RecordingGateway,
    ) -> None:
        """未知のイベントはセッションを登録するだけ."""
        await service.handle(_event("SubagentStop"))

        assert registry.get("s1") is not None
        assert gateway.sent == []


class TestTerminal:
    """端末操作のテスト."""

    @pytest.mark.asyncio
    async def test_relay_input_adds_reaction(
        self,
        service: HookEventService,
        tmux: AsyncMock,
        gateway: RecordingGateway,
        reactions: ReactionTracker,
    ) -> None:
        """入力を貼り付けて受付リアクションを付ける."""
        ack = MessageRef(channel_id=CHANNEL_ID, message_id=7)

        await service.relay_input(TARGET, "hello", ack)

        tmux.inject_text.assert_awaited_once_with(TmuxTarget.parse(TARGET), "hello")
        assert gateway.reactions == [(ack, ACK_REACTION)]
        assert reactions.pending("%1") == [ack]

    @pytest.mark.asyncio
    async def test_relay_to_dead_terminal(
        self,
        service: HookEventService,
        tmux: AsyncMock,
        routes: MagicMock,
        registry: SessionRegistry,
        gateway: RecordingGateway,
    ) -> None:
        """端末が消えていれば片付けて利用者に通知し、例外を投げる."""
        tmux.session_exists.return_value = False
        registry.add("s1", TARGET, "/home/user/app")

        with pytest.raises(TerminalGoneError):
            await service.relay_input(TARGET, "hello")

        tmux.inject_text.assert_not_awaited()
        assert registry.get("s1") is None
        routes.unbind.assert_called_once_with(RouteKind.TERMINAL, TARGET)
        assert "⚠️ セッションが切断されました" in (gateway.sent[-1].text or "")

    @pytest.mark.asyncio
    async def test_dead_terminal_notifies_project_channel(
        self,
        service: HookEventService,
        tmux: AsyncMock,
        routes: MagicMock,
        registry: SessionRegistry,
        gateway: RecordingGateway,
    ) -> None:
        """切断通知はセッションの作業ディレクトリのルートで送り先を決める."""
        tmux.session_exists.return_value = False
        registry.add("s1", TARGET, "/home/app")
        routes.resolve_channel.side_effect = lambda target, cwd: (
            777 if cwd == "/home/app" else None
        )

        with pytest.raises(TerminalGoneError):
            await service.relay_input(TARGET, "hello")

        routes.resolve_channel.assert_called_once_with(TARGET, "/home/app")
        assert gateway.sent[-1].ref.channel_id == 777
        assert f"{PROJECT_MARK} app" in (gateway.sent[-1].text or "")

    @pytest.mark.asyncio
    async def test_relay_failure_propagates(
        self, service: HookEventService, tmux: AsyncMock, gateway: RecordingGateway
    ) -> None:
        """貼り付けに失敗したらリアクションを付けずに例外を伝える."""
        tmux.inject_text.side_effect = TmuxError(["paste-buffer"], "no pane")

        with pytest.raises(TmuxError):
            await service.relay_input(
                TARGET, "hello", MessageRef(channel_id=CHANNEL_ID, message_id=7)
            )

        assert gateway.reactions == []

    @pytest.mark.asyncio
    async def test_capture_and_escape(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """表示内容の取得とEscapeキーの送信."""
        assert await service.capture(TARGET) == "pane output"

        await service.send_escape(TARGET)

        tmux.send_keys.assert_awaited_once_with(TmuxTarget.parse(TARGET), "Escape")

    @pytest.mark.asyncio
    async def test_empty_target_is_not_alive(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """空の宛先は生存確認せずにFalse."""
        assert await service.ensure_alive("") is False
        tmux.session_exists.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_is_idle(self, service: HookEventService, tmux: AsyncMock) -> None:
        """判定できなければNone."""
        assert await service.is_idle(TARGET) is True

        tmux.is_idle.side_effect = TmuxError(["display-message"], "no server")
        assert await service.is_idle(TARGET) is None
        assert await service.is_idle("") is None


class TestAgentControl:
    """権限モード・入力待ち・セッション再開のテスト."""

    @pytest.mark.asyncio
    async def test_permission_mode(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """生きている端末のモードを判定する."""
        tmux.permission_mode.return_value = ("auto", "screen")

        assert await service.permission_mode(TARGET) == ("auto", "screen")
        tmux.permission_mode.assert_awaited_once_with(TmuxTarget.parse(TARGET))

    @pytest.mark.asyncio
    async def test_switch_permission_mode(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """既知のモードへの切り替えを端末に送る."""
        tmux.switch_permission_mode.return_value = "plan"

        assert await service.switch_permission_mode(TARGET, "plan") == "plan"
        tmux.switch_permission_mode.assert_awaited_once_with(
            TmuxTarget.parse(TARGET), "plan"
        )

    @pytest.mark.asyncio
    async def test_switch_to_unknown_mode(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """未知のモードはキーを送らずに拒否する."""
        with pytest.raises(ValueError, match="unknown mode"):
            await service.switch_permission_mode(TARGET, "yolo")

        tmux.switch_permission_mode.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permission_mode_of_dead_terminal(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """端末が消えていれば例外."""
        tmux.session_exists.return_value = False

        with pytest.raises(TerminalGoneError):
            await service.permission_mode(TARGET)

    @pytest.mark.asyncio
    async def test_idle_status(
        self,
        service: HookEventService,
        tmux: AsyncMock,
        registry: SessionRegistry,
    ) -> None:
        """セッションごとの入力待ち状態（判定できなければ入力待ちではない）."""
        registry.add("s1", "%1@/tmp/sock", "/repo")
        registry.add("s2", "%2@/tmp/sock", "/repo")
        tmux.is_idle.side_effect = [True, TmuxError(["display-message"], "gone")]

        statuses = await service.idle_status()

        assert [(s.session_id, s.idle) for s in statuses] == [
            ("s1", True),
            ("s2", False),
        ]

    @pytest.mark.asyncio
    async def test_idle_status_filtered(
        self, service: HookEventService, registry: SessionRegistry
    ) -> None:
        """宛先を指定するとそのペインのセッションだけ返す."""
        registry.add("s1", "%1@/tmp/sock", "/repo")
        registry.add("s2", "%2@/tmp/sock", "/repo")

        statuses = await service.idle_status("%2")

        assert [s.session_id for s in statuses] == ["s2"]
        assert await service.idle_status("%9") == []

    @pytest.mark.asyncio
    async def test_resumable_sessions(
        self,
        coordinator: RequestCoordinator,
        registry: SessionRegistry,
        routes: MagicMock,
        tmux: AsyncMock,
        gateway: RecordingGateway,
        transcript: MagicMock,
        reactions: ReactionTracker,
        tmp_path: Path,
    ) -> None:
        """同じ作業ディレクトリの過去のセッションを、実行中のものを除いて返す."""
        project = tmp_path / "-home-app"
        project.mkdir()
        entry = {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "done"}]},
        }
        for session_id in ("current", "old"):
            (project / f"{session_id}.jsonl").write_text(
                json.dumps(entry) + "\n", encoding="utf-8"
            )
        registry.add("current", TARGET, "/home/app")
        service = HookEventService(
            coordinator,
            registry,
            routes,
            tmux,
            gateway,
            transcript,
            reactions,
            projects_dir=tmp_path,
        )

        sessions = service.resumable_sessions(TARGET)

        assert [s.session_id for s in sessions] == ["old"]
        assert sessions[0].summary == "done"

    def test_resumable_sessions_unknown_target(
        self, service: HookEventService
    ) -> None:
        """セッションが登録されていない端末は例外."""
        with pytest.raises(SessionNotFoundError):
            service.resumable_sessions("%9")

    @pytest.mark.asyncio
    async def test_resume_session(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """/resumeコマンドを端末に入力する."""
        await service.resume_session(TARGET, " abc-123 ")

        tmux.inject_text.assert_awaited_once_with(
            TmuxTarget.parse(TARGET), "/resume abc-123"
        )

    @pytest.mark.asyncio
    async def test_resume_invalid_session_id(
        self, service: HookEventService, tmux: AsyncMock
    ) -> None:
        """空白を含むセッションIDは入力しない."""
        with pytest.raises(ValueError, match="invalid session id"):
            await service.resume_session(TARGET, "abc\n/exit")

        tmux.inject_text.assert_not_awaited()
