"""Hook event handling, terminal liveness and operator input relay."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from discord_hook_bridge.application.models import (
    ASK_USER_QUESTION_TOOL,
    AnyHookEvent,
    NotificationEvent,
    PreToolUseEvent,
    SessionEndEvent,
    SessionStartEvent,
    StopEvent,
    UserPromptSubmitEvent,
)
from discord_hook_bridge.application.routing import RouteKind
from discord_hook_bridge.application.transcript import list_project_sessions
from discord_hook_bridge.infrastructure.config import AGENT_PROJECTS_DIR
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.tmux import (
    PERMISSION_MODES,
    TmuxError,
    TmuxTarget,
    same_pane,
)

if TYPE_CHECKING:
    from pathlib import Path

    from discord_hook_bridge.application.gateway import ChannelGateway
    from discord_hook_bridge.application.mirrors import ReactionTracker
    from discord_hook_bridge.application.models import MessageRef
    from discord_hook_bridge.application.requests import RequestCoordinator
    from discord_hook_bridge.application.routing import RouteService
    from discord_hook_bridge.application.sessions import SessionRegistry
    from discord_hook_bridge.application.transcript import (
        SessionSummary,
        TranscriptTracker,
    )
    from discord_hook_bridge.infrastructure.tmux import TmuxClient

logger = get_logger(__name__)

# 入力を中継したメッセージに付けるリアクション
ACK_REACTION = "✍️"

SESSION_LOST_EVENT = "SessionLost"

# 過去のセッションを再開するエージェントのコマンド
RESUME_COMMAND = "/resume"


class TerminalGoneError(Exception):
    """宛先の端末セッションが既に存在しない場合の例外."""

    def __init__(self, terminal_target: str) -> None:
        """
        Initialize TerminalGoneError.

        Args:
            terminal_target: 宛先
        """
        super().__init__(f"Terminal {terminal_target} no longer exists")
        self.terminal_target = terminal_target


class SessionNotFoundError(Exception):
    """宛先の端末にセッションが登録されていない場合の例外."""

    def __init__(self, terminal_target: str) -> None:
        """
        Initialize SessionNotFoundError.

        Args:
            terminal_target: 宛先
        """
        super().__init__(f"No session registered for terminal {terminal_target}")
        self.terminal_target = terminal_target


@dataclass(frozen=True)
class IdleStatus:
    """セッションごとの入力待ち状態."""

    session_id: str
    terminal_target: str
    idle: bool


class HookEventService:
    """判定を必要としないフックイベントの処理と端末への入力中継."""

    def __init__(
        self,
        coordinator: RequestCoordinator,
        registry: SessionRegistry,
        routes: RouteService,
        tmux: TmuxClient,
        gateway: ChannelGateway,
        transcript: TranscriptTracker,
        reactions: ReactionTracker,
        *,
        projects_dir: Path = AGENT_PROJECTS_DIR,
    ) -> None:
        """
        Initialize HookEventService.

        Args:
            coordinator: 判定リクエストのコーディネーター
            registry: セッションレジストリ
            routes: ルーティングサービス
            tmux: 端末操作クライアント
            gateway: チャンネルへの送信窓口
            transcript: トランスクリプトの既読位置管理
            reactions: 受付リアクションの記録
            projects_dir: エージェントのプロジェクトごとのトランスクリプトの場所
        """
        self._coordinator = coordinator
        self._registry = registry
        self._routes = routes
        self._tmux = tmux
        self._gateway = gateway
        self._transcript = transcript
        self._reactions = reactions
        self._projects_dir = projects_dir

    async def handle(self, event: AnyHookEvent) -> None:
        """
        フックイベントを処理する.

        同じセッションのイベントはセッション単位のロックで順に処理する.

        Args:
            event: デコード済みのフックイベント
        """
        session_id = event.session_id
        if not session_id:
            logger.debug(
                "Ignoring hook event without session", event=event.hook_event_name
            )
            return

        async with self._registry.lock(session_id):
            if not isinstance(event, SessionEndEvent):
                self._registry.add(session_id, event.terminal_target, event.cwd)

            if isinstance(event, UserPromptSubmitEvent):
                await self._coordinator.cancel_session_requests(session_id)
                await self._clear_reactions(event.terminal_target)
                self._transcript.mark(session_id, event.transcript_path)
            elif isinstance(event, PreToolUseEvent):
                await self._coordinator.cancel_session_requests(session_id)
                # 質問の途中経過はプロンプト表示時に送る
                if event.tool_name != ASK_USER_QUESTION_TOOL:
                    body = self._transcript.collect(session_id, event.transcript_path)
                    if body:
                        await self._notify(event, body)
            elif isinstance(event, StopEvent):
                await self._coordinator.cancel_session_requests(session_id)
                body = self._transcript.collect(session_id, event.transcript_path)
                await self._notify(event, body or event.last_assistant_message)
            elif isinstance(event, NotificationEvent):
                await self._notify(event, event.message)
            elif isinstance(event, SessionStartEvent):
                self._transcript.mark(session_id, event.transcript_path)
                await self._notify(event, event.source)
            elif isinstance(event, SessionEndEvent):
                await self._coordinator.discard_session(session_id)
                self._registry.remove(session_id)
                self._transcript.forget(session_id)
                await self._notify(event, event.reason)
            else:
                logger.debug(
                    "Unhandled hook event",
                    event=event.hook_event_name,
                    session_id=session_id,
                )

        if isinstance(event, SessionEndEvent):
            self._registry.discard_lock(session_id)

    async def _notify(self, event: AnyHookEvent, body: str) -> None:
        channel_id = self._routes.resolve_channel(event.terminal_target, event.cwd)
        if channel_id is None:
            logger.debug("No channel for hook event", event=event.hook_event_name)
            return
        await self._coordinator.send_notification(
            channel_id,
            event.hook_event_name,
            cwd=event.cwd,
            terminal_target=event.terminal_target,
            body=body,
            session_id=event.session_id,
        )

    async def _clear_reactions(self, terminal_target: str) -> None:
        refs = self._reactions.drain(terminal_target)
        if not refs:
            return
        try:
            await self._gateway.remove_reactions(refs, ACK_REACTION)
        except Exception:
            logger.exception(
                "Failed to clear reactions", terminal_target=terminal_target
            )

    # --- 端末 ---

    async def ensure_alive(self, terminal_target: str) -> bool:
        """
        宛先の端末セッションが生きているか確認する.

        死んでいればセッション・ルートを片付けて利用者に通知する.

        Returns:
            生きている場合True
        """
        try:
            target = TmuxTarget.parse(terminal_target)
        except ValueError:
            return False
        if await self._tmux.session_exists(target):
            return True
        await self.teardown_target(terminal_target)
        return False

    async def teardown_target(self, terminal_target: str) -> None:
        """消えた端末に紐づくセッション・ルート・記録を削除する."""
        record = self._registry.find_by_target(terminal_target)
        # ルートを外す前に、プロジェクトのルートも含めて通知先を決める
        cwd = record.working_directory if record is not None else ""
        channel_id = self._routes.resolve_channel(terminal_target, cwd)
        if record is not None:
            async with self._registry.lock(record.session_id):
                await self._coordinator.discard_session(record.session_id)
                self._registry.remove(record.session_id)
                self._transcript.forget(record.session_id)
            self._registry.discard_lock(record.session_id)

        self._routes.unbind(RouteKind.TERMINAL, terminal_target)
        self._reactions.drain(terminal_target)
        logger.warning("Terminal session disconnected", terminal_target=terminal_target)

        if channel_id is not None:
            await self._coordinator.send_notification(
                channel_id,
                SESSION_LOST_EVENT,
                cwd=cwd,
                terminal_target=terminal_target,
            )

    async def relay_input(
        self, terminal_target: str, text: str, ack: MessageRef | None = None
    ) -> None:
        """
        利用者のテキストを端末に入力する.

        Args:
            terminal_target: 宛先
            text: 入力するテキスト
            ack: 受付リアクションを付けるメッセージ

        Raises:
            TerminalGoneError: 端末セッションが存在しない場合
            TmuxError: 入力に失敗した場合
        """
        if not await self.ensure_alive(terminal_target):
            raise TerminalGoneError(terminal_target)

        await self._tmux.inject_text(TmuxTarget.parse(terminal_target), text)
        if ack is None:
            return
        try:
            await self._gateway.add_reaction(ack, ACK_REACTION)
        except Exception:
            logger.exception("Failed to add reaction", message_id=ack.message_id)
            return
        self._reactions.record(terminal_target, ack)

    async def capture(self, terminal_target: str) -> str:
        """
        端末の表示内容を取得する.

        Raises:
            TerminalGoneError: 端末セッションが存在しない場合
            TmuxError: 取得に失敗した場合
        """
        if not await self.ensure_alive(terminal_target):
            raise TerminalGoneError(terminal_target)
        return await self._tmux.capture_pane(TmuxTarget.parse(terminal_target))

    async def send_escape(self, terminal_target: str) -> None:
        """
        端末にEscapeキーを送ってエージェントを中断する.

        Raises:
            TerminalGoneError: 端末セッションが存在しない場合
            TmuxError: 送信に失敗した場合
        """
        if not await self.ensure_alive(terminal_target):
            raise TerminalGoneError(terminal_target)
        await self._tmux.send_keys(TmuxTarget.parse(terminal_target), "Escape")
        logger.info("Sent escape", terminal_target=terminal_target)

    async def is_idle(self, terminal_target: str) -> bool | None:
        """
        エージェントが入力待ちかどうかを返す.

        Returns:
            入力待ちならTrue（判定できない場合None）
        """
        try:
            return await self._tmux.is_idle(TmuxTarget.parse(terminal_target))
        except (ValueError, TmuxError, OSError):
            return None

    async def idle_status(self, terminal_target: str = "") -> list[IdleStatus]:
        """
        登録中のセッションの入力待ち状態を返す.

        判定できないセッションは入力待ちではないとみなす.

        Args:
            terminal_target: 指定した場合はその端末のセッションだけ
        """
        statuses = []
        for record in self._registry.all():
            if terminal_target and not same_pane(
                record.terminal_target, terminal_target
            ):
                continue
            idle = await self.is_idle(record.terminal_target)
            statuses.append(
                IdleStatus(
                    session_id=record.session_id,
                    terminal_target=record.terminal_target,
                    idle=idle is True,
                )
            )
        return statuses

    async def permission_mode(self, terminal_target: str) -> tuple[str, str]:
        """
        エージェントの権限モードを判定する.

        Returns:
            (モード, 端末の表示内容)

        Raises:
            TerminalGoneError: 端末セッションが存在しない場合
            TmuxError: 取得に失敗した場合
        """
        if not await self.ensure_alive(terminal_target):
            raise TerminalGoneError(terminal_target)
        return await self._tmux.permission_mode(TmuxTarget.parse(terminal_target))

    async def switch_permission_mode(self, terminal_target: str, mode: str) -> str:
        """
        エージェントの権限モードを切り替える.

        Returns:
            切り替え後のモード

        Raises:
            ValueError: 未知のモードの場合
            TerminalGoneError: 端末セッションが存在しない場合
            ModeSwitchError: そのモードに切り替えられない場合
            TmuxError: 操作に失敗した場合
        """
        if mode not in PERMISSION_MODES:
            expected = ", ".join(PERMISSION_MODES)
            msg = f"unknown mode {mode!r} (expected one of {expected})"
            raise ValueError(msg)
        if not await self.ensure_alive(terminal_target):
            raise TerminalGoneError(terminal_target)
        return await self._tmux.switch_permission_mode(
            TmuxTarget.parse(terminal_target), mode
        )

    def resumable_sessions(self, terminal_target: str) -> list[SessionSummary]:
        """
        端末のセッションと同じ作業ディレクトリの過去のセッションを返す.

        Raises:
            SessionNotFoundError: 端末にセッションが登録されていない場合
        """
        record = self._registry.find_by_target(terminal_target)
        if record is None:
            raise SessionNotFoundError(terminal_target)
        return list_project_sessions(
            self._projects_dir,
            record.working_directory,
            exclude_id=record.session_id,
        )

    async def resume_session(self, terminal_target: str, session_id: str) -> None:
        """
        端末に過去のセッションを再開する/resumeコマンドを入力する.

        Raises:
            ValueError: セッションIDが不正な場合
            TerminalGoneError: 端末セッションが存在しない場合
            TmuxError: 入力に失敗した場合
        """
        session_id = session_id.strip()
        if not session_id or any(ch.isspace() for ch in session_id):
            msg = f"invalid session id: {session_id!r}"
            raise ValueError(msg)
        await self.relay_input(terminal_target, f"{RESUME_COMMAND} {session_id}")
        logger.info(
            "Requested session resume",
            terminal_target=terminal_target,
            session_id=session_id,
        )
