"""Bot-side processing and resolution of pending decision requests."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from discord_hook_bridge.application.mirrors import (
    MirrorEntry,
    MirrorStore,
    NotificationState,
    PermissionState,
    QuestionState,
    state_from_request,
)
from discord_hook_bridge.application.models import (
    InvalidTransitionError,
    MessageRef,
    PendingRequest,
    PermissionRequestEvent,
    RequestKind,
    RequestStatus,
    allow_decision,
    answers_decision,
    deny_decision,
    suggestion_decision,
)
from discord_hook_bridge.application.rendering import (
    FOOTER_API_ANSWER,
    FOOTER_CANCELLED,
    FOOTER_CHAT,
    FOOTER_SUBMITTED,
    FOOTER_TEXT_ANSWER,
    FOOTER_VOICE_ANSWER,
    PERMISSION_ALLOW,
    PERMISSION_DENY,
    SUGGESTION_PREFIX,
    ControlRows,
    build_notification_text,
    build_permission_text,
    build_question_text,
    notification_controls,
    page_text,
    paginate,
    permission_controls,
    question_controls,
)
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.store import (
    CorruptRequestError,
    RequestNotFoundError,
    is_process_alive,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from discord_hook_bridge.application.gateway import ChannelGateway
    from discord_hook_bridge.application.routing import RouteService
    from discord_hook_bridge.application.sessions import SessionRegistry
    from discord_hook_bridge.application.transcript import TranscriptTracker
    from discord_hook_bridge.infrastructure.store import RequestStore

logger = get_logger(__name__)

# 「チャットで相談」を選んだときの回答
CHAT_ANSWERS = {"__chat": "true"}

TEXT_DENY_PREFIX = "User provided custom input: "
VOICE_DENY_PREFIX = "User provided voice input: "


class PromptNotFoundError(Exception):
    """操作対象のプロンプトが見つからない（期限切れ）場合の例外."""

    def __init__(self, message_id: int) -> None:
        """
        Initialize PromptNotFoundError.

        Args:
            message_id: メッセージID
        """
        super().__init__(f"No pending prompt for message {message_id}")
        self.message_id = message_id


class AlreadyResolvedError(Exception):
    """回答済みのプロンプトを操作しようとした場合の例外."""

    def __init__(self, message_id: int) -> None:
        """
        Initialize AlreadyResolvedError.

        Args:
            message_id: メッセージID
        """
        super().__init__(f"Prompt for message {message_id} is already answered")
        self.message_id = message_id


class StaleRequestError(Exception):
    """待機しているフックがもういないリクエストを操作しようとした場合の例外."""

    def __init__(self, message_id: int, request_id: str) -> None:
        """
        Initialize StaleRequestError.

        Args:
            message_id: メッセージID
            request_id: リクエストID
        """
        super().__init__(
            f"Request {request_id} for message {message_id} is no longer awaited"
        )
        self.message_id = message_id
        self.request_id = request_id


class InvalidActionError(Exception):
    """プロンプトに対して不正な操作が行われた場合の例外."""


class AnswerSource(str, Enum):
    """回答の入力元."""

    BUTTON = "button"
    TEXT = "text"
    VOICE = "voice"
    API = "api"


@dataclass(frozen=True)
class Resolution:
    """プロンプト操作の結果."""

    request_id: str
    resolved: bool
    notice: str
    decision: dict[str, Any] | None = None


class RequestCoordinator:
    """
    判定リクエストをチャンネルに表示し、操作に応じて回答を書き込む.

    永続化されたリクエストファイルが唯一の正であり、ミラーはそのキャッシュ。
    プロンプトへの操作は解決済みフラグの確認から設定までをawaitなしで行うため、
    同時に届いた操作のうち回答を書き込むのは1つだけになる。
    """

    def __init__(
        self,
        store: RequestStore,
        gateway: ChannelGateway,
        routes: RouteService,
        registry: SessionRegistry,
        *,
        page_size: int = 1900,
        transcript: TranscriptTracker | None = None,
        process_alive: Callable[[int], bool] = is_process_alive,
    ) -> None:
        """
        Initialize RequestCoordinator.

        Args:
            store: リクエストストア
            gateway: チャンネルへの送信窓口
            routes: ルーティングサービス
            registry: セッションレジストリ
            page_size: 1メッセージの最大文字数
            transcript: トランスクリプトの既読位置管理（Noneなら途中経過を送らない）
            process_alive: PIDの生存確認関数
        """
        self._store = store
        self._gateway = gateway
        self._routes = routes
        self._registry = registry
        self._page_size = page_size
        self._transcript = transcript
        self._process_alive = process_alive

        self.permissions: MirrorStore[PermissionState] = MirrorStore()
        self.questions: MirrorStore[QuestionState] = MirrorStore()
        self.notifications: MirrorStore[NotificationState] = MirrorStore()

        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    # --- 表示 ---

    def schedule(self, request_id: str) -> asyncio.Task[None]:
        """リクエストの表示処理をバックグラウンドで開始する."""
        task = asyncio.create_task(self.process_pending(request_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_scheduled(self) -> None:
        """開始済みの表示処理が全て終わるまで待つ."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def process_pending(self, request_id: str) -> None:
        """
        Pending状態のリクエストをチャンネルに表示してSentにする.

        失敗してもリクエストはPendingのまま残り、次回起動時の走査で再処理される.

        Args:
            request_id: リクエストID
        """
        if request_id in self._in_flight:
            logger.debug("Request already being processed", request_id=request_id)
            return

        self._in_flight.add(request_id)
        try:
            await self._gateway.wait_until_ready()
            await self._process(request_id)
        except Exception:
            logger.exception("Failed to process pending request", request_id=request_id)
        finally:
            self._in_flight.discard(request_id)

    async def _process(self, request_id: str) -> None:
        try:
            request = self._store.read(request_id)
        except RequestNotFoundError:
            logger.info("Pending request already settled", request_id=request_id)
            return
        except CorruptRequestError:
            logger.exception("Pending request is unreadable", request_id=request_id)
            return

        if request.status != RequestStatus.PENDING:
            logger.debug(
                "Skipping request that is not pending",
                request_id=request_id,
                status=request.status.value,
            )
            return

        if not self._process_alive(request.origin_pid):
            self._store.delete(request_id)
            logger.warning(
                "Discarded pending request from exited hook",
                request_id=request_id,
                origin_pid=request.origin_pid,
            )
            return

        try:
            event = request.permission_event()
        except ValidationError:
            self._store.delete(request_id)
            logger.exception(
                "Discarded request with invalid payload", request_id=request_id
            )
            return

        async with self._session_lock(request.session_id):
            if request.session_id:
                self._registry.add(
                    request.session_id,
                    request.terminal_target,
                    request.working_directory,
                )
            await self._render_request(request, event)

    async def _render_request(
        self, request: PendingRequest, event: PermissionRequestEvent
    ) -> None:
        channel_id = self._routes.resolve_channel(
            request.terminal_target, request.working_directory
        )
        if channel_id is None:
            logger.warning(
                "No channel configured for request",
                request_id=request.id,
                terminal_target=request.terminal_target,
            )
            return

        await self._flush_transcript(request.session_id, event, channel_id)

        pages = paginate(self._build_text(request.kind, event), self._page_size)
        placeholder = request.model_copy(
            update={"message_ref": MessageRef(channel_id=channel_id, message_id=0)}
        )
        state = state_from_request(placeholder, pages)
        if isinstance(state, QuestionState) and not state.questions:
            self._store.delete(request.id)
            logger.warning(
                "Discarded question without questions", request_id=request.id
            )
            return

        ref = await self._gateway.send_message(
            channel_id, page_text(pages, 0), self._controls(state)
        )
        state.message_ref = ref

        try:
            self._store.update(request.id, lambda r: r.mark_sent(ref))
        except (RequestNotFoundError, CorruptRequestError, InvalidTransitionError):
            # 表示中にフック側が待機をやめた
            logger.info(
                "Request settled while rendering",
                request_id=request.id,
                message_id=ref.message_id,
            )
            state.resolved = True
            state.footer = FOOTER_CANCELLED
            await self._render(state)
            return

        self._mirror_for(state).put(state)
        logger.info(
            "Prompt sent",
            request_id=request.id,
            kind=request.kind.value,
            channel_id=ref.channel_id,
            message_id=ref.message_id,
            pages=len(pages),
        )

    def rebuild_mirror(self, request: PendingRequest) -> MirrorEntry:
        """
        Sent状態のリクエストからミラーエントリを再構築する.

        表示済みのメッセージを再送せずに、そのボタンを再び操作可能にする.

        Raises:
            ValueError: メッセージ参照がない場合
            ValidationError: ペイロードが不正な場合
        """
        event = request.permission_event()
        pages = paginate(self._build_text(request.kind, event), self._page_size)
        state = state_from_request(request, pages)
        self._mirror_for(state).put(state)
        logger.info(
            "Rebuilt prompt state",
            request_id=request.id,
            message_id=state.message_id,
        )
        return state

    async def send_notification(
        self,
        channel_id: int,
        event_name: str,
        *,
        cwd: str = "",
        terminal_target: str = "",
        body: str = "",
        session_id: str = "",
    ) -> MessageRef | None:
        """
        通知メッセージを送る（長い場合はページ送り付き）.

        Returns:
            送信したメッセージの参照（送信に失敗した場合None）
        """
        text = build_notification_text(event_name, cwd, terminal_target, body)
        pages = paginate(text, self._page_size)
        entry = NotificationState(
            message_ref=MessageRef(channel_id=channel_id, message_id=0),
            session_id=session_id,
            terminal_target=terminal_target,
            pages=pages,
        )
        try:
            ref = await self._gateway.send_message(
                channel_id, page_text(pages, 0), notification_controls(entry) or None
            )
        except Exception:
            logger.exception(
                "Failed to send notification",
                channel_id=channel_id,
                event=event_name,
            )
            return None

        if len(pages) > 1:
            entry.message_ref = ref
            self.notifications.put(entry)
        logger.info(
            "Notification sent",
            event=event_name,
            channel_id=channel_id,
            message_id=ref.message_id,
            body_length=len(body),
            pages=len(pages),
        )
        return ref

    async def _flush_transcript(
        self, session_id: str, event: PermissionRequestEvent, channel_id: int
    ) -> None:
        if self._transcript is None:
            return
        # 途中経過が読めなくてもプロンプトの表示は続ける
        try:
            body = self._transcript.collect(session_id, event.transcript_path)
        except Exception:
            logger.exception(
                "Failed to read transcript",
                session_id=session_id,
                transcript_path=event.transcript_path,
            )
            return
        if body:
            await self.send_notification(
                channel_id,
                "PreToolUse",
                cwd=event.cwd,
                terminal_target=event.terminal_target,
                body=body,
                session_id=session_id,
            )

    @staticmethod
    def _build_text(kind: RequestKind, event: PermissionRequestEvent) -> str:
        if kind == RequestKind.QUESTION:
            return build_question_text(event)
        return build_permission_text(event)

    @staticmethod
    def _controls(entry: MirrorEntry) -> ControlRows:
        if isinstance(entry, PermissionState):
            return permission_controls(entry)
        if isinstance(entry, QuestionState):
            return question_controls(entry)
        return notification_controls(entry)

    def _mirror_for(self, entry: MirrorEntry) -> MirrorStore[Any]:
        if isinstance(entry, PermissionState):
            return self.permissions
        if isinstance(entry, QuestionState):
            return self.questions
        return self.notifications

    def _session_lock(
        self, session_id: str
    ) -> asyncio.Lock | contextlib.nullcontext[None]:
        if session_id:
            return self._registry.lock(session_id)
        return contextlib.nullcontext()

    async def _render(self, entry: MirrorEntry) -> None:
        """ミラーの状態でメッセージを描き直す（失敗はログのみ）."""
        try:
            await self._gateway.edit_message(
                entry.message_ref,
                page_text(entry.pages, entry.page),
                self._controls(entry),
            )
        except Exception:
            logger.exception(
                "Failed to update prompt message",
                message_id=entry.message_id,
            )

    # --- 操作 ---

    def is_prompt(self, message_id: int) -> bool:
        """メッセージが判定プロンプトかどうか."""
        return message_id in self.permissions or message_id in self.questions

    def find_open_question(self, terminal_target: str) -> QuestionState | None:
        """宛先の未回答の質問のうち最新のものを返す."""
        entries = self.questions.open_for_target(terminal_target)
        return entries[-1] if entries else None

    @staticmethod
    def _lookup(mirror: MirrorStore[Any], message_id: int) -> Any:
        entry = mirror.get(message_id)
        if entry is None:
            raise PromptNotFoundError(message_id)
        if entry.resolved:
            raise AlreadyResolvedError(message_id)
        return entry

    def _stale_status(
        self, entry: PermissionState | QuestionState
    ) -> RequestStatus | None:
        """
        ミラーに対応するリクエストが応答待ちでなければその状態を返す.

        ファイルがない、またはフックがいない場合はCANCELLEDとみなす.
        """
        try:
            request = self._store.read(entry.request_id)
        except (RequestNotFoundError, CorruptRequestError):
            return RequestStatus.CANCELLED
        if request.is_settled:
            return request.status
        if request.status == RequestStatus.SENT and not self._process_alive(
            request.origin_pid
        ):
            self._store.delete(entry.request_id)
            return RequestStatus.CANCELLED
        return None

    async def _ensure_awaited(self, entry: PermissionState | QuestionState) -> None:
        """
        フックがまだ回答を待っていることを確認する.

        待っていなければ回答を書かずにプロンプトを固定表示にする.

        Raises:
            StaleRequestError: フックがいない、またはファイルがない場合
            AlreadyResolvedError: ファイル上で既に決着している場合
        """
        status = self._stale_status(entry)
        if status is None:
            return

        entry.resolved = True
        if status == RequestStatus.ANSWERED:
            entry.footer = FOOTER_SUBMITTED
            await self._render(entry)
            raise AlreadyResolvedError(entry.message_id)

        entry.footer = FOOTER_CANCELLED
        self._mirror_for(entry).pop(entry.message_id)
        logger.warning(
            "Prompt is stale",
            request_id=entry.request_id,
            message_id=entry.message_id,
        )
        await self._render(entry)
        raise StaleRequestError(entry.message_id, entry.request_id)

    async def _resolve(
        self,
        entry: PermissionState | QuestionState,
        decision: dict[str, Any],
        *,
        footer: str,
        notice: str,
    ) -> Resolution:
        if self._mirror_for(entry).claim(entry.message_id) is None:
            raise AlreadyResolvedError(entry.message_id)
        entry.footer = footer

        try:
            self._store.update(entry.request_id, lambda r: r.mark_answered(decision))
        except (RequestNotFoundError, CorruptRequestError):
            logger.warning(
                "Request disappeared before the answer was written",
                request_id=entry.request_id,
            )
            entry.footer = FOOTER_CANCELLED
            await self._render(entry)
            raise StaleRequestError(entry.message_id, entry.request_id) from None
        except InvalidTransitionError:
            logger.warning(
                "Request was settled concurrently", request_id=entry.request_id
            )
            await self._render(entry)
            raise AlreadyResolvedError(entry.message_id) from None

        logger.info(
            "Request answered",
            request_id=entry.request_id,
            message_id=entry.message_id,
            behavior=decision.get("behavior"),
        )
        await self._render(entry)
        return Resolution(entry.request_id, True, notice, decision)

    async def decide_permission(
        self, message_id: int, choice: str, source: AnswerSource = AnswerSource.BUTTON
    ) -> Resolution:
        """
        許可要求に回答する.

        Args:
            message_id: プロンプトのメッセージID
            choice: "allow" / "deny" / "s<番号>"（提案ルールの適用）
            source: 回答の入力元

        Raises:
            PromptNotFoundError: プロンプトが見つからない場合
            AlreadyResolvedError: 回答済みの場合
            StaleRequestError: フックが既にいない場合
            InvalidActionError: 選択肢が不正な場合
        """
        entry: PermissionState = self._lookup(self.permissions, message_id)
        await self._ensure_awaited(entry)

        if choice == PERMISSION_ALLOW:
            decision, notice = allow_decision(), "✅ 許可しました。"
        elif choice == PERMISSION_DENY:
            decision, notice = deny_decision(), "❌ 拒否しました。"
        elif choice.startswith(SUGGESTION_PREFIX) and choice[1:].isdigit():
            index = int(choice[1:])
            if index >= len(entry.suggestions):
                msg = f"提案ルール {index} は存在しません"
                raise InvalidActionError(msg)
            decision = suggestion_decision(entry.suggestions[index])
            notice = "✅ 常に許可しました。"
        else:
            msg = f"不正な選択です: {choice}"
            raise InvalidActionError(msg)

        entry.selected = choice
        footer = FOOTER_API_ANSWER if source == AnswerSource.API else ""
        return await self._resolve(entry, decision, footer=footer, notice=notice)

    async def select_option(
        self, message_id: int, question_index: int, option_index: int
    ) -> Resolution:
        """
        質問の選択肢を選ぶ.

        単一選択で全質問が揃う場合はその場で回答し、それ以外は選択状態を
        更新して表示し直す.

        Raises:
            PromptNotFoundError: プロンプトが見つからない場合
            AlreadyResolvedError: 回答済みの場合
            StaleRequestError: フックが既にいない場合
            InvalidActionError: 質問・選択肢の番号が不正な場合
        """
        entry: QuestionState = self._lookup(self.questions, message_id)
        await self._ensure_awaited(entry)

        if not 0 <= question_index < len(entry.questions):
            msg = f"質問 {question_index} は存在しません"
            raise InvalidActionError(msg)
        question = entry.questions[question_index]
        if not 0 <= option_index < len(question.labels):
            msg = f"選択肢 {option_index} は存在しません"
            raise InvalidActionError(msg)

        completes = not question.multi_select and entry.completes_on(question_index)
        question.pick(option_index)

        if completes:
            decision = answers_decision(entry.tool_input, entry.answers())
            footer = FOOTER_SUBMITTED if entry.needs_submit else ""
            return await self._resolve(
                entry, decision, footer=footer, notice="✅ 回答を送信しました。"
            )

        await self._render(entry)
        return Resolution(entry.request_id, False, "☑️ 選択を更新しました。")

    async def submit_answers(self, message_id: int) -> Resolution:
        """
        選択中の回答を確定して送信する.

        Raises:
            PromptNotFoundError: プロンプトが見つからない場合
            AlreadyResolvedError: 回答済みの場合
            StaleRequestError: フックが既にいない場合
            InvalidActionError: 未回答の質問がある場合
        """
        entry: QuestionState = self._lookup(self.questions, message_id)
        await self._ensure_awaited(entry)

        missing = [
            f"Q{i + 1}" for i, q in enumerate(entry.questions) if not q.answered
        ]
        if missing:
            msg = f"未回答の質問があります: {', '.join(missing)}"
            raise InvalidActionError(msg)

        decision = answers_decision(entry.tool_input, entry.answers())
        return await self._resolve(
            entry, decision, footer=FOOTER_SUBMITTED, notice="✅ 回答を送信しました。"
        )

    async def choose_chat(self, message_id: int) -> Resolution:
        """選択肢ではなくチャットで相談することを回答する."""
        entry: QuestionState = self._lookup(self.questions, message_id)
        await self._ensure_awaited(entry)
        decision = answers_decision(entry.tool_input, dict(CHAT_ANSWERS))
        return await self._resolve(
            entry, decision, footer=FOOTER_CHAT, notice="💬 チャットで相談します。"
        )

    async def answer_with_text(
        self,
        message_id: int,
        text: str,
        source: AnswerSource = AnswerSource.TEXT,
    ) -> Resolution:
        """
        プロンプトへのテキスト（または音声の文字起こし）の返信で回答する.

        許可要求ではメッセージ付きの拒否、質問では回答テキストとして扱う。
        回答済みの質問へのテキストは受け付けない.

        Raises:
            PromptNotFoundError: プロンプトが見つからない場合
            AlreadyResolvedError: 回答済みの場合
            StaleRequestError: フックが既にいない場合
            InvalidActionError: テキストが空の場合
        """
        text = text.strip()
        if not text:
            msg = "回答テキストが空です"
            raise InvalidActionError(msg)
        voice = source == AnswerSource.VOICE
        footer = FOOTER_VOICE_ANSWER if voice else FOOTER_TEXT_ANSWER

        if message_id in self.permissions:
            permission: PermissionState = self._lookup(self.permissions, message_id)
            await self._ensure_awaited(permission)
            prefix = VOICE_DENY_PREFIX if voice else TEXT_DENY_PREFIX
            return await self._resolve(
                permission,
                deny_decision(prefix + text),
                footer=footer,
                notice="📝 メッセージを添えて拒否しました。",
            )

        question: QuestionState = self._lookup(self.questions, message_id)
        await self._ensure_awaited(question)
        answers = question.answers()
        if question.questions:
            target = next(
                (q for q in question.questions if not q.answered),
                question.questions[0],
            )
            answers[target.text] = text
        decision = answers_decision(question.tool_input, answers)
        return await self._resolve(
            question, decision, footer=footer, notice="✅ 回答を送信しました。"
        )

    async def turn_page(self, message_id: int, page: int) -> None:
        """
        ページ分割されたメッセージの表示ページを切り替える.

        Raises:
            PromptNotFoundError: メッセージが見つからない場合
            InvalidActionError: ページ番号が範囲外の場合
        """
        entry: MirrorEntry | None = (
            self.permissions.get(message_id)
            or self.questions.get(message_id)
            or self.notifications.get(message_id)
        )
        if entry is None:
            raise PromptNotFoundError(message_id)
        if not 0 <= page < len(entry.pages):
            msg = f"ページ {page + 1} は存在しません"
            raise InvalidActionError(msg)
        entry.page = page
        await self._render(entry)

    # --- キャンセル ---

    async def _freeze_cancelled(self, entry: PermissionState | QuestionState) -> None:
        entry.resolved = True
        entry.footer = FOOTER_CANCELLED
        await self._render(entry)

    async def cancel_request(self, request_id: str) -> bool:
        """
        フック側の中断通知を受けてリクエストを取り消す.

        Returns:
            取り消した場合True（既に決着済み・存在しない場合False）
        """
        try:
            self._store.update(request_id, lambda r: r.mark_cancelled())
        except (RequestNotFoundError, CorruptRequestError):
            return False
        except InvalidTransitionError as e:
            if e.current != RequestStatus.PENDING:
                return False
            # まだ表示していないリクエストは破棄するだけ
            self._store.delete(request_id)
            logger.info(
                "Discarded pending request on hook cancel", request_id=request_id
            )
            return True

        for mirror in (self.permissions, self.questions):
            entry = mirror.find_by_request(request_id)
            if entry is not None and not entry.resolved:
                await self._freeze_cancelled(entry)
        self._store.delete(request_id)
        logger.info("Request cancelled by hook", request_id=request_id)
        return True

    async def cancel_session_requests(self, session_id: str) -> int:
        """
        セッションの回答待ちのプロンプトを全て取り消す.

        端末側で直接回答された場合などに、古いプロンプトが操作可能なまま
        残らないようにする。呼び出し側がセッションのロックを保持していること.

        Returns:
            取り消した件数
        """
        cancelled = 0
        for mirror in (self.permissions, self.questions):
            for entry in mirror.for_session(session_id):
                if mirror.claim(entry.message_id) is None:
                    continue
                try:
                    self._store.update(entry.request_id, lambda r: r.mark_cancelled())
                except (
                    RequestNotFoundError,
                    CorruptRequestError,
                    InvalidTransitionError,
                ):
                    logger.debug(
                        "Request already settled during sweep",
                        request_id=entry.request_id,
                    )
                await self._freeze_cancelled(entry)
                cancelled += 1

        # ミラーを再構築できなかった表示済みリクエストもフックに中断を伝える
        for request_id in self._store.list_ids():
            try:
                request = self._store.read(request_id)
                if (
                    request.session_id != session_id
                    or request.status != RequestStatus.SENT
                ):
                    continue
                self._store.update(request_id, lambda r: r.mark_cancelled())
            except (RequestNotFoundError, CorruptRequestError, InvalidTransitionError):
                continue
            logger.info(
                "Cancelled request without prompt state",
                request_id=request_id,
                session_id=session_id,
            )
            cancelled += 1

        if cancelled:
            logger.info(
                "Cancelled outstanding prompts", session_id=session_id, count=cancelled
            )
        return cancelled

    async def discard_session(self, session_id: str) -> None:
        """終了したセッションのリクエストファイルとミラーを全て削除する."""
        for mirror in (self.permissions, self.questions):
            for entry in mirror.remove_session(session_id):
                if not entry.resolved:
                    await self._freeze_cancelled(entry)
                self._store.delete(entry.request_id)
        self.notifications.remove_session(session_id)

        for request_id in self._store.list_ids():
            try:
                request = self._store.read(request_id)
            except (RequestNotFoundError, CorruptRequestError):
                continue
            if request.session_id == session_id:
                self._store.delete(request_id)
        logger.info("Discarded session requests", session_id=session_id)
