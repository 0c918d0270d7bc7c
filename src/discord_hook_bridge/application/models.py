"""Data models shared by the hook client and the bot daemon."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

# 質問ツール名（PermissionRequestのうちこのツールは質問として扱う）
ASK_USER_QUESTION_TOOL = "AskUserQuestion"


class RequestKind(str, Enum):
    """判定リクエストの種別."""

    PERMISSION = "permission"
    QUESTION = "question"


class RequestStatus(str, Enum):
    """判定リクエストの状態."""

    PENDING = "pending"
    SENT = "sent"
    ANSWERED = "answered"
    CANCELLED = "cancelled"


# 許可される状態遷移（Pending→Sent→{Answered,Cancelled}）
_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.SENT}),
    RequestStatus.SENT: frozenset({RequestStatus.ANSWERED, RequestStatus.CANCELLED}),
    RequestStatus.ANSWERED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(Exception):
    """許可されていない状態遷移が要求された場合の例外."""

    def __init__(self, current: RequestStatus, target: RequestStatus) -> None:
        """
        Initialize InvalidTransitionError.

        Args:
            current: 現在の状態
            target: 遷移先の状態
        """
        super().__init__(f"Invalid transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class MessageRef(BaseModel):
    """チャンネル上のメッセージ参照."""

    model_config = ConfigDict(frozen=True)

    channel_id: int
    message_id: int


class PendingRequest(BaseModel):
    """フックイベント1件分の永続化された判定リクエスト."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: RequestKind
    status: RequestStatus = RequestStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    message_ref: MessageRef | None = None
    session_id: str = ""
    terminal_target: str = ""
    working_directory: str = ""
    decision: dict[str, Any] | None = None
    origin_pid: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_settled(self) -> bool:
        """回答済みまたはキャンセル済みかどうか."""
        return self.status in (RequestStatus.ANSWERED, RequestStatus.CANCELLED)

    def transition(self, status: RequestStatus) -> None:
        """
        状態を遷移させる.

        Args:
            status: 遷移先の状態

        Raises:
            InvalidTransitionError: 許可されていない遷移の場合
        """
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, status)
        self.status = status

    def mark_sent(self, ref: MessageRef) -> None:
        """送信済みにしてメッセージ参照を記録する."""
        self.transition(RequestStatus.SENT)
        self.message_ref = ref

    def mark_answered(self, decision: dict[str, Any]) -> None:
        """回答済みにして判定結果を記録する."""
        self.transition(RequestStatus.ANSWERED)
        self.decision = decision

    def mark_cancelled(self) -> None:
        """キャンセル済みにする."""
        self.transition(RequestStatus.CANCELLED)

    def permission_event(self) -> PermissionRequestEvent:
        """ペイロードをPermissionRequestイベントとしてデコードする."""
        return PermissionRequestEvent.model_validate(self.payload)


# --- フックイベント（hook_event_nameをタグとするユニオン） ---


class HookEventBase(BaseModel):
    """全フックイベント共通のフィールド."""

    model_config = ConfigDict(extra="allow")

    session_id: str = ""
    cwd: str = ""
    transcript_path: str = ""
    terminal_target: str = ""


class PermissionRequestEvent(HookEventBase):
    """ツール実行の許可要求（AskUserQuestionの場合は質問）."""

    hook_event_name: Literal["PermissionRequest"] = "PermissionRequest"
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    permission_suggestions: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def kind(self) -> RequestKind:
        """リクエスト種別."""
        if self.tool_name == ASK_USER_QUESTION_TOOL:
            return RequestKind.QUESTION
        return RequestKind.PERMISSION


class PreToolUseEvent(HookEventBase):
    """ツール実行直前のイベント."""

    hook_event_name: Literal["PreToolUse"] = "PreToolUse"
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)


class UserPromptSubmitEvent(HookEventBase):
    """ユーザープロンプト送信イベント."""

    hook_event_name: Literal["UserPromptSubmit"] = "UserPromptSubmit"
    prompt: str = ""


class StopEvent(HookEventBase):
    """エージェントの応答完了イベント."""

    hook_event_name: Literal["Stop"] = "Stop"
    last_assistant_message: str = ""


class NotificationEvent(HookEventBase):
    """エージェントからの通知イベント."""

    hook_event_name: Literal["Notification"] = "Notification"
    message: str = ""


class SessionStartEvent(HookEventBase):
    """セッション開始イベント."""

    hook_event_name: Literal["SessionStart"] = "SessionStart"
    source: str = ""


class SessionEndEvent(HookEventBase):
    """セッション終了イベント."""

    hook_event_name: Literal["SessionEnd"] = "SessionEnd"
    reason: str = ""


class GenericHookEvent(HookEventBase):
    """未知のイベント名を持つフックイベント."""

    hook_event_name: str


HookEvent = Annotated[
    Union[
        PermissionRequestEvent,
        PreToolUseEvent,
        UserPromptSubmitEvent,
        StopEvent,
        NotificationEvent,
        SessionStartEvent,
        SessionEndEvent,
    ],
    Field(discriminator="hook_event_name"),
]

_hook_event_adapter: TypeAdapter[HookEvent] = TypeAdapter(HookEvent)

KNOWN_EVENTS = frozenset(
    {
        "PermissionRequest",
        "PreToolUse",
        "UserPromptSubmit",
        "Stop",
        "Notification",
        "SessionStart",
        "SessionEnd",
    }
)

AnyHookEvent = Union[HookEvent, GenericHookEvent]


def parse_hook_event(raw: dict[str, Any]) -> AnyHookEvent:
    """
    フックのJSONを型付きイベントにデコードする.

    Args:
        raw: フックから受け取ったJSONオブジェクト

    Returns:
        デコードされたイベント

    Raises:
        ValidationError: 必須フィールドが欠けている場合
    """
    if raw.get("hook_event_name") in KNOWN_EVENTS:
        return _hook_event_adapter.validate_python(raw)
    return GenericHookEvent.model_validate(raw)


# --- AskUserQuestion入力 ---


class AskOption(BaseModel):
    """質問の選択肢."""

    model_config = ConfigDict(extra="allow")

    label: str
    description: str = ""


class AskQuestion(BaseModel):
    """質問1件."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    question: str
    header: str = ""
    options: list[AskOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")


class AskUserQuestionInput(BaseModel):
    """AskUserQuestionツールの入力."""

    model_config = ConfigDict(extra="allow")

    questions: list[AskQuestion] = Field(default_factory=list)


def parse_questions(tool_input: dict[str, Any]) -> list[AskQuestion]:
    """
    ツール入力から質問リストを取り出す.

    不正な入力の場合は空リストを返す.
    """
    try:
        return AskUserQuestionInput.model_validate(tool_input).questions
    except ValidationError:
        return []


# --- 判定結果 ---


def allow_decision() -> dict[str, Any]:
    """許可の判定結果."""
    return {"behavior": "allow"}


def deny_decision(message: str = "") -> dict[str, Any]:
    """拒否の判定結果."""
    decision: dict[str, Any] = {"behavior": "deny"}
    if message:
        decision["message"] = message
    return decision


def suggestion_decision(suggestion: dict[str, Any]) -> dict[str, Any]:
    """提案ルールを適用して許可する判定結果."""
    return {"behavior": "allow", "updatedPermissions": [suggestion]}


def answers_decision(
    tool_input: dict[str, Any], answers: dict[str, str]
) -> dict[str, Any]:
    """質問への回答を含む判定結果."""
    return {
        "behavior": "allow",
        "updatedInput": {
            "questions": tool_input.get("questions", []),
            "answers": answers,
        },
    }


def hook_output(decision: dict[str, Any]) -> dict[str, Any]:
    """フックのstdoutに出力するJSONオブジェクトを組み立てる."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "PermissionRequest",
            "decision": decision,
        }
    }
