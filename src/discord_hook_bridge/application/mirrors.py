"""In-memory mirrors of rendered prompts and channel bookkeeping."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from discord_hook_bridge.application.models import (
    MessageRef,
    PendingRequest,
    RequestKind,
    parse_questions,
)
from discord_hook_bridge.infrastructure.tmux import same_pane

# 1つのストアが保持する最大エントリ数（超えた分は解決済みの古いものから捨てる）
MAX_ENTRIES = 500


@dataclass(kw_only=True)
class MirrorEntry:
    """チャンネルに表示中のメッセージ1件分の状態."""

    message_ref: MessageRef
    session_id: str = ""
    terminal_target: str = ""
    pages: list[str] = field(default_factory=list)
    page: int = 0
    resolved: bool = False
    footer: str = ""

    @property
    def message_id(self) -> int:
        return self.message_ref.message_id


@dataclass(kw_only=True)
class NotificationState(MirrorEntry):
    """ページ分割された通知メッセージ."""


@dataclass(kw_only=True)
class PermissionState(MirrorEntry):
    """許可要求プロンプトの状態."""

    request_id: str
    tool_name: str = ""
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    selected: str | None = None


@dataclass
class QuestionItem:
    """質問1件の選択状態."""

    text: str
    labels: list[str]
    header: str = ""
    multi_select: bool = False
    selected: int | None = None
    chosen: set[int] = field(default_factory=set)

    @property
    def answered(self) -> bool:
        if self.multi_select:
            return bool(self.chosen)
        return self.selected is not None

    def is_selected(self, index: int) -> bool:
        if self.multi_select:
            return index in self.chosen
        return self.selected == index

    def pick(self, index: int) -> None:
        """
        選択肢を選ぶ（複数選択はトグル）.

        Raises:
            IndexError: 範囲外の選択肢の場合
        """
        if not 0 <= index < len(self.labels):
            msg = f"option index {index} out of range"
            raise IndexError(msg)
        if self.multi_select:
            self.chosen ^= {index}
        else:
            self.selected = index

    def answer(self) -> str | None:
        """回答文字列（未回答ならNone）."""
        if self.multi_select:
            if not self.chosen:
                return None
            return ", ".join(self.labels[i] for i in sorted(self.chosen))
        if self.selected is None:
            return None
        return self.labels[self.selected]


@dataclass(kw_only=True)
class QuestionState(MirrorEntry):
    """質問プロンプトの状態."""

    request_id: str
    questions: list[QuestionItem] = field(default_factory=list)
    tool_input: dict[str, Any] = field(default_factory=dict)

    @property
    def needs_submit(self) -> bool:
        """送信ボタンによる確定が必要なレイアウトかどうか."""
        return len(self.questions) > 1 or any(q.multi_select for q in self.questions)

    def answers(self) -> dict[str, str]:
        """回答済みの質問文→回答の辞書."""
        result: dict[str, str] = {}
        for question in self.questions:
            answer = question.answer()
            if answer is not None:
                result[question.text] = answer
        return result

    def completes_on(self, question_index: int) -> bool:
        """
        指定した質問への単一選択で全質問が揃うかどうか.

        全質問が単一選択で、未回答がその1問だけの場合に真となる.
        """
        if any(q.multi_select for q in self.questions):
            return False
        unanswered = [i for i, q in enumerate(self.questions) if not q.answered]
        return unanswered == [question_index]


def build_question_items(tool_input: dict[str, Any]) -> list[QuestionItem]:
    """AskUserQuestionの入力から選択状態を初期化する."""
    return [
        QuestionItem(
            text=q.question,
            header=q.header,
            labels=[o.label for o in q.options],
            multi_select=q.multi_select,
        )
        for q in parse_questions(tool_input)
    ]


def state_from_request(
    request: PendingRequest, pages: list[str]
) -> PermissionState | QuestionState:
    """
    送信済みリクエストからミラーエントリを組み立てる.

    Raises:
        ValueError: メッセージ参照が記録されていない場合
    """
    if request.message_ref is None:
        msg = f"request {request.id} has no message reference"
        raise ValueError(msg)

    event = request.permission_event()
    common: dict[str, Any] = {
        "message_ref": request.message_ref,
        "session_id": request.session_id,
        "terminal_target": request.terminal_target,
        "pages": pages,
        "request_id": request.id,
    }
    if request.kind == RequestKind.QUESTION:
        return QuestionState(
            questions=build_question_items(event.tool_input),
            tool_input=event.tool_input,
            **common,
        )
    return PermissionState(
        tool_name=event.tool_name,
        suggestions=list(event.permission_suggestions),
        **common,
    )


EntryT = TypeVar("EntryT", bound=MirrorEntry)


class MirrorStore(Generic[EntryT]):
    """メッセージIDをキーにしたミラーエントリのストア."""

    def __init__(self, max_entries: int = MAX_ENTRIES) -> None:
        """
        Initialize MirrorStore.

        Args:
            max_entries: 保持する最大エントリ数
        """
        self._entries: dict[int, EntryT] = {}
        self._max_entries = max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries

    def __iter__(self) -> Iterator[EntryT]:
        return iter(list(self._entries.values()))

    def put(self, entry: EntryT) -> None:
        """エントリを登録する（上限を超えたら解決済みの古いものから捨てる）."""
        self._entries[entry.message_id] = entry
        if len(self._entries) <= self._max_entries:
            return
        for message_id, old in list(self._entries.items()):
            if len(self._entries) <= self._max_entries:
                break
            if old.resolved or not hasattr(old, "request_id"):
                del self._entries[message_id]

    def get(self, message_id: int) -> EntryT | None:
        return self._entries.get(message_id)

    def pop(self, message_id: int) -> EntryT | None:
        return self._entries.pop(message_id, None)

    def claim(self, message_id: int) -> EntryT | None:
        """
        未解決のエントリを解決済みにして返す.

        確認と更新の間にawaitを挟まないため、同時に届いた操作のうち
        1つだけがエントリを取得できる.

        Returns:
            取得できたエントリ（存在しないか解決済みならNone）
        """
        entry = self._entries.get(message_id)
        if entry is None or entry.resolved:
            return None
        entry.resolved = True
        return entry

    def find_by_request(self, request_id: str) -> EntryT | None:
        for entry in self._entries.values():
            if getattr(entry, "request_id", None) == request_id:
                return entry
        return None

    def for_session(self, session_id: str) -> list[EntryT]:
        return [e for e in self._entries.values() if e.session_id == session_id]

    def open_for_target(self, terminal_target: str) -> list[EntryT]:
        """指定した宛先の未解決エントリを古い順に返す."""
        return [
            e
            for e in self._entries.values()
            if not e.resolved and same_pane(e.terminal_target, terminal_target)
        ]

    def remove_session(self, session_id: str) -> list[EntryT]:
        """セッションに属するエントリを全て削除して返す."""
        removed = self.for_session(session_id)
        for entry in removed:
            del self._entries[entry.message_id]
        return removed


class ReactionTracker:
    """入力中継時に付けた受付リアクションの記録."""

    def __init__(self) -> None:
        """Initialize ReactionTracker."""
        self._marks: dict[str, list[MessageRef]] = {}

    def record(self, terminal_target: str, ref: MessageRef) -> None:
        self._marks.setdefault(terminal_target, []).append(ref)

    def drain(self, terminal_target: str) -> list[MessageRef]:
        """宛先（同じペイン）に付けたリアクションの記録を取り出して消す."""
        drained: list[MessageRef] = []
        for target in [t for t in self._marks if same_pane(t, terminal_target)]:
            drained.extend(self._marks.pop(target))
        return drained

    def pending(self, terminal_target: str) -> list[MessageRef]:
        return [
            ref
            for target, refs in self._marks.items()
            if same_pane(target, terminal_target)
            for ref in refs
        ]
