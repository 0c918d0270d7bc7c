"""Prompt text, pagination and control layouts independent of the chat client."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath
from typing import TYPE_CHECKING, Any

from discord_hook_bridge.application.models import parse_questions

if TYPE_CHECKING:
    from discord_hook_bridge.application.mirrors import (
        MirrorEntry,
        PermissionState,
        QuestionState,
    )
    from discord_hook_bridge.application.models import PermissionRequestEvent

# メッセージ中で宛先を示す行の接頭辞（返信先の解決に使う）
TARGET_MARK = "📟"
PROJECT_MARK = "📁"
PAGE_MARK = "📄"
CHECK_MARK = "✅"

# ページ番号フッター用に確保する文字数
PAGE_FOOTER_RESERVE = 16

# ツール入力のプレビューの最大文字数
TOOL_INPUT_PREVIEW = 1500

# フッター
FOOTER_SUBMITTED = "✅ 送信済み"
FOOTER_CANCELLED = "❌ キャンセル"
FOOTER_TEXT_ANSWER = "✅ テキストで回答"
FOOTER_VOICE_ANSWER = "🎤 音声で回答"
FOOTER_CHAT = "💬 チャットで相談"
FOOTER_API_ANSWER = "✅ API経由で回答"

NOTIFICATION_TITLES = {
    "Stop": "✅ 応答完了",
    "Notification": "🔔 通知",
    "SessionStart": "🚀 セッション開始",
    "SessionEnd": "🔚 セッション終了",
    "PreToolUse": "💭 途中経過",
    "SessionLost": "⚠️ セッションが切断されました",
}

# ボタンのアクションID
ACTION_PREFIX = "hb"
PERMISSION_ALLOW = "allow"
PERMISSION_DENY = "deny"
SUGGESTION_PREFIX = "s"
QUESTION_SUBMIT = "submit"
QUESTION_CHAT = "chat"

# 1行に並べるボタンの最大数
MAX_ROW_WIDTH = 5


class ControlStyle(str, Enum):
    """ボタンの見た目."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    SUCCESS = "success"
    DANGER = "danger"


@dataclass(frozen=True)
class Control:
    """操作ボタン1つ分のレイアウト."""

    label: str
    action: str
    style: ControlStyle = ControlStyle.SECONDARY
    disabled: bool = False


ControlRows = list[list[Control]]


def action_id(*parts: object) -> str:
    """アクションIDを組み立てる."""
    return ":".join((ACTION_PREFIX, *(str(p) for p in parts)))


def parse_action(value: str) -> list[str] | None:
    """
    アクションIDを分解する.

    Returns:
        接頭辞を除いた要素のリスト（このアプリのIDでなければNone）
    """
    prefix, _, rest = value.partition(":")
    if prefix != ACTION_PREFIX or not rest:
        return None
    return rest.split(":")


# --- 本文 ---


def split_body(body: str, max_len: int) -> list[str]:
    """
    本文を最大文字数以下のページに分割する.

    段落区切り（空行）、改行、文字数の順で分割位置を探し、分割に使った
    区切り文字だけを取り除く。

    Args:
        body: 本文
        max_len: 1ページの最大文字数

    Returns:
        ページのリスト

    Raises:
        ValueError: max_lenが1未満の場合
    """
    if max_len < 1:
        msg = "max_len must be positive"
        raise ValueError(msg)

    pages: list[str] = []
    while len(body) > max_len:
        window = body[:max_len]
        idx = window.rfind("\n\n")
        if idx > 0:
            pages.append(body[:idx])
            body = body[idx + 2 :]
            continue
        idx = window.rfind("\n")
        if idx > 0:
            pages.append(body[:idx])
            body = body[idx + 1 :]
            continue
        pages.append(window)
        body = body[max_len:]
    pages.append(body)
    return pages


def paginate(text: str, page_size: int) -> list[str]:
    """ページ番号フッターの分を差し引いて分割する."""
    return split_body(text, max(page_size - PAGE_FOOTER_RESERVE, 1))


def page_text(pages: list[str], page: int) -> str:
    """指定ページの表示テキスト（複数ページならページ番号付き）."""
    if len(pages) <= 1:
        return pages[0] if pages else ""
    return f"{pages[page]}\n\n{PAGE_MARK} {page + 1}/{len(pages)}"


def project_name(cwd: str) -> str:
    """作業ディレクトリからプロジェクト名を返す."""
    return PurePath(cwd).name or cwd


def _header(title: str, cwd: str, terminal_target: str) -> list[str]:
    lines = [f"**{title}**"]
    if cwd:
        lines.append(f"{PROJECT_MARK} {project_name(cwd)}")
    if terminal_target:
        lines.append(f"{TARGET_MARK} {terminal_target}")
    return lines


def extract_terminal_target(text: str) -> str | None:
    """メッセージ本文から宛先行を探して返す."""
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(TARGET_MARK):
            target = line.removeprefix(TARGET_MARK).strip()
            if target:
                return target
    return None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n..."


def describe_tool_input(tool_name: str, tool_input: dict[str, Any]) -> str:
    """ツール入力を人が読める形に整形する."""
    if tool_name == "Bash" and "command" in tool_input:
        lines = []
        if tool_input.get("description"):
            lines.append(str(tool_input["description"]))
        command = _truncate(str(tool_input["command"]), TOOL_INPUT_PREVIEW)
        lines.append(f"```bash\n{command}\n```")
        return "\n".join(lines)

    if "file_path" in tool_input:
        lines = [f"{PAGE_MARK} `{tool_input['file_path']}`"]
        if "old_string" in tool_input and "new_string" in tool_input:
            old = _truncate(str(tool_input["old_string"]), TOOL_INPUT_PREVIEW // 2)
            new = _truncate(str(tool_input["new_string"]), TOOL_INPUT_PREVIEW // 2)
            lines.append(f"```diff\n- {old}\n+ {new}\n```")
        elif "content" in tool_input:
            content = _truncate(str(tool_input["content"]), TOOL_INPUT_PREVIEW)
            lines.append(f"```\n{content}\n```")
        return "\n".join(lines)

    if "url" in tool_input:
        return f"🌐 {tool_input['url']}"

    if not tool_input:
        return ""
    dumped = json.dumps(tool_input, indent=2, ensure_ascii=False)
    return f"```json\n{_truncate(dumped, TOOL_INPUT_PREVIEW)}\n```"


def build_permission_text(event: PermissionRequestEvent) -> str:
    """許可要求プロンプトの本文を組み立てる."""
    lines = _header("🔐 実行許可の確認", event.cwd, event.terminal_target)
    lines.append(f"🔧 {event.tool_name}")
    details = describe_tool_input(event.tool_name, event.tool_input)
    if details:
        lines.extend(["", details])
    return "\n".join(lines)


def build_question_text(event: PermissionRequestEvent) -> str:
    """質問プロンプトの本文を組み立てる."""
    questions = parse_questions(event.tool_input)
    lines = _header("❓ 質問", event.cwd, event.terminal_target)
    numbered = len(questions) > 1
    for index, question in enumerate(questions, start=1):
        lines.append("")
        prefix = f"Q{index}. " if numbered else ""
        header = f"[{question.header}] " if question.header else ""
        lines.append(f"{prefix}{header}**{question.question}**")
        for option_index, option in enumerate(question.options, start=1):
            line = f"{option_index}. {option.label}"
            if option.description:
                line += f" - {option.description}"
            lines.append(line)
        if question.multi_select:
            lines.append("（複数選択可）")
    return "\n".join(lines)


def build_notification_text(
    event_name: str, cwd: str, terminal_target: str, body: str
) -> str:
    """通知メッセージの本文を組み立てる."""
    title = NOTIFICATION_TITLES.get(event_name, f"📣 {event_name}")
    lines = _header(title, cwd, terminal_target)
    if body:
        lines.extend(["", body])
    return "\n".join(lines)


# --- ボタンレイアウト ---


def _chunk(controls: list[Control], width: int = MAX_ROW_WIDTH) -> ControlRows:
    return [controls[i : i + width] for i in range(0, len(controls), width)]


def _checked(label: str, selected: bool) -> str:
    return f"{CHECK_MARK} {label}" if selected else label


def page_row(page: int, total: int) -> list[Control]:
    """ページ送りボタンの行."""
    return [
        Control("◀️", action_id("page", page - 1), disabled=page <= 0),
        Control(f"{page + 1}/{total}", action_id("page", page), disabled=True),
        Control("▶️", action_id("page", page + 1), disabled=page >= total - 1),
    ]


def _page_rows(entry: MirrorEntry) -> ControlRows:
    if len(entry.pages) <= 1:
        return []
    return [page_row(entry.page, len(entry.pages))]


def _footer_rows(entry: MirrorEntry) -> ControlRows:
    if not entry.footer:
        return []
    return [[Control(entry.footer, action_id("noop"), disabled=True)]]


def suggestion_label(suggestion: dict[str, Any]) -> str:
    """「常に許可」系の提案ルールのボタンラベル."""
    kind = suggestion.get("type", "")
    if kind == "setMode":
        return f"モード変更: {suggestion.get('mode', '')}"
    if kind == "addDirectories":
        directories = suggestion.get("directories") or [""]
        return f"ディレクトリを許可: {directories[0]}"

    tool = suggestion.get("toolName", "")
    pattern = suggestion.get("ruleContent", "")
    rules = suggestion.get("rules") or []
    if rules and isinstance(rules[0], dict):
        tool = tool or rules[0].get("toolName", "")
        pattern = pattern or rules[0].get("ruleContent", "")
    label = f"常に許可 {tool}".rstrip()
    if pattern and pattern != "*":
        label += f" ({pattern})"
    return label


def permission_controls(state: PermissionState) -> ControlRows:
    """許可要求プロンプトのボタンレイアウト（解決済みなら固定表示）."""
    frozen = state.resolved
    rows: ControlRows = [
        [
            Control(
                _checked("許可", state.selected == PERMISSION_ALLOW),
                action_id("perm", PERMISSION_ALLOW),
                ControlStyle.SUCCESS,
                frozen,
            ),
            Control(
                _checked("拒否", state.selected == PERMISSION_DENY),
                action_id("perm", PERMISSION_DENY),
                ControlStyle.DANGER,
                frozen,
            ),
        ]
    ]
    suggestions = [
        Control(
            _checked(
                suggestion_label(s), state.selected == f"{SUGGESTION_PREFIX}{i}"
            ),
            action_id("perm", f"{SUGGESTION_PREFIX}{i}"),
            ControlStyle.PRIMARY,
            frozen,
        )
        for i, s in enumerate(state.suggestions)
    ]
    rows.extend(_chunk(suggestions))
    return rows + _page_rows(state) + _footer_rows(state)


def question_controls(state: QuestionState) -> ControlRows:
    """質問プロンプトのボタンレイアウト（解決済みなら固定表示）."""
    frozen = state.resolved
    numbered = len(state.questions) > 1
    rows: ControlRows = []
    for q_index, question in enumerate(state.questions):
        prefix = f"Q{q_index + 1}: " if numbered else ""
        options = [
            Control(
                _checked(prefix + label, question.is_selected(o_index)),
                action_id("ask", q_index, o_index),
                ControlStyle.PRIMARY
                if question.is_selected(o_index)
                else ControlStyle.SECONDARY,
                frozen,
            )
            for o_index, label in enumerate(question.labels)
        ]
        rows.extend(_chunk(options))

    if not frozen:
        actions = [Control(FOOTER_CHAT, action_id("ask", QUESTION_CHAT))]
        if state.needs_submit:
            actions.insert(
                0,
                Control(
                    "📤 送信", action_id("ask", QUESTION_SUBMIT), ControlStyle.SUCCESS
                ),
            )
        rows.append(actions)
    return rows + _page_rows(state) + _footer_rows(state)


def notification_controls(entry: MirrorEntry) -> ControlRows:
    """通知メッセージのボタンレイアウト（ページ送りのみ）."""
    return _page_rows(entry)
