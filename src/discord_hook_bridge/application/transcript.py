"""Incremental reader for the agent's JSONL transcript."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel

from discord_hook_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

# 通知対象から除外する応答
_IGNORED_TEXTS = frozenset({"No response requested."})
_SYNTHETIC_MODEL = "<synthetic>"

TRANSCRIPT_SUFFIX = ".jsonl"

# 再開候補の要約の最大文字数
SUMMARY_LIMIT = 4000

# 利用者の入力ではなくエージェントが差し込んだメッセージの接頭辞
_SYSTEM_TAG_PREFIXES = (
    "<local-command-",
    "<command-",
    "<task-notification",
    "<bash-input",
    "<system-reminder",
)


def _assistant_text(entry: dict[str, Any]) -> str | None:
    """アシスタントのエントリからテキスト部分を連結して返す."""
    if entry.get("model") == _SYNTHETIC_MODEL:
        return None
    message = entry.get("message")
    if not isinstance(message, dict) or not isinstance(message.get("content"), list):
        return None
    parts = [
        c["text"]
        for c in message["content"]
        if isinstance(c, dict)
        and c.get("type") == "text"
        and isinstance(c.get("text"), str)
        and c["text"]
    ]
    if not parts:
        return None
    joined = "\n".join(parts)
    if joined in _IGNORED_TEXTS:
        return None
    return joined


def _user_text(entry: dict[str, Any]) -> str | None:
    """利用者が入力したテキストを返す（システムタグのみの場合None）."""
    if entry.get("isMeta"):
        return None
    message = entry.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        candidates = [content]
    elif isinstance(content, list):
        candidates = [
            c["text"]
            for c in content
            if isinstance(c, dict)
            and c.get("type") == "text"
            and isinstance(c.get("text"), str)
        ]
    else:
        return None
    for text in candidates:
        if text and not text.startswith(_SYSTEM_TAG_PREFIXES):
            return text
    return None


def _read_entries(transcript_path: str | Path) -> list[dict[str, Any]]:
    """
    トランスクリプトのエントリをファイル順に読む.

    読めない行は無視する。書き込み途中で文字の途中までしかない末尾は
    置換文字で読み、JSONとして不正な行になる.
    """
    try:
        content = Path(transcript_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []

    entries: list[dict[str, Any]] = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def read_assistant_texts(transcript_path: str | Path) -> list[str]:
    """
    トランスクリプトからアシスタントのテキスト応答を順に取り出す.

    Args:
        transcript_path: トランスクリプト（JSONL）のパス

    Returns:
        テキスト応答のリスト（ファイルが読めなければ空）
    """
    texts: list[str] = []
    for entry in _read_entries(transcript_path):
        if entry.get("type") != "assistant":
            continue
        text = _assistant_text(entry)
        if text is not None:
            texts.append(text)
    return texts


class SessionSummary(BaseModel):
    """再開できる過去のセッション."""

    session_id: str
    summary: str
    source: Literal["assistant", "user"]
    modified: datetime


def read_last_summary(
    transcript_path: str | Path, limit: int = SUMMARY_LIMIT
) -> tuple[str, Literal["assistant", "user"]] | None:
    """
    セッションの最後の意味のある発言を返す.

    末尾から見て、アシスタントの応答か利用者の入力のうち先に見つかった方.
    """
    for entry in reversed(_read_entries(transcript_path)):
        source: Literal["assistant", "user"]
        if entry.get("type") == "assistant":
            text, source = _assistant_text(entry), "assistant"
        elif entry.get("type") == "user":
            text, source = _user_text(entry), "user"
        else:
            continue
        if text is None:
            continue
        if len(text) > limit:
            text = text[:limit] + "..."
        return text, source
    return None


def project_slug(working_directory: str) -> str:
    """作業ディレクトリをトランスクリプトのディレクトリ名に変換する."""
    return working_directory.replace("/", "-")


def list_project_sessions(
    projects_dir: Path,
    working_directory: str,
    *,
    limit: int = 8,
    exclude_id: str = "",
) -> list[SessionSummary]:
    """
    作業ディレクトリの過去のセッションを新しい順に返す.

    要約を取り出せないセッションは含めない.

    Args:
        projects_dir: プロジェクトごとのトランスクリプトのディレクトリ
        working_directory: セッションの作業ディレクトリ
        limit: 最大件数
        exclude_id: 除外するセッションID（実行中のセッションなど）

    Raises:
        OSError: ディレクトリを読めない場合（存在しない場合は空）
    """
    directory = projects_dir / project_slug(working_directory)
    try:
        paths = [
            p
            for p in directory.iterdir()
            if p.suffix == TRANSCRIPT_SUFFIX and p.is_file()
        ]
    except FileNotFoundError:
        return []

    stamped: list[tuple[float, Path]] = []
    for path in paths:
        try:
            stamped.append((path.stat().st_mtime, path))
        except OSError:
            continue
    stamped.sort(key=lambda item: item[0], reverse=True)

    sessions: list[SessionSummary] = []
    for mtime, path in stamped:
        if len(sessions) >= limit:
            break
        if exclude_id and path.stem == exclude_id:
            continue
        found = read_last_summary(path)
        if found is None:
            continue
        summary, source = found
        sessions.append(
            SessionSummary(
                session_id=path.stem,
                summary=summary,
                source=source,
                modified=datetime.fromtimestamp(mtime, tz=timezone.utc),
            )
        )
    logger.debug(
        "Listed project sessions",
        working_directory=working_directory,
        count=len(sessions),
    )
    return sessions


class TranscriptTracker:
    """
    セッションごとに通知済みのアシスタント応答数を記録する.

    呼び出し側がセッション単位のロックを保持している前提。
    """

    def __init__(self) -> None:
        """Initialize TranscriptTracker."""
        self._positions: dict[str, int] = {}

    def collect(self, session_id: str, transcript_path: str) -> str:
        """
        前回以降の新しい応答を連結して返し、位置を進める.

        初めて見るセッション（デーモン再起動直後など）は過去の応答を
        送らないよう現在位置から始める.
        """
        if not session_id or not transcript_path:
            return ""

        texts = read_assistant_texts(transcript_path)
        if session_id not in self._positions:
            self._positions[session_id] = len(texts)
            logger.debug(
                "Initialized transcript position",
                session_id=session_id,
                position=len(texts),
            )
            return ""

        position = self._positions[session_id]
        self._positions[session_id] = len(texts)
        new_texts = [t.strip() for t in texts[position:] if t.strip()]
        return "\n\n".join(new_texts)

    def mark(self, session_id: str, transcript_path: str) -> None:
        """現在の応答数を通知済みとして記録する."""
        if session_id and transcript_path:
            self._positions[session_id] = len(read_assistant_texts(transcript_path))

    def forget(self, session_id: str) -> None:
        self._positions.pop(session_id, None)
