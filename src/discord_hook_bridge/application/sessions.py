"""Session registry with per-session locks."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.tmux import same_pane

logger = get_logger(__name__)


class SessionRecord(BaseModel):
    """エージェントのセッション情報."""

    session_id: str
    terminal_target: str = ""
    working_directory: str = ""
    last_seen: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SessionRegistry:
    """
    セッションIDから宛先・作業ディレクトリへの対応表.

    フックイベントから再構築できるため永続化しない。
    """

    def __init__(self) -> None:
        """Initialize SessionRegistry."""
        self._sessions: dict[str, SessionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(
        self, session_id: str, terminal_target: str = "", working_directory: str = ""
    ) -> SessionRecord:
        """
        セッションを登録または更新する.

        空の値は既存の値を上書きしない.

        Args:
            session_id: セッションID
            terminal_target: 宛先
            working_directory: 作業ディレクトリ

        Returns:
            登録後のセッション情報
        """
        record = self._sessions.get(session_id)
        if record is None:
            record = SessionRecord(
                session_id=session_id,
                terminal_target=terminal_target,
                working_directory=working_directory,
            )
            self._sessions[session_id] = record
            logger.info(
                "Session registered",
                session_id=session_id,
                terminal_target=terminal_target,
                cwd=working_directory,
            )
            return record

        if terminal_target:
            record.terminal_target = terminal_target
        if working_directory:
            record.working_directory = working_directory
        record.last_seen = datetime.now(timezone.utc)
        return record

    def remove(self, session_id: str) -> SessionRecord | None:
        """セッションを削除する（ロックは実行中の処理のために残す）."""
        record = self._sessions.pop(session_id, None)
        if record is not None:
            logger.info("Session removed", session_id=session_id)
        return record

    def get(self, session_id: str) -> SessionRecord | None:
        return self._sessions.get(session_id)

    def all(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def find_by_target(self, terminal_target: str) -> SessionRecord | None:
        """宛先（同じペイン）のうち最後に更新されたセッションを返す."""
        matches = [
            r
            for r in self._sessions.values()
            if same_pane(r.terminal_target, terminal_target)
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.last_seen)

    def find_by_cwd(self, working_directory: str) -> list[SessionRecord]:
        return [
            r
            for r in self._sessions.values()
            if working_directory and r.working_directory == working_directory
        ]

    def lock(self, session_id: str) -> asyncio.Lock:
        """
        セッション単位のロックを返す.

        同じセッションのイベント処理はこのロックで直列化する.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def discard_lock(self, session_id: str) -> None:
        """使用中でないロックを破棄する."""
        lock = self._locks.get(session_id)
        if lock is not None and not lock.locked():
            del self._locks[session_id]
