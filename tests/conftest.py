"""Shared fixtures for application tests."""

from __future__ import annotations

import itertools
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest

from discord_hook_bridge.application.models import (
    MessageRef,
    PendingRequest,
    RequestKind,
)
from discord_hook_bridge.application.requests import RequestCoordinator
from discord_hook_bridge.application.sessions import SessionRegistry
from discord_hook_bridge.infrastructure.store import FileRequestStore

if TYPE_CHECKING:
    from pathlib import Path

    from discord_hook_bridge.application.rendering import ControlRows

CHANNEL_ID = 100
LIVE_PID = os.getpid()


@dataclass
class SentMessage:
    """送信または編集されたメッセージの記録."""

    ref: MessageRef
    text: str | None
    controls: ControlRows | None


@dataclass
class RecordingGateway:
    """送信・編集・リアクションを記録するチャンネル窓口."""

    sent: list[SentMessage] = field(default_factory=list)
    edits: list[SentMessage] = field(default_factory=list)
    reactions: list[tuple[MessageRef, str]] = field(default_factory=list)
    removed: list[MessageRef] = field(default_factory=list)
    _ids: itertools.count[int] = field(default_factory=lambda: itertools.count(1000))

    async def wait_until_ready(self) -> None:
        return None

    async def send_message(
        self, channel_id: int, text: str, controls: ControlRows | None = None
    ) -> MessageRef:
        ref = MessageRef(channel_id=channel_id, message_id=next(self._ids))
        self.sent.append(SentMessage(ref, text, controls))
        return ref

    async def edit_message(
        self, ref: MessageRef, text: str | None, controls: ControlRows | None
    ) -> None:
        self.edits.append(SentMessage(ref, text, controls))

    async def add_reaction(self, ref: MessageRef, emoji: str) -> None:
        self.reactions.append((ref, emoji))

    async def remove_reactions(self, refs: list[MessageRef], emoji: str) -> None:
        self.removed.extend(refs)

    def last_edit(self, message_id: int) -> SentMessage:
        return next(e for e in reversed(self.edits) if e.ref.message_id == message_id)


@dataclass
class ProcessTable:
    """生存しているPIDの集合（is_process_aliveの代わり）."""

    alive: set[int] = field(default_factory=lambda: {LIVE_PID})

    def __call__(self, pid: int) -> bool:
        return pid in self.alive


def permission_payload(
    tool_name: str = "Bash",
    tool_input: dict[str, Any] | None = None,
    suggestions: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """PermissionRequestのフックJSONを作る."""
    return {
        "hook_event_name": "PermissionRequest",
        "session_id": "s1",
        "cwd": "/home/user/app",
        "terminal_target": "%1@/tmp/sock",
        "tool_name": tool_name,
        "tool_input": tool_input if tool_input is not None else {"command": "ls"},
        "permission_suggestions": suggestions or [],
        **extra,
    }


def question_payload(*questions: dict[str, Any]) -> dict[str, Any]:
    """AskUserQuestionのフックJSONを作る."""
    return permission_payload(
        tool_name="AskUserQuestion", tool_input={"questions": list(questions)}
    )


def create_request(
    store: FileRequestStore, payload: dict[str, Any], pid: int = LIVE_PID
) -> PendingRequest:
    """フック側と同じ手順でリクエストファイルを作る."""
    kind = (
        RequestKind.QUESTION
        if payload["tool_name"] == "AskUserQuestion"
        else RequestKind.PERMISSION
    )
    request = PendingRequest(
        kind=kind,
        payload=payload,
        session_id=payload.get("session_id", ""),
        terminal_target=payload.get("terminal_target", ""),
        working_directory=payload.get("cwd", ""),
        origin_pid=pid,
    )
    store.create(request)
    return request


@pytest.fixture
def store(tmp_path: Path) -> FileRequestStore:
    """テスト用のリクエストストア."""
    return FileRequestStore(tmp_path / "pending")


@pytest.fixture
def gateway() -> RecordingGateway:
    """テスト用のチャンネル窓口."""
    return RecordingGateway()


@pytest.fixture
def routes() -> MagicMock:
    """全て同じチャンネルに送るルーティング."""
    routes = MagicMock()
    routes.resolve_channel.return_value = CHANNEL_ID
    return routes


@pytest.fixture
def registry() -> SessionRegistry:
    """テスト用のセッションレジストリ."""
    return SessionRegistry()


@pytest.fixture
def processes() -> ProcessTable:
    """テスト用のプロセス表."""
    return ProcessTable()


@pytest.fixture
def coordinator(
    store: FileRequestStore,
    gateway: RecordingGateway,
    routes: MagicMock,
    registry: SessionRegistry,
    processes: ProcessTable,
) -> RequestCoordinator:
    """テスト用のコーディネーター."""
    return RequestCoordinator(
        store, gateway, routes, registry, page_size=500, process_alive=processes
    )
