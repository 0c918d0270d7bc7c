"""Boundary to the messaging channel used by the application layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from discord_hook_bridge.application.models import MessageRef
    from discord_hook_bridge.application.rendering import ControlRows


class ChannelGateway(Protocol):
    """メッセージの送信・編集・リアクションを行うチャンネル側の窓口."""

    async def wait_until_ready(self) -> None:
        """チャンネルへ送信できる状態になるまで待つ."""
        ...

    async def send_message(
        self, channel_id: int, text: str, controls: ControlRows | None = None
    ) -> MessageRef:
        """メッセージを送信して参照を返す."""
        ...

    async def edit_message(
        self, ref: MessageRef, text: str | None, controls: ControlRows | None
    ) -> None:
        """メッセージの本文（Noneなら変更なし）とボタンを更新する."""
        ...

    async def add_reaction(self, ref: MessageRef, emoji: str) -> None:
        """メッセージにリアクションを付ける."""
        ...

    async def remove_reactions(self, refs: list[MessageRef], emoji: str) -> None:
        """自分が付けたリアクションをまとめて外す."""
        ...
