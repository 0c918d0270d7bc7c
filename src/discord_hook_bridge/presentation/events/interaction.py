"""Button interaction handler."""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from discord_hook_bridge.application.rendering import (
    QUESTION_CHAT,
    QUESTION_SUBMIT,
    parse_action,
)
from discord_hook_bridge.application.requests import (
    AlreadyResolvedError,
    InvalidActionError,
    PromptNotFoundError,
    StaleRequestError,
)
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.presentation.notices import (
    NOTICE_ERROR,
    NOTICE_UNAUTHORIZED,
    describe_error,
)

if TYPE_CHECKING:
    from discord_hook_bridge.presentation.bot import HookBridgeBot

logger = get_logger(__name__)


class InteractionEventHandler(commands.Cog):
    """
    プロンプトのボタン押下を処理するハンドラー.

    ボタンはcustom_idのアクションIDだけで処理するため、Botの再起動後も
    ミラーが再構築されていれば古いメッセージのボタンが動作する。
    """

    def __init__(self, bot: HookBridgeBot) -> None:
        """
        Initialize InteractionEventHandler.

        Args:
            bot: Discord Bot インスタンス
        """
        self.bot = bot

    async def _dispatch(self, message_id: int, parts: list[str]) -> str | None:
        """
        アクションを実行する.

        Returns:
            利用者に表示する通知（表示しない場合None）

        Raises:
            InvalidActionError: アクションIDが不正な場合
        """
        coordinator = self.bot.coordinator
        action, args = parts[0], parts[1:]
        try:
            if action == "perm" and args:
                resolution = await coordinator.decide_permission(message_id, args[0])
                return resolution.notice

            if action == "ask" and args:
                if args[0] == QUESTION_SUBMIT:
                    resolution = await coordinator.submit_answers(message_id)
                elif args[0] == QUESTION_CHAT:
                    resolution = await coordinator.choose_chat(message_id)
                else:
                    resolution = await coordinator.select_option(
                        message_id, int(args[0]), int(args[1])
                    )
                # 選択の切り替えだけなら通知しない
                return resolution.notice if resolution.resolved else None

            if action == "page" and args:
                await coordinator.turn_page(message_id, int(args[0]))
                return None
        except (ValueError, IndexError):
            msg = f"不正な操作です: {':'.join(parts)}"
            raise InvalidActionError(msg) from None

        msg = f"不明な操作です: {':'.join(parts)}"
        raise InvalidActionError(msg)

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction) -> None:
        """
        インタラクション受信イベントハンドラー.

        このアプリのアクションIDを持つボタン押下のみ処理する。

        Args:
            interaction: Discord Interaction
        """
        if interaction.type != discord.InteractionType.component:
            return
        data = interaction.data or {}
        parts = parse_action(str(data.get("custom_id", "")))
        if parts is None:
            return

        if not self.bot.is_allowed(interaction.user.id):
            logger.warning(
                "Unauthorized user attempted to press a button",
                user_name=interaction.user.name,
                user_id=interaction.user.id,
            )
            await interaction.response.send_message(NOTICE_UNAUTHORIZED, ephemeral=True)
            return

        await interaction.response.defer()
        if parts[0] == "noop" or interaction.message is None:
            return

        message_id = interaction.message.id
        logger.info("Button pressed", message_id=message_id, action=":".join(parts))

        try:
            notice = await self._dispatch(message_id, parts)
        except (
            PromptNotFoundError,
            AlreadyResolvedError,
            StaleRequestError,
            InvalidActionError,
        ) as e:
            logger.info(
                "Button action rejected",
                message_id=message_id,
                reason=type(e).__name__,
            )
            notice = describe_error(e)
        except Exception:
            logger.exception("Error handling button", message_id=message_id)
            notice = NOTICE_ERROR

        if notice:
            await interaction.followup.send(notice, ephemeral=True)


async def setup(bot: HookBridgeBot) -> None:
    """
    Cogをセットアップする.

    Args:
        bot: Discord Bot インスタンス
    """
    await bot.add_cog(InteractionEventHandler(bot))
