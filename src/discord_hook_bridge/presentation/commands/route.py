"""Channel routing commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

import discord
from discord import app_commands
from discord.ext import commands

from discord_hook_bridge.application.rendering import PROJECT_MARK, TARGET_MARK
from discord_hook_bridge.application.routing import RouteKind
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.tmux import TmuxTarget
from discord_hook_bridge.presentation.bot import is_allowed_user

if TYPE_CHECKING:
    from discord_hook_bridge.presentation.bot import HookBridgeBot

logger = get_logger(__name__)

_MARKS = {RouteKind.TERMINAL: TARGET_MARK, RouteKind.PROJECT: PROJECT_MARK}


class RouteCommands(commands.Cog):
    """チャンネルと端末・プロジェクトの紐づけコマンド群."""

    def __init__(self, bot: HookBridgeBot) -> None:
        """
        Initialize RouteCommands.

        Args:
            bot: Discord Bot インスタンス
        """
        self.bot = bot

    route_group = app_commands.Group(name="route", description="通知先チャンネルの設定")

    @route_group.command(
        name="bind", description="このチャンネルを端末またはプロジェクトに紐づける"
    )
    @app_commands.describe(
        kind="紐づける対象の種類",
        key="端末（%ペインID@ソケット）またはプロジェクトのディレクトリ",
    )
    @is_allowed_user()
    async def bind(
        self,
        interaction: discord.Interaction,
        kind: Literal["terminal", "project"],
        key: str,
    ) -> None:
        """
        このチャンネルを通知先として紐づける.

        Args:
            interaction: Discord Interaction
            kind: terminal または project
            key: 端末の宛先またはプロジェクトのディレクトリ
        """
        if interaction.channel_id is None:
            return
        route_kind = RouteKind(kind)
        key = key.strip()

        try:
            if route_kind == RouteKind.TERMINAL:
                TmuxTarget.parse(key)
            route = self.bot.routes.bind(route_kind, key, interaction.channel_id)
        except ValueError as e:
            await interaction.response.send_message(
                f"❌ 紐づけに失敗しました: {e}", ephemeral=True
            )
            return
        except Exception:
            logger.exception("Error binding route")
            await interaction.response.send_message(
                "エラーが発生しました。ログを確認してください。", ephemeral=True
            )
            return

        await interaction.response.send_message(
            f"✅ このチャンネルに紐づけました: {_MARKS[route.kind]} `{route.key}`"
        )

    @route_group.command(name="unbind", description="このチャンネルの紐づけを解除する")
    @app_commands.describe(
        kind="解除する対象の種類（省略時はこのチャンネルの全て）",
        key="端末またはプロジェクトのディレクトリ",
    )
    @is_allowed_user()
    async def unbind(
        self,
        interaction: discord.Interaction,
        kind: Literal["terminal", "project"] | None = None,
        key: str | None = None,
    ) -> None:
        """
        紐づけを解除する.

        Args:
            interaction: Discord Interaction
            kind: terminal または project
            key: 端末の宛先またはプロジェクトのディレクトリ
        """
        if interaction.channel_id is None:
            return

        try:
            if kind is None or not key:
                count = self.bot.routes.unbind_channel(interaction.channel_id)
                removed = count > 0
            else:
                removed = self.bot.routes.unbind(RouteKind(kind), key.strip())
        except Exception:
            logger.exception("Error unbinding route")
            await interaction.response.send_message(
                "エラーが発生しました。ログを確認してください。", ephemeral=True
            )
            return

        if removed:
            await interaction.response.send_message("✅ 紐づけを解除しました。")
        else:
            await interaction.response.send_message(
                "紐づけが見つかりません。", ephemeral=True
            )

    @route_group.command(name="list", description="紐づけの一覧を表示")
    @is_allowed_user()
    async def list_routes(self, interaction: discord.Interaction) -> None:
        """
        紐づけの一覧を表示する.

        Args:
            interaction: Discord Interaction
        """
        routes = self.bot.routes.list_routes()
        lines = ["**紐づけ一覧:**"]
        lines.extend(
            f"{_MARKS[route.kind]} `{route.key}` → <#{route.channel_id}>"
            for route in routes
        )
        default = self.bot.routes.default_channel_id
        if default is not None:
            lines.append(f"既定のチャンネル → <#{default}>")
        if len(lines) == 1:
            lines.append("紐づけはありません。")
        await interaction.response.send_message("\n".join(lines), ephemeral=True)


async def setup(bot: HookBridgeBot) -> None:
    """
    Cogをセットアップする.

    Args:
        bot: Discord Bot インスタンス
    """
    await bot.add_cog(RouteCommands(bot))
