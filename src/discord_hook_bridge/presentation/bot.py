"""Discord Bot client implementation."""

from __future__ import annotations

import asyncio

import discord
from discord import Intents, app_commands
from discord.ext import commands

from discord_hook_bridge.application.events import HookEventService  # noqa: TC001
from discord_hook_bridge.application.models import MessageRef
from discord_hook_bridge.application.rendering import ControlRows  # noqa: TC001
from discord_hook_bridge.application.requests import RequestCoordinator  # noqa: TC001
from discord_hook_bridge.application.routing import RouteService  # noqa: TC001
from discord_hook_bridge.application.sessions import SessionRegistry  # noqa: TC001
from discord_hook_bridge.infrastructure.config import Config  # noqa: TC001
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.voice import VoiceTranscriber  # noqa: TC001
from discord_hook_bridge.presentation.views.controls import build_view

logger = get_logger(__name__)

EXTENSIONS = (
    "discord_hook_bridge.presentation.events.interaction",
    "discord_hook_bridge.presentation.events.message",
    "discord_hook_bridge.presentation.commands.route",
    "discord_hook_bridge.presentation.commands.terminal",
)


class HookBridgeBot(commands.Bot):
    """
    Hook Bridge Discord Bot.

    アプリケーション層からはChannelGatewayとして使われる。
    """

    def __init__(
        self,
        config: Config,
        routes: RouteService,
        registry: SessionRegistry,
        transcriber: VoiceTranscriber,
    ) -> None:
        """
        Initialize HookBridgeBot.

        Args:
            config: アプリケーション設定
            routes: ルーティングサービス
            registry: セッションレジストリ
            transcriber: 音声の文字起こし
        """
        # Intentsの設定（必要最小限）
        intents = Intents.default()
        intents.message_content = True  # メッセージ内容を読み取るために必要
        intents.guilds = True
        intents.messages = True

        super().__init__(
            command_prefix="!",  # Slash Commandsを使うため、プレフィックスは使用しない
            intents=intents,
        )

        self.config = config
        self.routes = routes
        self.registry = registry
        self.transcriber = transcriber
        # coordinator/eventsはBot（送信窓口）を受け取って作られるため後から設定される
        self.coordinator: RequestCoordinator = None  # type: ignore[assignment]
        self.events: HookEventService = None  # type: ignore[assignment]
        self._logged_in = asyncio.Event()

    def is_allowed(self, user_id: int) -> bool:
        """操作を許可されたユーザーかどうか."""
        return user_id == self.config.discord_allowed_user_id

    # --- ChannelGateway ---

    async def wait_until_ready(self) -> None:
        """
        Botの準備が完了するまで待つ.

        ログイン前に呼ばれた場合はログインを待ってから準備完了を待つ.
        """
        await self._logged_in.wait()
        await super().wait_until_ready()

    async def send_message(
        self, channel_id: int, text: str, controls: ControlRows | None = None
    ) -> MessageRef:
        """チャンネルにメッセージを送信する."""
        channel = self.get_partial_messageable(channel_id)
        view = build_view(controls)
        if view is None:
            message = await channel.send(text)
        else:
            message = await channel.send(text, view=view)
        logger.debug("Sent message", channel_id=channel_id, message_id=message.id)
        return MessageRef(channel_id=channel_id, message_id=message.id)

    async def edit_message(
        self, ref: MessageRef, text: str | None, controls: ControlRows | None
    ) -> None:
        """メッセージの本文とボタンを更新する."""
        message = self.get_partial_messageable(ref.channel_id).get_partial_message(
            ref.message_id
        )
        if text is None:
            await message.edit(view=build_view(controls))
        else:
            await message.edit(content=text, view=build_view(controls))

    async def add_reaction(self, ref: MessageRef, emoji: str) -> None:
        """メッセージにリアクションを付ける."""
        message = self.get_partial_messageable(ref.channel_id).get_partial_message(
            ref.message_id
        )
        await message.add_reaction(emoji)

    async def remove_reactions(self, refs: list[MessageRef], emoji: str) -> None:
        """自分が付けたリアクションを外す（個別の失敗はログのみ）."""
        if self.user is None:
            return
        for ref in refs:
            message = self.get_partial_messageable(ref.channel_id).get_partial_message(
                ref.message_id
            )
            try:
                await message.remove_reaction(emoji, self.user)
            except discord.HTTPException:
                logger.warning(
                    "Failed to remove reaction",
                    channel_id=ref.channel_id,
                    message_id=ref.message_id,
                )

    # --- ライフサイクル ---

    async def setup_hook(self) -> None:
        """
        Bot起動時の初期化処理.

        Cogのロードとコマンドツリーの同期を行う。
        """
        logger.info("Setting up bot...")
        self._logged_in.set()

        # Cogのロード
        for extension in EXTENSIONS:
            try:
                await self.load_extension(extension)
                logger.info("Loaded extension", extension=extension)
            except Exception:
                logger.exception("Failed to load extension", extension=extension)

        # コマンドツリーの同期
        # 開発用ギルドIDが指定されている場合は、そのギルドのみに同期
        if self.config.discord_guild_id:
            guild = discord.Object(id=self.config.discord_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            logger.info(
                "Synced command tree to guild", guild_id=self.config.discord_guild_id
            )
        else:
            await self.tree.sync()
            logger.info("Synced command tree globally")

    async def on_ready(self) -> None:
        """Bot準備完了時のイベントハンドラー."""
        if self.user is None:
            logger.error("Bot user is None")
            return

        logger.info("Bot is ready", bot_name=self.user.name, bot_id=self.user.id)
        logger.info("Connected to guilds", guild_count=len(self.guilds))


def is_allowed_user():
    """
    許可されたユーザーかどうかをチェックするデコレーター.

    Returns:
        app_commandsのcheck関数
    """

    async def predicate(interaction: discord.Interaction) -> bool:
        """
        ユーザーが許可されているかチェックする.

        Args:
            interaction: Discord Interaction

        Returns:
            許可されている場合True
        """
        if not isinstance(interaction.client, HookBridgeBot):
            logger.error("Client is not HookBridgeBot")
            return False

        is_allowed = interaction.client.is_allowed(interaction.user.id)

        if not is_allowed:
            logger.warning(
                "Unauthorized user attempted to use command",
                user_name=interaction.user.name,
                user_id=interaction.user.id,
            )

        return is_allowed

    return app_commands.check(predicate)
