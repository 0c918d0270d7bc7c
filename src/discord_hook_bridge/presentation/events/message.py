"""Message event handler."""

from __future__ import annotations

from pathlib import PurePath
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from discord_hook_bridge.application.events import TerminalGoneError
from discord_hook_bridge.application.models import MessageRef
from discord_hook_bridge.application.rendering import extract_terminal_target
from discord_hook_bridge.application.requests import (
    AlreadyResolvedError,
    AnswerSource,
    InvalidActionError,
    PromptNotFoundError,
    StaleRequestError,
)
from discord_hook_bridge.application.routing import (
    AmbiguousRouteError,
    RouteNotFoundError,
)
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.tmux import TmuxError
from discord_hook_bridge.infrastructure.voice import TranscriptionError
from discord_hook_bridge.presentation.notices import NOTICE_ERROR, describe_error

if TYPE_CHECKING:
    from discord_hook_bridge.presentation.bot import HookBridgeBot

logger = get_logger(__name__)

# 回答として扱うときに利用者へ返す例外
_ANSWER_ERRORS = (
    PromptNotFoundError,
    AlreadyResolvedError,
    StaleRequestError,
    InvalidActionError,
)


def find_voice_attachment(message: discord.Message) -> discord.Attachment | None:
    """メッセージに添付された音声ファイルを返す."""
    for attachment in message.attachments:
        if attachment.content_type and attachment.content_type.startswith("audio/"):
            return attachment
    return None


class MessageEventHandler(commands.Cog):
    """メッセージイベントハンドラー."""

    def __init__(self, bot: HookBridgeBot) -> None:
        """
        Initialize MessageEventHandler.

        Args:
            bot: Discord Bot インスタンス
        """
        self.bot = bot

    async def _read_text(
        self, message: discord.Message
    ) -> tuple[str, AnswerSource] | None:
        """
        メッセージの本文（音声なら文字起こし結果）を取り出す.

        Returns:
            本文と入力元（処理対象外の場合None）
        """
        attachment = find_voice_attachment(message)
        if attachment is None:
            return message.content, AnswerSource.TEXT

        if not self.bot.transcriber.enabled:
            logger.debug("Ignoring voice message, transcriber not configured")
            return None

        try:
            audio = await attachment.read()
            suffix = PurePath(attachment.filename).suffix or ".ogg"
            text = await self.bot.transcriber.transcribe(audio, suffix=suffix)
        except (TranscriptionError, discord.HTTPException) as e:
            logger.warning("Voice transcription failed", error=str(e))
            await message.reply(describe_error(e))
            return None

        logger.info("Transcribed voice message", length=len(text))
        return text, AnswerSource.VOICE

    async def _referenced_target(self, message: discord.Message) -> str | None:
        """返信先メッセージの宛先行から端末を取り出す."""
        reference = message.reference
        if reference is None or reference.message_id is None:
            return None

        referenced = reference.resolved
        if not isinstance(referenced, discord.Message):
            try:
                referenced = await message.channel.fetch_message(reference.message_id)
            except discord.HTTPException:
                logger.warning(
                    "Failed to fetch referenced message",
                    message_id=reference.message_id,
                )
                return None
        return extract_terminal_target(referenced.content)

    async def _answer_prompt(
        self,
        message: discord.Message,
        prompt_id: int,
        text: str,
        source: AnswerSource,
    ) -> None:
        """プロンプトへの返信を回答として処理する."""
        try:
            resolution = await self.bot.coordinator.answer_with_text(
                prompt_id, text, source
            )
        except _ANSWER_ERRORS as e:
            logger.info(
                "Text answer rejected",
                message_id=prompt_id,
                reason=type(e).__name__,
            )
            await message.reply(describe_error(e))
            return
        await message.reply(resolution.notice)

    async def _relay(
        self,
        message: discord.Message,
        terminal_target: str,
        text: str,
        source: AnswerSource,
    ) -> None:
        """テキストを端末に入力する（未回答の質問があればその回答にする）."""
        question = self.bot.coordinator.find_open_question(terminal_target)
        if question is not None:
            await self._answer_prompt(message, question.message_id, text, source)
            return

        if source == AnswerSource.VOICE:
            text = f"{self.bot.config.voice_prefix} {text}"
        ack = MessageRef(channel_id=message.channel.id, message_id=message.id)
        try:
            await self.bot.events.relay_input(terminal_target, text, ack)
        except TerminalGoneError as e:
            logger.info("Relay target is gone", terminal_target=terminal_target)
            await message.reply(describe_error(e))
        except TmuxError as e:
            logger.warning(
                "Failed to relay input",
                terminal_target=terminal_target,
                stderr=e.stderr,
            )
            await message.reply(describe_error(e))
        except ValueError:
            logger.debug("Ignoring empty input", terminal_target=terminal_target)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        """
        メッセージ受信イベントハンドラー.

        - プロンプトへの返信: テキスト（音声）で回答する
        - 通知への返信: 通知の宛先の端末に入力する
        - それ以外: チャンネルに紐づく唯一の端末に入力する

        Args:
            message: 受信したメッセージ
        """
        # Bot自身のメッセージは無視
        if message.author.bot:
            return

        # 許可されたユーザー以外のメッセージは無視
        if not self.bot.is_allowed(message.author.id):
            logger.debug(
                "Ignoring message from unauthorized user",
                user_name=message.author.name,
                user_id=message.author.id,
            )
            return

        try:
            read = await self._read_text(message)
            if read is None:
                return
            text, source = read
            if not text.strip():
                return

            reference = message.reference
            if reference is not None and reference.message_id is not None:
                if self.bot.coordinator.is_prompt(reference.message_id):
                    await self._answer_prompt(
                        message, reference.message_id, text, source
                    )
                    return
                target = await self._referenced_target(message)
                if target is not None:
                    await self._relay(message, target, text, source)
                    return

            try:
                target = self.bot.routes.target_for_channel(
                    message.channel.id, self.bot.registry
                )
            except RouteNotFoundError:
                # 紐づいていないチャンネルの会話は無視する
                return
            except AmbiguousRouteError as e:
                await message.reply(describe_error(e))
                return

            logger.info(
                "Received message for terminal",
                terminal_target=target,
                channel_id=message.channel.id,
                source=source.value,
            )
            await self._relay(message, target, text, source)

        except Exception:
            logger.exception("Error handling message", message_id=message.id)
            await message.reply(NOTICE_ERROR)


async def setup(bot: HookBridgeBot) -> None:
    """
    Cogをセットアップする.

    Args:
        bot: Discord Bot インスタンス
    """
    await bot.add_cog(MessageEventHandler(bot))
