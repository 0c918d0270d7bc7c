"""Terminal control commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from discord_hook_bridge.application.events import (
    SessionNotFoundError,
    TerminalGoneError,
)
from discord_hook_bridge.application.rendering import (
    PROJECT_MARK,
    TARGET_MARK,
    project_name,
)
from discord_hook_bridge.application.routing import (
    AmbiguousRouteError,
    RouteNotFoundError,
)
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.tmux import (
    PERMISSION_MODES,
    ModeSwitchError,
    TmuxError,
)
from discord_hook_bridge.presentation.bot import is_allowed_user
from discord_hook_bridge.presentation.notices import NOTICE_ERROR, describe_error

if TYPE_CHECKING:
    from discord_hook_bridge.presentation.bot import HookBridgeBot

logger = get_logger(__name__)

# コードブロックの囲み分を差し引いた表示上限
CAPTURE_MARGIN = 16

# 再開候補の一覧に表示する要約の文字数
RESUME_SUMMARY_LENGTH = 80

# オートコンプリートの選択肢の上限（Discordの制限）
MAX_AUTOCOMPLETE_CHOICES = 25
MAX_CHOICE_NAME = 100

_TERMINAL_ERRORS = (
    RouteNotFoundError,
    AmbiguousRouteError,
    TerminalGoneError,
    SessionNotFoundError,
    ModeSwitchError,
    TmuxError,
)


def tail_text(text: str, limit: int) -> str:
    """末尾が見えるように先頭側を切り詰める."""
    if len(text) <= limit:
        return text
    return "…" + text[-(limit - 1) :]


class TerminalCommands(commands.Cog):
    """端末操作コマンド群."""

    def __init__(self, bot: HookBridgeBot) -> None:
        """
        Initialize TerminalCommands.

        Args:
            bot: Discord Bot インスタンス
        """
        self.bot = bot

    terminal_group = app_commands.Group(name="terminal", description="端末の操作")

    def _resolve_target(
        self, interaction: discord.Interaction, target: str | None
    ) -> str:
        """
        操作対象の端末を決める（省略時はチャンネルに紐づく端末）.

        Raises:
            RouteNotFoundError: チャンネルに端末が紐づいていない場合
            AmbiguousRouteError: 複数の端末が紐づいている場合
        """
        if target:
            return target.strip()
        if interaction.channel_id is None:
            raise RouteNotFoundError(0)
        return self.bot.routes.target_for_channel(
            interaction.channel_id, self.bot.registry
        )

    @terminal_group.command(name="capture", description="端末の表示内容を取得")
    @app_commands.describe(target="端末（省略時はこのチャンネルの端末）")
    @is_allowed_user()
    async def capture(
        self, interaction: discord.Interaction, target: str | None = None
    ) -> None:
        """
        端末の表示内容をコードブロックで表示する.

        Args:
            interaction: Discord Interaction
            target: 端末の宛先
        """
        await interaction.response.defer(thinking=True)
        try:
            terminal_target = self._resolve_target(interaction, target)
            content = await self.bot.events.capture(terminal_target)
        except _TERMINAL_ERRORS as e:
            await interaction.followup.send(describe_error(e))
            return
        except Exception:
            logger.exception("Error capturing terminal")
            await interaction.followup.send(NOTICE_ERROR)
            return

        limit = self.bot.config.page_size - CAPTURE_MARGIN - len(terminal_target)
        body = tail_text(content, limit) or "(空)"
        await interaction.followup.send(
            f"{TARGET_MARK} {terminal_target}\n```\n{body}\n```"
        )

    @terminal_group.command(name="escape", description="端末にEscapeを送って中断する")
    @app_commands.describe(target="端末（省略時はこのチャンネルの端末）")
    @is_allowed_user()
    async def escape(
        self, interaction: discord.Interaction, target: str | None = None
    ) -> None:
        """
        端末にEscapeキーを送る.

        Args:
            interaction: Discord Interaction
            target: 端末の宛先
        """
        await interaction.response.defer(thinking=True)
        try:
            terminal_target = self._resolve_target(interaction, target)
            await self.bot.events.send_escape(terminal_target)
        except _TERMINAL_ERRORS as e:
            await interaction.followup.send(describe_error(e))
            return
        except Exception:
            logger.exception("Error sending escape")
            await interaction.followup.send(NOTICE_ERROR)
            return

        await interaction.followup.send(f"⏹️ Escapeを送信しました: `{terminal_target}`")

    @terminal_group.command(
        name="sessions", description="登録中のセッション一覧を表示"
    )
    @is_allowed_user()
    async def sessions(self, interaction: discord.Interaction) -> None:
        """
        セッションレジストリの内容を表示する.

        Args:
            interaction: Discord Interaction
        """
        records = self.bot.registry.all()
        if not records:
            await interaction.response.send_message(
                "登録中のセッションはありません。", ephemeral=True
            )
            return

        await interaction.response.defer(ephemeral=True, thinking=True)
        lines = ["**セッション一覧:**"]
        for record in records:
            idle = await self.bot.events.is_idle(record.terminal_target)
            status = {True: "✳️ 入力待ち", False: "⚙️ 実行中"}.get(idle, "❔ 不明")
            line = f"`{record.session_id[:8]}` {status}"
            if record.terminal_target:
                line += f" {TARGET_MARK} `{record.terminal_target}`"
            if record.working_directory:
                line += f" {PROJECT_MARK} {project_name(record.working_directory)}"
            lines.append(line)
        await interaction.followup.send("\n".join(lines), ephemeral=True)

    @terminal_group.command(
        name="perm", description="エージェントの権限モードを確認・切り替え"
    )
    @app_commands.describe(
        mode="切り替え先のモード（省略時は現在のモードを表示）",
        target="端末（省略時はこのチャンネルの端末）",
    )
    @app_commands.choices(
        mode=[app_commands.Choice(name=m, value=m) for m in PERMISSION_MODES]
    )
    @is_allowed_user()
    async def perm(
        self,
        interaction: discord.Interaction,
        mode: str | None = None,
        target: str | None = None,
    ) -> None:
        """
        権限モードを表示する、または切り替える.

        Args:
            interaction: Discord Interaction
            mode: 切り替え先のモード
            target: 端末の宛先
        """
        await interaction.response.defer(thinking=True)
        try:
            terminal_target = self._resolve_target(interaction, target)
            if mode is None:
                current, _ = await self.bot.events.permission_mode(terminal_target)
                message = f"🔐 現在の権限モード: `{current}`"
            else:
                current = await self.bot.events.switch_permission_mode(
                    terminal_target, mode
                )
                message = f"🔐 権限モードを `{current}` に切り替えました"
        except _TERMINAL_ERRORS as e:
            await interaction.followup.send(describe_error(e))
            return
        except Exception:
            logger.exception("Error handling permission mode")
            await interaction.followup.send(NOTICE_ERROR)
            return

        await interaction.followup.send(
            f"{message} ({TARGET_MARK} `{terminal_target}`)"
        )

    @terminal_group.command(name="resume", description="過去のセッションを再開")
    @app_commands.describe(
        session_id="再開するセッション（省略時は候補を表示）",
        target="端末（省略時はこのチャンネルの端末）",
    )
    @is_allowed_user()
    async def resume(
        self,
        interaction: discord.Interaction,
        session_id: str | None = None,
        target: str | None = None,
    ) -> None:
        """
        同じ作業ディレクトリの過去のセッションを一覧する、または再開する.

        Args:
            interaction: Discord Interaction
            session_id: 再開するセッションID
            target: 端末の宛先
        """
        await interaction.response.defer(thinking=True)
        try:
            terminal_target = self._resolve_target(interaction, target)
            if session_id:
                await self.bot.events.resume_session(terminal_target, session_id)
                await interaction.followup.send(
                    f"⏪ セッション `{session_id.strip()}` の再開を送信しました"
                )
                return
            sessions = self.bot.events.resumable_sessions(terminal_target)
        except _TERMINAL_ERRORS as e:
            await interaction.followup.send(describe_error(e))
            return
        except ValueError as e:
            await interaction.followup.send(f"❌ {e}")
            return
        except Exception:
            logger.exception("Error resuming session")
            await interaction.followup.send(NOTICE_ERROR)
            return

        if not sessions:
            await interaction.followup.send("再開できるセッションはありません。")
            return
        lines = ["**再開できるセッション:**"]
        for session in sessions:
            summary = " ".join(session.summary.split())
            lines.append(
                f"`{session.session_id}` {session.modified:%m/%d %H:%M} "
                f"{summary[:RESUME_SUMMARY_LENGTH]}"
            )
        text = "\n".join(lines)
        await interaction.followup.send(tail_text(text, self.bot.config.page_size))

    @resume.autocomplete("session_id")
    async def session_id_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> list[app_commands.Choice[str]]:
        """
        再開するセッションのオートコンプリート.

        Args:
            interaction: Discord Interaction
            current: 現在入力中のテキスト

        Returns:
            オートコンプリートの選択肢
        """
        try:
            terminal_target = self._resolve_target(interaction, None)
            sessions = self.bot.events.resumable_sessions(terminal_target)
        except _TERMINAL_ERRORS:
            return []
        except Exception:
            logger.exception("Error in session_id autocomplete")
            return []

        choices = []
        for session in sessions:
            if current and current not in session.session_id:
                continue
            summary = " ".join(session.summary.split())
            name = f"{session.modified:%m/%d %H:%M} {summary}"
            choices.append(
                app_commands.Choice(
                    name=name[:MAX_CHOICE_NAME], value=session.session_id
                )
            )
        # 最大25個まで返す（Discordの制限）
        return choices[:MAX_AUTOCOMPLETE_CHOICES]


async def setup(bot: HookBridgeBot) -> None:
    """
    Cogをセットアップする.

    Args:
        bot: Discord Bot インスタンス
    """
    await bot.add_cog(TerminalCommands(bot))
