"""Discord button views built from control layouts."""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from discord_hook_bridge.application.rendering import MAX_ROW_WIDTH, ControlStyle

if TYPE_CHECKING:
    from discord_hook_bridge.application.rendering import Control, ControlRows

# Discordのコンポーネント制限
MAX_ROWS = 5
MAX_COMPONENTS = MAX_ROWS * MAX_ROW_WIDTH
MAX_LABEL_LENGTH = 80

# ボタンはグローバルなインタラクションリスナーで処理するため、Viewは短命でよい
VIEW_TIMEOUT = 60.0

_STYLES = {
    ControlStyle.PRIMARY: discord.ButtonStyle.primary,
    ControlStyle.SECONDARY: discord.ButtonStyle.secondary,
    ControlStyle.SUCCESS: discord.ButtonStyle.success,
    ControlStyle.DANGER: discord.ButtonStyle.danger,
}


def _label(text: str) -> str:
    if len(text) <= MAX_LABEL_LENGTH:
        return text
    return text[: MAX_LABEL_LENGTH - 1] + "…"


def fit_rows(rows: ControlRows) -> ControlRows:
    """
    レイアウトをDiscordの制限（5行×5個）に収める.

    制限内ならそのまま返し、超える場合は全ボタンを5個ずつ詰め直して
    25個までに切り詰める.
    """
    rows = [row for row in rows if row]
    if len(rows) <= MAX_ROWS and all(len(row) <= MAX_ROW_WIDTH for row in rows):
        return rows
    flat = [control for row in rows for control in row][:MAX_COMPONENTS]
    return [flat[i : i + MAX_ROW_WIDTH] for i in range(0, len(flat), MAX_ROW_WIDTH)]


class ControlView(discord.ui.View):
    """
    コントロールレイアウトを表示するだけのView.

    ボタンのcustom_idにアクションIDを持たせ、押下はBotの
    on_interactionリスナーで処理する（再起動後も同じIDで処理できる）.
    """

    def __init__(self, rows: ControlRows, *, timeout: float = VIEW_TIMEOUT) -> None:
        """
        Initialize ControlView.

        Args:
            rows: ボタンのレイアウト
            timeout: Viewのタイムアウト秒数
        """
        super().__init__(timeout=timeout)
        seen: set[str] = set()
        for row_index, row in enumerate(fit_rows(rows)):
            for control in row:
                self.add_item(self._button(control, row_index, seen))

    @staticmethod
    def _button(
        control: Control, row: int, seen: set[str]
    ) -> discord.ui.Button[ControlView]:
        custom_id = control.action
        # 無効なボタンは同じIDになり得るので連番で一意にする
        if custom_id in seen:
            custom_id = f"{custom_id}:{len(seen)}"
        seen.add(custom_id)
        return discord.ui.Button(
            label=_label(control.label),
            style=_STYLES[control.style],
            custom_id=custom_id,
            disabled=control.disabled,
            row=row,
        )


def build_view(rows: ControlRows | None) -> discord.ui.View | None:
    """
    レイアウトからViewを作る.

    Returns:
        View（ボタンがない場合None）
    """
    if not rows or not any(rows):
        return None
    return ControlView(rows)
