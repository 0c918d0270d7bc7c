"""User-facing replies for coordinator errors."""

from __future__ import annotations

from discord_hook_bridge.application.events import (
    SessionNotFoundError,
    TerminalGoneError,
)
from discord_hook_bridge.application.requests import (
    AlreadyResolvedError,
    InvalidActionError,
    PromptNotFoundError,
    StaleRequestError,
)
from discord_hook_bridge.application.routing import (
    AmbiguousRouteError,
    RouteNotFoundError,
)
from discord_hook_bridge.infrastructure.tmux import ModeSwitchError, TmuxError
from discord_hook_bridge.infrastructure.voice import TranscriptionError

NOTICE_UNAUTHORIZED = "⛔ 操作する権限がありません。"
NOTICE_EXPIRED = "⌛ このプロンプトは期限切れです。"
NOTICE_ALREADY_ANSWERED = "⚠️ 既に回答済みです。"
NOTICE_STALE = "⚠️ このリクエストは既に無効です（端末側で処理済み）。"
NOTICE_ERROR = "❌ エラーが発生しました。ログを確認してください。"


def describe_error(error: Exception) -> str:
    """
    例外を利用者向けのメッセージに変換する.

    Args:
        error: 発生した例外

    Returns:
        Discordに表示するメッセージ
    """
    if isinstance(error, PromptNotFoundError):
        return NOTICE_EXPIRED
    if isinstance(error, AlreadyResolvedError):
        return NOTICE_ALREADY_ANSWERED
    if isinstance(error, StaleRequestError):
        return NOTICE_STALE
    if isinstance(error, InvalidActionError):
        return f"❌ {error}"
    if isinstance(error, TerminalGoneError):
        return f"⚠️ 端末 `{error.terminal_target}` は既に終了しています。"
    if isinstance(error, SessionNotFoundError):
        return f"⚠️ 端末 `{error.terminal_target}` のセッションが見つかりません。"
    if isinstance(error, ModeSwitchError):
        return f"❌ 権限モード `{error.mode}` に切り替えられませんでした: {error.reason}"
    if isinstance(error, AmbiguousRouteError):
        return (
            "⚠️ このチャンネルには複数の端末が紐づいています。"
            "送信先のメッセージに返信してください。"
        )
    if isinstance(error, RouteNotFoundError):
        return (
            "⚠️ このチャンネルには端末が紐づいていません。"
            "`/route bind` で設定してください。"
        )
    if isinstance(error, TmuxError):
        return f"❌ 端末の操作に失敗しました: {error.stderr.strip() or error}"
    if isinstance(error, TranscriptionError):
        return f"❌ 音声の文字起こしに失敗しました: {error}"
    return NOTICE_ERROR
