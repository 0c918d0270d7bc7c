"""Terminal boundary backed by tmux."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from discord_hook_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

# paste-bufferで使うバッファ名
PASTE_BUFFER = "discord-hook-bridge"

# エージェントが待機中のときペインタイトルの先頭に付く文字
IDLE_TITLE_MARK = "✳"

# 正規化で改行に置き換える文字・削除する文字
_LINE_BREAKS = ("\r\n", "\r", "\u2028", "\u2029", "\u0085")
_ZERO_WIDTH = ("\u200b", "\u200c", "\u200d", "\u200e", "\u200f", "\ufeff")

# 権限モードの表示を探すペイン末尾の行数
MODE_LINES = 5

# 権限モードを切り替えるキー（Shift+Tab）と押す回数の上限
MODE_SWITCH_KEY = "BTab"
MAX_MODE_SWITCHES = 10

# 画面表示と権限モードの対応（上から順に判定する）
_MODE_MARKERS = (
    ("bypass", "bypass"),
    ("plan", "plan"),
    ("accept edits", "auto"),
)
DEFAULT_MODE = "default"
PERMISSION_MODES = (DEFAULT_MODE, *(mode for _, mode in _MODE_MARKERS))


class TmuxError(Exception):
    """tmuxコマンドが失敗した場合の例外."""

    def __init__(self, args: list[str], stderr: str) -> None:
        """
        Initialize TmuxError.

        Args:
            args: 実行したtmuxの引数
            stderr: 標準エラー出力
        """
        super().__init__(f"tmux {' '.join(args)} failed: {stderr.strip()}")
        self.command_args = args
        self.stderr = stderr


class ModeSwitchError(Exception):
    """権限モードを切り替えられなかった場合の例外."""

    def __init__(self, mode: str, reason: str) -> None:
        """
        Initialize ModeSwitchError.

        Args:
            mode: 切り替え先のモード
            reason: 失敗の理由
        """
        super().__init__(f"Cannot switch to mode {mode!r}: {reason}")
        self.mode = mode
        self.reason = reason


@dataclass(frozen=True)
class TmuxTarget:
    """tmuxペインの宛先（"%3@/tmp/tmux-1000/default"形式）."""

    pane_id: str
    socket: str = ""

    @classmethod
    def parse(cls, value: str) -> TmuxTarget:
        """
        文字列から宛先をパースする.

        Raises:
            ValueError: 空文字列の場合
        """
        if not value:
            msg = "empty tmux target"
            raise ValueError(msg)
        pane_id, _, socket = value.partition("@")
        return cls(pane_id=pane_id, socket=socket)

    @classmethod
    def from_env(cls, tmux: str | None, tmux_pane: str | None) -> TmuxTarget | None:
        """
        $TMUX と $TMUX_PANE から宛先を組み立てる.

        tmux外で実行されている場合はNoneを返す.
        """
        if not tmux or not tmux_pane:
            return None
        socket = tmux.split(",", 1)[0]
        return cls(pane_id=tmux_pane, socket=socket)

    def __str__(self) -> str:
        if self.socket:
            return f"{self.pane_id}@{self.socket}"
        return self.pane_id


def same_pane(a: str, b: str) -> bool:
    """2つの宛先文字列が同じペインを指すかどうか（ソケットは無視）."""
    if not a or not b:
        return False
    return a.partition("@")[0] == b.partition("@")[0]


def normalize_text(text: str) -> str:
    """ペインに貼り付けるテキストを正規化する."""
    for sep in _LINE_BREAKS:
        text = text.replace(sep, "\n")
    for ch in _ZERO_WIDTH:
        text = text.replace(ch, "")
    return text.rstrip("\n")


def detect_permission_mode(content: str) -> str:
    """
    ペインの表示内容からエージェントの権限モードを判定する.

    会話の本文に含まれる単語を拾わないよう、モード表示のある末尾の
    数行だけを見る.
    """
    bottom = "\n".join(content.splitlines()[-MODE_LINES:]).lower()
    for marker, mode in _MODE_MARKERS:
        if marker in bottom:
            return mode
    return DEFAULT_MODE


class TmuxClient:
    """tmuxコマンドのラッパー."""

    def __init__(
        self,
        command: str = "tmux",
        *,
        paste_delay: float = 0.5,
        submit_delay: float = 1.0,
        mode_switch_delay: float = 0.5,
    ) -> None:
        """
        Initialize TmuxClient.

        Args:
            command: tmux実行ファイル
            paste_delay: 入力クリアから貼り付けまでの待機秒数
            submit_delay: 貼り付けから送信キーまでの待機秒数
            mode_switch_delay: 権限モードの切り替えキーから再判定までの待機秒数
        """
        self.command = command
        self.paste_delay = paste_delay
        self.submit_delay = submit_delay
        self.mode_switch_delay = mode_switch_delay

    async def _run(self, target: TmuxTarget, *args: str) -> str:
        """
        tmuxを実行して標準出力を返す.

        Raises:
            TmuxError: 終了コードが0以外の場合
        """
        argv = [*args]
        if target.socket:
            argv = ["-S", target.socket, *argv]

        process = await asyncio.create_subprocess_exec(
            self.command,
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise TmuxError(argv, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace")

    async def session_exists(self, target: TmuxTarget) -> bool:
        """ペインがまだ存在するかどうかを返す."""
        try:
            await self._run(target, "has-session", "-t", target.pane_id)
        except TmuxError:
            return False
        except OSError:
            logger.exception("Failed to run tmux", command=self.command)
            return False
        return True

    async def inject_text(self, target: TmuxTarget, text: str) -> None:
        """
        ブラケットペーストでペインにテキストを入力して送信する.

        Raises:
            ValueError: 正規化後のテキストが空の場合
            TmuxError: tmuxコマンドが失敗した場合
        """
        text = normalize_text(text)
        if not text:
            msg = "empty text after normalization"
            raise ValueError(msg)

        # 入力中の内容をクリア
        await self._run(target, "send-keys", "-t", target.pane_id, "C-u")
        await asyncio.sleep(self.paste_delay)
        await self._run(target, "set-buffer", "-b", PASTE_BUFFER, "--", text)
        await self._run(
            target, "paste-buffer", "-t", target.pane_id, "-b", PASTE_BUFFER, "-r", "-p"
        )
        await asyncio.sleep(self.submit_delay)
        await self._run(target, "send-keys", "-t", target.pane_id, "C-m")
        logger.info("Injected text", terminal_target=str(target), length=len(text))

    async def send_keys(self, target: TmuxTarget, *keys: str) -> None:
        """ペインにキーを送る."""
        await self._run(target, "send-keys", "-t", target.pane_id, *keys)

    async def capture_pane(self, target: TmuxTarget) -> str:
        """ペインの表示内容を取得する."""
        output = await self._run(
            target, "capture-pane", "-t", target.pane_id, "-p", "-J"
        )
        return output.rstrip("\n")

    async def pane_title(self, target: TmuxTarget) -> str:
        """ペインのタイトルを取得する."""
        output = await self._run(
            target, "display-message", "-p", "-t", target.pane_id, "#{pane_title}"
        )
        return output.strip()

    async def is_idle(self, target: TmuxTarget) -> bool:
        """エージェントが入力待ち（タイトルが✳で始まる）かどうかを返す."""
        return (await self.pane_title(target)).startswith(IDLE_TITLE_MARK)

    async def permission_mode(self, target: TmuxTarget) -> tuple[str, str]:
        """
        ペインの表示から現在の権限モードを判定する.

        Returns:
            (モード, ペインの表示内容)
        """
        content = await self.capture_pane(target)
        return detect_permission_mode(content), content

    async def switch_permission_mode(self, target: TmuxTarget, mode: str) -> str:
        """
        Shift+Tabを繰り返し送って権限モードを切り替える.

        Args:
            target: 宛先
            mode: 切り替え先のモード

        Returns:
            切り替え後のモード

        Raises:
            ModeSwitchError: モードが切り替えの巡回に含まれない場合
            TmuxError: tmuxコマンドが失敗した場合
        """
        start, _ = await self.permission_mode(target)
        if start == mode:
            return start

        for presses in range(1, MAX_MODE_SWITCHES + 1):
            await self.send_keys(target, MODE_SWITCH_KEY)
            await asyncio.sleep(self.mode_switch_delay)
            current, _ = await self.permission_mode(target)
            if current == mode:
                logger.info(
                    "Switched permission mode",
                    terminal_target=str(target),
                    mode=mode,
                    presses=presses,
                )
                return current
            if presses > 1 and current == start:
                raise ModeSwitchError(mode, f"not in the cycle (back to {start!r})")

        raise ModeSwitchError(mode, f"not reached after {MAX_MODE_SWITCHES} presses")
