"""Speech-to-text boundary using an external transcriber command."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

from discord_hook_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

# コマンド引数中で音声ファイルのパスに置き換えるプレースホルダー
INPUT_PLACEHOLDER = "{input}"


class TranscriptionError(Exception):
    """文字起こしに失敗した場合の例外."""


class VoiceTranscriber:
    """
    外部コマンドで音声を文字起こしする.

    コマンド引数に ``{input}`` が含まれていればファイルパスに置き換え、
    含まれていなければ末尾に追加する。コマンドの標準出力を結果とする。
    """

    def __init__(self, command: list[str], *, timeout: float = 120.0) -> None:
        """
        Initialize VoiceTranscriber.

        Args:
            command: 文字起こしコマンド（空なら無効）
            timeout: コマンドのタイムアウト秒数
        """
        self.command = command
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        """文字起こしが設定されているかどうか."""
        return bool(self.command)

    def _build_argv(self, path: Path) -> list[str]:
        if any(INPUT_PLACEHOLDER in arg for arg in self.command):
            return [arg.replace(INPUT_PLACEHOLDER, str(path)) for arg in self.command]
        return [*self.command, str(path)]

    async def transcribe(self, audio: bytes, *, suffix: str = ".ogg") -> str:
        """
        音声データを文字起こしする.

        Args:
            audio: 音声ファイルの内容
            suffix: 一時ファイルの拡張子

        Returns:
            文字起こし結果（前後の空白は除去）

        Raises:
            TranscriptionError: 未設定・コマンド失敗・タイムアウトの場合
        """
        if not self.enabled:
            msg = "音声入力は設定されていません"
            raise TranscriptionError(msg)

        with tempfile.TemporaryDirectory(prefix="discord-hook-bridge-") as tmp_dir:
            path = Path(tmp_dir) / f"voice{suffix}"
            path.write_bytes(audio)
            argv = self._build_argv(path)

            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                msg = f"文字起こしコマンドを起動できません: {e}"
                raise TranscriptionError(msg) from e

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                msg = "文字起こしがタイムアウトしました"
                raise TranscriptionError(msg) from None

        if process.returncode != 0:
            logger.warning(
                "Transcriber exited with error",
                returncode=process.returncode,
                stderr=stderr.decode(errors="replace")[:500],
            )
            msg = f"文字起こしコマンドが失敗しました (exit {process.returncode})"
            raise TranscriptionError(msg)

        text = stdout.decode(errors="replace").strip()
        logger.info("Transcribed voice message", length=len(text))
        return text
