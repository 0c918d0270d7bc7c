"""Hook client invoked by the agent once per hook event."""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import ValidationError

from discord_hook_bridge.application.models import (
    PendingRequest,
    PermissionRequestEvent,
    RequestStatus,
    hook_output,
    parse_hook_event,
)
from discord_hook_bridge.infrastructure.config import HookConfig
from discord_hook_bridge.infrastructure.logging import configure_logging, get_logger
from discord_hook_bridge.infrastructure.store import (
    CorruptRequestError,
    FileRequestStore,
    RequestNotFoundError,
)
from discord_hook_bridge.infrastructure.tmux import TmuxTarget

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from discord_hook_bridge.infrastructure.store import RequestStore

logger = get_logger(__name__)

PERMISSION_EVENT = "PermissionRequest"


class PollOutcome(str, Enum):
    """回答待ちの結果."""

    ANSWERED = "answered"
    CANCELLED = "cancelled"
    MISSING = "missing"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class PollResult:
    """回答待ちの結果と判定内容."""

    outcome: PollOutcome
    decision: dict[str, Any] | None = None


def enrich_payload(
    raw: dict[str, Any], env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """
    フックのJSONに端末の宛先を追加する.

    Args:
        raw: エージェントから受け取ったJSON
        env: 環境変数（省略時はos.environ）

    Returns:
        terminal_targetを追加したJSON（tmux外ならそのまま）
    """
    env = os.environ if env is None else env
    if raw.get("terminal_target"):
        return raw
    target = TmuxTarget.from_env(env.get("TMUX"), env.get("TMUX_PANE"))
    if target is None:
        return raw
    return {**raw, "terminal_target": str(target)}


class HookClient:
    """
    フック1回分の処理を行うクライアント.

    判定が必要なイベントはリクエストファイルを作成してデーモンに通知し、
    ファイルが回答済みになるまでポーリングする。それ以外のイベントは
    デーモンに転送するだけで終わる。どの失敗も「判定なし」として扱う。
    """

    def __init__(
        self,
        config: HookConfig,
        store: RequestStore | None = None,
        *,
        pid: int | None = None,
    ) -> None:
        """
        Initialize HookClient.

        Args:
            config: フッククライアント設定
            store: リクエストストア（省略時は設定のディレクトリ）
            pid: リクエストに記録するPID（省略時は自プロセス）
        """
        self._config = config
        self._store = store or FileRequestStore(config.pending_dir)
        self._pid = os.getpid() if pid is None else pid

    async def _post(
        self,
        path: str,
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """
        デーモンにPOSTする（失敗はログのみ）.

        Returns:
            2xxの応答を受け取った場合True
        """
        url = f"{self._config.api_base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self._config.notify_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, params=params, json=payload) as resp:
                    if resp.status >= 300:
                        body = await resp.text()
                        logger.warning(
                            "Daemon rejected request",
                            path=path,
                            status=resp.status,
                            body=body[:500],
                        )
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Failed to reach daemon", path=path, error=str(e))
            return False

    async def notify_pending(self, request_id: str) -> bool:
        """デーモンに新しいリクエストの表示を依頼する."""
        return await self._post("/pending/notify", params={"id": request_id})

    async def notify_cancel(self, request_id: str) -> bool:
        """デーモンにリクエストの取り消しを伝える."""
        return await self._post("/pending/cancel", params={"id": request_id})

    async def forward_event(self, raw: dict[str, Any]) -> bool:
        """判定の不要なイベントをデーモンに転送する."""
        event_name = str(raw.get("hook_event_name", ""))
        return await self._post(f"/hook/{event_name}", payload=raw)

    def create_request(
        self, event: PermissionRequestEvent, raw: dict[str, Any]
    ) -> PendingRequest:
        """リクエストファイルを作成する."""
        request = PendingRequest(
            kind=event.kind,
            payload=raw,
            session_id=event.session_id,
            terminal_target=event.terminal_target,
            working_directory=event.cwd,
            origin_pid=self._pid,
        )
        self._store.create(request)
        logger.info(
            "Pending request created",
            request_id=request.id,
            kind=request.kind.value,
            tool_name=event.tool_name,
            session_id=event.session_id,
        )
        return request

    async def wait_for_decision(
        self, request_id: str, stop: asyncio.Event | None = None
    ) -> PollResult:
        """
        リクエストファイルが決着するまでポーリングする.

        Args:
            request_id: リクエストID
            stop: セットされたら待機をやめるイベント

        Returns:
            回答待ちの結果
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.hook_timeout
        while True:
            try:
                request = self._store.read(request_id)
            except RequestNotFoundError:
                return PollResult(PollOutcome.MISSING)
            except CorruptRequestError:
                logger.warning("Pending request is unreadable", request_id=request_id)
            else:
                if request.status == RequestStatus.ANSWERED and request.decision:
                    return PollResult(PollOutcome.ANSWERED, request.decision)
                if request.status == RequestStatus.CANCELLED:
                    return PollResult(PollOutcome.CANCELLED)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return PollResult(PollOutcome.TIMEOUT)
            delay = min(self._config.poll_interval, remaining)
            if stop is None:
                await asyncio.sleep(delay)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            return PollResult(PollOutcome.INTERRUPTED)

    async def request_decision(
        self, event: PermissionRequestEvent, raw: dict[str, Any]
    ) -> dict[str, Any] | None:
        """
        判定リクエストを作成して回答を待つ.

        Returns:
            エージェントに出力するJSON（判定なしの場合None）
        """
        request = self.create_request(event, raw)
        await self.notify_pending(request.id)

        stop = asyncio.Event()
        with _interrupt_handlers(stop):
            result = await self.wait_for_decision(request.id, stop)

        logger.info(
            "Finished waiting for decision",
            request_id=request.id,
            outcome=result.outcome.value,
        )
        if result.outcome == PollOutcome.ANSWERED and result.decision is not None:
            self._store.delete(request.id)
            return hook_output(result.decision)
        if result.outcome == PollOutcome.CANCELLED:
            self._store.delete(request.id)
        elif result.outcome in (PollOutcome.TIMEOUT, PollOutcome.INTERRUPTED):
            # ファイルの片付けとプロンプトの固定表示はデーモンに任せる
            await self.notify_cancel(request.id)
        return None

    async def handle(self, raw: dict[str, Any]) -> dict[str, Any] | None:
        """
        フックイベント1件を処理する.

        Args:
            raw: エージェントから受け取ったJSON

        Returns:
            エージェントに出力するJSON（出力しない場合None）
        """
        raw = enrich_payload(raw)
        event_name = raw.get("hook_event_name")
        if not event_name:
            logger.warning("Hook payload has no event name")
            return None

        if event_name != PERMISSION_EVENT:
            await self.forward_event(raw)
            return None

        try:
            event = parse_hook_event(raw)
        except ValidationError:
            logger.exception("Invalid permission request payload")
            return None
        if not isinstance(event, PermissionRequestEvent):
            return None
        return await self.request_decision(event, raw)


@contextmanager
def _interrupt_handlers(stop: asyncio.Event) -> Iterator[None]:
    """SIGINT/SIGTERMを受けたらイベントをセットする."""
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    try:
        for sig in signals:
            loop.add_signal_handler(sig, stop.set)
    except (NotImplementedError, RuntimeError):
        # Windowsやメインスレッド以外ではシグナルを捕捉しない
        logger.debug("Signal handlers unavailable")
        yield
        return
    try:
        yield
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


async def main(stdin_text: str) -> int:
    """
    フッククライアントのメインエントリポイント.

    stdoutはエージェントへの判定結果の出力先なので、それ以外は書き込まない。
    どんな失敗でも終了コード0（判定なし）で終わる.

    Args:
        stdin_text: エージェントから受け取った標準入力

    Returns:
        終了コード
    """
    try:
        config = HookConfig()
    except ValidationError as e:
        print(f"discord-hook-bridge-hook: invalid configuration: {e}", file=sys.stderr)
        return 0

    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
        log_file="hook.log",
        error_file="hook-error.log",
    )

    try:
        raw = json.loads(stdin_text)
    except json.JSONDecodeError:
        logger.warning("Hook stdin is not valid JSON", length=len(stdin_text))
        return 0
    if not isinstance(raw, dict):
        logger.warning("Hook stdin is not a JSON object")
        return 0

    try:
        output = await HookClient(config).handle(raw)
    except Exception:
        logger.exception("Hook failed")
        return 0

    if output is not None:
        sys.stdout.write(json.dumps(output, ensure_ascii=False))
        sys.stdout.flush()
    return 0


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    sys.exit(asyncio.run(main(sys.stdin.read())))


if __name__ == "__main__":
    run()
