"""Main entry point for the Discord Hook Bridge daemon."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from discord_hook_bridge.application.events import HookEventService
from discord_hook_bridge.application.mirrors import ReactionTracker
from discord_hook_bridge.application.recovery import RecoveryScanner
from discord_hook_bridge.application.requests import RequestCoordinator
from discord_hook_bridge.application.routing import RouteService
from discord_hook_bridge.application.sessions import SessionRegistry
from discord_hook_bridge.application.transcript import TranscriptTracker
from discord_hook_bridge.infrastructure.config import get_config
from discord_hook_bridge.infrastructure.logging import configure_logging, get_logger
from discord_hook_bridge.infrastructure.store import FileRequestStore
from discord_hook_bridge.infrastructure.tmux import TmuxClient
from discord_hook_bridge.infrastructure.voice import VoiceTranscriber


async def main() -> None:
    """デーモンのメインエントリポイント."""
    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()

    # 構造化ロギングを設定
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger = get_logger(__name__)

    logger.info("Starting Discord Hook Bridge...")

    # シャットダウンイベント
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        if shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    # シグナルハンドラーを登録（SIGINT + SIGTERM）
    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))

    api = None
    coordinator: RequestCoordinator | None = None
    bot = None
    bot_task: asyncio.Task[None] | None = None
    shutdown_task: asyncio.Task[bool] | None = None

    try:
        logger.info("Configuration loaded", pending_dir=str(config.pending_dir))

        # サービスを初期化
        store = FileRequestStore(config.pending_dir)
        routes = RouteService(config)
        registry = SessionRegistry()
        transcript = TranscriptTracker()

        from discord_hook_bridge.presentation.api import BridgeApiServer
        from discord_hook_bridge.presentation.bot import HookBridgeBot

        # Botを初期化（送信窓口としてコーディネーターに渡すため先に作る）
        bot = HookBridgeBot(
            config=config,
            routes=routes,
            registry=registry,
            transcriber=VoiceTranscriber(config.voice_command),
        )

        coordinator = RequestCoordinator(
            store,
            bot,
            routes,
            registry,
            page_size=config.page_size,
            transcript=transcript,
        )
        events = HookEventService(
            coordinator,
            registry,
            routes,
            TmuxClient(config.tmux_command),
            bot,
            transcript,
            ReactionTracker(),
            projects_dir=config.agent_projects_dir,
        )

        # Botにサービスを設定
        bot.coordinator = coordinator
        bot.events = events

        logger.info("Services initialized")

        # 前回の実行で残ったリクエストを再開（API受付より前に行う）
        RecoveryScanner(store, coordinator).scan()

        api = BridgeApiServer(
            coordinator,
            events,
            routes,
            registry,
            host=config.bridge_api_host,
            port=config.bridge_api_port,
        )
        await api.start()

        # Botを起動（タスクとして）
        bot_task = asyncio.create_task(bot.start(config.discord_bot_token))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        # bot_taskの完了 or シャットダウンイベントを待つ
        done, pending = await asyncio.wait(
            [bot_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # bot_taskが例外で終了した場合は例外を伝播
        if bot_task in done:
            bot_task.result()  # 例外があればここでraise

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        # クリーンアップ（API → 表示処理 → Bot の順序で実行）
        # リクエストファイルは残し、次回起動時の走査で再開する
        if api is not None:
            try:
                await api.stop()
            except Exception:
                logger.critical("Error during API shutdown", exc_info=True)

        if coordinator is not None:
            try:
                await asyncio.wait_for(coordinator.wait_scheduled(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Pending prompt rendering timed out")
            except Exception:
                logger.exception("Error while waiting for prompt rendering")

        if bot is not None:
            try:
                await asyncio.wait_for(bot.close(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Bot close timed out")
            except Exception:
                logger.exception("Error during bot cleanup")

        # 残タスクのキャンセル
        for task in (bot_task, shutdown_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        # シグナルハンドラーの解除
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, signal.SIG_DFL)

        logger.info("Shutdown complete")

        # ログのフラッシュと確実なクローズ
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
