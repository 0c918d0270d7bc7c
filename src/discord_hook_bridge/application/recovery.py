"""Startup scan that rebuilds in-memory state from the request store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import ValidationError

from discord_hook_bridge.application.models import RequestStatus
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.store import (
    CorruptRequestError,
    RequestNotFoundError,
)

if TYPE_CHECKING:
    from discord_hook_bridge.application.requests import RequestCoordinator
    from discord_hook_bridge.infrastructure.store import RequestStore

logger = get_logger(__name__)


@dataclass
class RecoveryReport:
    """起動時走査の結果."""

    resumed: int = 0
    rebuilt: int = 0
    deleted: int = 0
    skipped: int = 0


class RecoveryScanner:
    """
    起動時にリクエストストアを走査して処理を再開する.

    - pending: 表示処理をバックグラウンドで再実行する
    - sent: ミラーを再構築し、表示済みのボタンを再び操作可能にする
    - answered: フックが回収しなかった残骸として削除する
    - その他: ログに残してそのままにする
    """

    def __init__(self, store: RequestStore, coordinator: RequestCoordinator) -> None:
        """
        Initialize RecoveryScanner.

        Args:
            store: リクエストストア
            coordinator: 判定リクエストのコーディネーター
        """
        self._store = store
        self._coordinator = coordinator

    def scan(self) -> RecoveryReport:
        """
        全リクエストを走査する.

        HTTP APIが操作を受け付ける前に一度だけ呼ぶ（pendingの再処理は
        実行中のイベントループにタスクとして登録される）.

        Returns:
            走査結果
        """
        report = RecoveryReport()
        for request_id in self._store.list_ids():
            try:
                request = self._store.read(request_id)
            except RequestNotFoundError:
                continue
            except CorruptRequestError:
                logger.exception("Skipping unreadable request", request_id=request_id)
                report.skipped += 1
                continue

            if request.status == RequestStatus.PENDING:
                self._coordinator.schedule(request_id)
                report.resumed += 1
            elif request.status == RequestStatus.SENT:
                try:
                    self._coordinator.rebuild_mirror(request)
                except (ValueError, ValidationError):
                    logger.exception(
                        "Failed to rebuild prompt state", request_id=request_id
                    )
                    report.skipped += 1
                    continue
                report.rebuilt += 1
            elif request.status == RequestStatus.ANSWERED:
                self._store.delete(request_id)
                report.deleted += 1
            else:
                logger.warning(
                    "Leaving request untouched",
                    request_id=request_id,
                    status=request.status.value,
                )
                report.skipped += 1

        logger.info(
            "Recovery scan finished",
            resumed=report.resumed,
            rebuilt=report.rebuilt,
            deleted=report.deleted,
            skipped=report.skipped,
        )
        return report
