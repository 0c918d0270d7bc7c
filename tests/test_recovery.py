"""Tests for the startup recovery scan."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from conftest import (
    CHANNEL_ID,
    RecordingGateway,
    create_request,
    permission_payload,
)

from discord_hook_bridge.application.models import MessageRef, RequestStatus
from discord_hook_bridge.application.recovery import RecoveryScanner
from discord_hook_bridge.infrastructure.store import REQUEST_SUFFIX

if TYPE_CHECKING:
    from discord_hook_bridge.application.requests import RequestCoordinator
    from discord_hook_bridge.infrastructure.store import FileRequestStore


def _sent_ref(message_id: int) -> MessageRef:
    return MessageRef(channel_id=CHANNEL_ID, message_id=message_id)


class TestRecoveryScanner:
    """RecoveryScannerのテスト."""

    @pytest.mark.asyncio
    async def test_each_status(
        self,
        coordinator: RequestCoordinator,
        store: FileRequestStore,
        gateway: RecordingGateway,
    ) -> None:
        """状態ごとに再送・再構築・削除・据え置きを行う."""
        pending = create_request(store, permission_payload())
        sent = create_request(store, permission_payload())
        store.update(sent.id, lambda r: r.mark_sent(_sent_ref(55)))
        answered = create_request(store, permission_payload())
        store.update(answered.id, lambda r: r.mark_sent(_sent_ref(56)))
        store.update(answered.id, lambda r: r.mark_answered({"behavior": "allow"}))
        cancelled = create_request(store, permission_payload())
        store.update(cancelled.id, lambda r: r.mark_sent(_sent_ref(57)))
        store.update(cancelled.id, lambda r: r.mark_cancelled())

        report = RecoveryScanner(store, coordinator).scan()
        await coordinator.wait_scheduled()

        assert (report.resumed, report.rebuilt, report.deleted, report.skipped) == (
            1,
            1,
            1,
            1,
        )
        assert store.read(pending.id).status == RequestStatus.SENT
        assert len(gateway.sent) == 1
        assert coordinator.is_prompt(55)
        assert answered.id not in store.list_ids()
        assert store.read(cancelled.id).status == RequestStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_rebuilt_prompt_accepts_clicks(
        self, coordinator: RequestCoordinator, store: FileRequestStore
    ) -> None:
        """再構築したプロンプトは再送せずに回答できる."""
        request = create_request(store, permission_payload())
        store.update(request.id, lambda r: r.mark_sent(_sent_ref(60)))

        RecoveryScanner(store, coordinator).scan()
        await coordinator.decide_permission(60, "deny")

        assert store.read(request.id).decision == {"behavior": "deny"}

    def test_corrupt_file_skipped(
        self, coordinator: RequestCoordinator, store: FileRequestStore
    ) -> None:
        """読めないファイルは飛ばして残す."""
        store.directory.mkdir(parents=True, exist_ok=True)
        (store.directory / f"broken{REQUEST_SUFFIX}").write_text("{", encoding="utf-8")

        report = RecoveryScanner(store, coordinator).scan()

        assert report.skipped == 1
        assert store.list_ids() == ["broken"]

    @pytest.mark.asyncio
    async def test_undecodable_file_does_not_stop_scan(
        self, coordinator: RequestCoordinator, store: FileRequestStore
    ) -> None:
        """文字コードが壊れたファイルがあっても他のリクエストは再開する."""
        store.directory.mkdir(parents=True, exist_ok=True)
        (store.directory / f"aaa{REQUEST_SUFFIX}").write_bytes(b'{"id": "\xff\xfe"}')
        (store.directory / f"bbb{REQUEST_SUFFIX}").mkdir()
        request = create_request(store, permission_payload())

        report = RecoveryScanner(store, coordinator).scan()
        await coordinator.wait_scheduled()

        assert report.skipped == 2
        assert report.resumed == 1
        assert store.read(request.id).status == RequestStatus.SENT

    def test_empty_store(
        self, coordinator: RequestCoordinator, store: FileRequestStore
    ) -> None:
        """ディレクトリがなくても走査できる."""
        report = RecoveryScanner(store, coordinator).scan()
        assert report.resumed == report.rebuilt == report.deleted == 0
