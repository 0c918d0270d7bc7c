"""Tests for channel routing."""

from __future__ import annotations

from pathlib import Path

import pytest

from discord_hook_bridge.application.routing import (
    AmbiguousRouteError,
    RouteKind,
    RouteNotFoundError,
    RouteService,
)
from discord_hook_bridge.application.sessions import SessionRegistry
from discord_hook_bridge.infrastructure.config import Config


@pytest.fixture
def config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    """テスト用の設定を作成する."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "test_token")
    monkeypatch.setenv("DISCORD_ALLOWED_USER_ID", "1")
    return Config(routes_file=tmp_path / "routes.json", discord_channel_id=999)


@pytest.fixture
def routes(config: Config) -> RouteService:
    """テスト用のRouteServiceを作成する."""
    return RouteService(config)


class TestResolveChannel:
    """resolve_channelのテスト."""

    def test_project_route_wins(self, routes: RouteService) -> None:
        """プロジェクトのルートが端末のルートより優先される."""
        routes.bind(RouteKind.TERMINAL, "%1@/tmp/sock", 100)
        routes.bind(RouteKind.PROJECT, "/repo", 200)

        assert routes.resolve_channel("%1@/tmp/sock", "/repo") == 200

    def test_terminal_route_ignores_socket(self, routes: RouteService) -> None:
        """端末のルートは同じペインならソケットが違っても一致する."""
        routes.bind(RouteKind.TERMINAL, "%1@/tmp/sock", 100)

        assert routes.resolve_channel("%1@/tmp/other", "/elsewhere") == 100

    def test_falls_back_to_default(self, routes: RouteService) -> None:
        """どのルートにも一致しない場合は既定のチャンネル."""
        assert routes.resolve_channel("%9", "/nowhere") == 999

    def test_no_default(self, config: Config) -> None:
        """既定のチャンネルもない場合はNone."""
        config.discord_channel_id = None
        assert RouteService(config).resolve_channel("%9", "") is None


class TestBindUnbind:
    """bind/unbindのテスト."""

    def test_bind_persists(self, routes: RouteService, config: Config) -> None:
        """紐づけはファイルに保存され、再読み込みで復元される."""
        routes.bind(RouteKind.PROJECT, "/repo", 200)

        reloaded = RouteService(config)
        assert reloaded.resolve_channel("", "/repo") == 200

    def test_bind_replaces_same_pane(self, routes: RouteService) -> None:
        """同じペインの古いルートは置き換えられる."""
        routes.bind(RouteKind.TERMINAL, "%1@/tmp/a", 100)
        routes.bind(RouteKind.TERMINAL, "%1@/tmp/b", 101)

        listed = routes.list_routes()
        assert [(r.key, r.channel_id) for r in listed] == [("%1@/tmp/b", 101)]

    def test_bind_empty_key(self, routes: RouteService) -> None:
        """空のキーは拒否される."""
        with pytest.raises(ValueError, match="empty"):
            routes.bind(RouteKind.PROJECT, "", 1)

    def test_unbind(self, routes: RouteService) -> None:
        """紐づけを解除できる."""
        routes.bind(RouteKind.TERMINAL, "%1", 100)

        assert routes.unbind(RouteKind.TERMINAL, "%1@/tmp/sock") is True
        assert routes.unbind(RouteKind.TERMINAL, "%1") is False
        assert routes.list_routes() == []

    def test_unbind_channel(self, routes: RouteService) -> None:
        """チャンネルに紐づく全ルートを解除する."""
        routes.bind(RouteKind.TERMINAL, "%1", 100)
        routes.bind(RouteKind.PROJECT, "/repo", 100)
        routes.bind(RouteKind.PROJECT, "/other", 200)

        assert routes.unbind_channel(100) == 2
        assert [r.key for r in routes.list_routes()] == ["/other"]


class TestTargetForChannel:
    """target_for_channelのテスト."""

    def test_single_terminal(self, routes: RouteService) -> None:
        """端末が1つだけ紐づいていればそれを返す."""
        routes.bind(RouteKind.TERMINAL, "%1", 100)
        assert routes.target_for_channel(100, SessionRegistry()) == "%1"

    def test_project_resolves_through_registry(self, routes: RouteService) -> None:
        """プロジェクトのルートは登録済みセッションの端末を経由して解決される."""
        registry = SessionRegistry()
        registry.add("s1", "%2@/tmp/sock", "/repo")
        routes.bind(RouteKind.PROJECT, "/repo", 100)

        assert routes.target_for_channel(100, registry) == "%2@/tmp/sock"

    def test_not_found(self, routes: RouteService) -> None:
        """何も紐づいていない場合は例外."""
        with pytest.raises(RouteNotFoundError):
            routes.target_for_channel(100, SessionRegistry())

    def test_ambiguous(self, routes: RouteService) -> None:
        """複数の端末が紐づいている場合は例外."""
        routes.bind(RouteKind.TERMINAL, "%1", 100)
        routes.bind(RouteKind.TERMINAL, "%2", 100)

        with pytest.raises(AmbiguousRouteError) as exc_info:
            routes.target_for_channel(100, SessionRegistry())
        assert exc_info.value.targets == ["%1", "%2"]
