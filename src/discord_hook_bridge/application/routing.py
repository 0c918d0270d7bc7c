"""Channel routing service."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel

from discord_hook_bridge.infrastructure.config import RouteTable
from discord_hook_bridge.infrastructure.logging import get_logger
from discord_hook_bridge.infrastructure.tmux import same_pane

if TYPE_CHECKING:
    from discord_hook_bridge.application.sessions import SessionRegistry
    from discord_hook_bridge.infrastructure.config import Config

logger = get_logger(__name__)


class RouteKind(str, Enum):
    """ルートの種別."""

    TERMINAL = "terminal"
    PROJECT = "project"


class Route(BaseModel):
    """チャンネルへのルート1件."""

    kind: RouteKind
    key: str
    channel_id: int


class RouteNotFoundError(Exception):
    """チャンネルに対応する宛先が見つからない場合の例外."""

    def __init__(self, channel_id: int) -> None:
        """
        Initialize RouteNotFoundError.

        Args:
            channel_id: チャンネルID
        """
        super().__init__(f"No terminal bound to channel {channel_id}")
        self.channel_id = channel_id


class AmbiguousRouteError(Exception):
    """チャンネルに複数の宛先が紐づいている場合の例外."""

    def __init__(self, channel_id: int, targets: list[str]) -> None:
        """
        Initialize AmbiguousRouteError.

        Args:
            channel_id: チャンネルID
            targets: 紐づいている宛先のリスト
        """
        super().__init__(
            f"Channel {channel_id} is bound to {len(targets)} terminals: "
            + ", ".join(targets)
        )
        self.channel_id = channel_id
        self.targets = targets


class RouteService:
    """宛先・プロジェクトとDiscordチャンネルの対応を管理するサービス."""

    def __init__(self, config: Config) -> None:
        """
        Initialize RouteService.

        Args:
            config: アプリケーション設定
        """
        self._config = config
        self._table = config.load_routes()

    @property
    def default_channel_id(self) -> int | None:
        return self._config.discord_channel_id

    def resolve_channel(self, terminal_target: str, cwd: str) -> int | None:
        """
        通知先チャンネルを決める.

        プロジェクト（作業ディレクトリ）のルート、宛先のルート、既定チャンネルの
        順に探す.

        Args:
            terminal_target: 宛先
            cwd: 作業ディレクトリ

        Returns:
            チャンネルID（どこにも送れない場合None）
        """
        if cwd and cwd in self._table.project_routes:
            return self._table.project_routes[cwd]
        for target, channel_id in self._table.terminal_routes.items():
            if same_pane(target, terminal_target):
                return channel_id
        return self.default_channel_id

    def bind(self, kind: RouteKind, key: str, channel_id: int) -> Route:
        """
        ルートを追加（既存なら置き換え）して保存する.

        Raises:
            ValueError: キーが空の場合
        """
        if not key:
            msg = "route key must not be empty"
            raise ValueError(msg)

        if kind == RouteKind.PROJECT:
            self._table.project_routes[key] = channel_id
        else:
            # 同じペインを指す古いルートは置き換える
            for target in [
                t for t in self._table.terminal_routes if same_pane(t, key)
            ]:
                del self._table.terminal_routes[target]
            self._table.terminal_routes[key] = channel_id
        self._config.save_routes(self._table)

        logger.info("Route bound", kind=kind.value, key=key, channel_id=channel_id)
        return Route(kind=kind, key=key, channel_id=channel_id)

    def unbind(self, kind: RouteKind, key: str) -> bool:
        """
        ルートを削除して保存する.

        Returns:
            削除した場合True
        """
        if kind == RouteKind.PROJECT:
            removed = self._table.project_routes.pop(key, None) is not None
        else:
            targets = [t for t in self._table.terminal_routes if same_pane(t, key)]
            for target in targets:
                del self._table.terminal_routes[target]
            removed = bool(targets)

        if removed:
            self._config.save_routes(self._table)
            logger.info("Route unbound", kind=kind.value, key=key)
        return removed

    def unbind_channel(self, channel_id: int) -> int:
        """チャンネルに紐づく全ルートを削除し、削除した件数を返す."""
        table = RouteTable(
            terminal_routes={
                k: v for k, v in self._table.terminal_routes.items() if v != channel_id
            },
            project_routes={
                k: v for k, v in self._table.project_routes.items() if v != channel_id
            },
        )
        removed = len(self.list_routes()) - (
            len(table.terminal_routes) + len(table.project_routes)
        )
        if removed:
            self._table = table
            self._config.save_routes(self._table)
            logger.info("Channel routes removed", channel_id=channel_id, count=removed)
        return removed

    def list_routes(self) -> list[Route]:
        routes = [
            Route(kind=RouteKind.TERMINAL, key=k, channel_id=v)
            for k, v in self._table.terminal_routes.items()
        ]
        routes.extend(
            Route(kind=RouteKind.PROJECT, key=k, channel_id=v)
            for k, v in self._table.project_routes.items()
        )
        return routes

    def targets_for_channel(
        self, channel_id: int, registry: SessionRegistry
    ) -> list[str]:
        """チャンネルに紐づく宛先（登録済みセッション経由のプロジェクト含む）."""
        targets = [t for t, c in self._table.terminal_routes.items() if c == channel_id]
        for cwd, bound in self._table.project_routes.items():
            if bound != channel_id:
                continue
            for record in registry.find_by_cwd(cwd):
                if record.terminal_target and not any(
                    same_pane(record.terminal_target, t) for t in targets
                ):
                    targets.append(record.terminal_target)
        return targets

    def target_for_channel(self, channel_id: int, registry: SessionRegistry) -> str:
        """
        チャンネルに紐づく唯一の宛先を返す.

        Raises:
            RouteNotFoundError: 宛先が紐づいていない場合
            AmbiguousRouteError: 複数の宛先が紐づいている場合
        """
        targets = self.targets_for_channel(channel_id, registry)
        if not targets:
            raise RouteNotFoundError(channel_id)
        if len(targets) > 1:
            raise AmbiguousRouteError(channel_id, targets)
        return targets[0]
