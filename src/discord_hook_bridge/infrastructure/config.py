"""Configuration management."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# ユーザー単位の設定ディレクトリ
DATA_DIR = Path.home() / ".discord-hook-bridge"
HOME_ENV_FILE = DATA_DIR / ".env"

# エージェントがプロジェクトごとのトランスクリプトを保存するディレクトリ
AGENT_PROJECTS_DIR = Path.home() / ".claude" / "projects"

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


def default_pending_dir() -> Path:
    """フックとデーモンが共有するpendingディレクトリの既定値を返す."""
    return Path(tempfile.gettempdir()) / "discord-hook-bridge" / "pending"


class RouteTable(BaseModel):
    """チャンネルルーティング設定."""

    terminal_routes: dict[str, int] = Field(default_factory=dict)
    project_routes: dict[str, int] = Field(default_factory=dict)


class BridgeSettings(BaseSettings):
    """デーモンとフックで共有する設定."""

    model_config = SettingsConfigDict(
        env_file=HOME_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bridge_api_host: str = Field(
        default="127.0.0.1",
        description="ローカルHTTP APIのホスト（ループバックのみ）",
    )
    bridge_api_port: int = Field(
        default=12500,
        description="ローカルHTTP APIのポート",
    )
    pending_dir: Path = Field(
        default_factory=default_pending_dir,
        description="pendingリクエストファイルのディレクトリ",
    )

    # ロギング設定
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: str = Field(
        default=str(DATA_DIR / "logs"),
        description="ログ出力ディレクトリ",
    )
    log_backup_count: int = Field(default=7, description="ログの保持日数")

    @field_validator("bridge_api_host")
    @classmethod
    def validate_loopback(cls, v: str) -> str:
        """APIホストがループバックアドレスであることを検証する."""
        if v not in LOOPBACK_HOSTS:
            msg = f"bridge_api_host must be a loopback address, got {v!r}"
            raise ValueError(msg)
        return v

    @field_validator("pending_dir", mode="before")
    @classmethod
    def parse_pending_dir(cls, v: str | Path) -> Path:
        """pending_dirをPathに変換する."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @property
    def api_base_url(self) -> str:
        """ローカルHTTP APIのベースURL."""
        host = self.bridge_api_host
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.bridge_api_port}"


class HookConfig(BridgeSettings):
    """フッククライアント設定（Discordの認証情報は不要）."""

    hook_timeout: float = Field(
        default=110.0,
        description="回答待ちの最大秒数（エージェント側のタイムアウトより短くする）",
    )
    poll_interval: float = Field(
        default=0.5,
        description="ファイルのポーリング間隔（秒）",
    )
    notify_timeout: float = Field(
        default=5.0,
        description="デーモンへの通知リクエストのタイムアウト（秒）",
    )


class Config(BridgeSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=(HOME_ENV_FILE, ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Discord設定
    discord_bot_token: str = Field(
        ...,
        description="Discord Bot Token",
    )
    discord_allowed_user_id: int = Field(
        ...,
        description="利用を許可するDiscordユーザーID",
    )
    discord_guild_id: int | None = Field(
        default=None,
        description="開発用ギルドID（指定時はそのギルドのみにコマンド同期）",
    )
    discord_channel_id: int | None = Field(
        default=None,
        description="ルートが見つからない場合の通知先チャンネルID",
    )

    # ルーティング設定ファイルパス
    routes_file: Path = Field(
        default=DATA_DIR / "routes.json",
        description="チャンネルルーティング設定ファイルのパス",
    )

    # 表示設定
    page_size: int = Field(
        default=1900,
        description="1ページあたりの最大文字数（Discordの上限2000文字未満）",
    )

    # 音声入力設定
    voice_command: list[str] = Field(
        default_factory=list,
        description="音声ファイルを文字起こしする外部コマンド（空なら無効）",
    )
    voice_prefix: str = Field(default="🎤", description="音声入力に付与する接頭辞")

    # tmux設定
    tmux_command: str = Field(default="tmux", description="tmuxコマンド")

    # エージェントのトランスクリプト
    agent_projects_dir: Path = Field(
        default=AGENT_PROJECTS_DIR,
        description="エージェントがプロジェクトごとのトランスクリプトを保存するディレクトリ",
    )

    @field_validator("voice_command", mode="before")
    @classmethod
    def parse_voice_command(cls, v: str | list[str]) -> list[str]:
        """voice_commandをパースする（JSON文字列または配列）."""
        if isinstance(v, str):
            if not v.strip():
                return []
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
                return [v]
            except json.JSONDecodeError:
                return [v]
        return v

    @field_validator("routes_file", "agent_projects_dir", mode="before")
    @classmethod
    def parse_path(cls, v: str | Path) -> Path:
        """パスの設定値をPathに変換する（~を展開する）."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @field_validator("page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        """page_sizeがDiscordの上限内であることを検証する."""
        if not 100 <= v <= 2000:
            msg = "page_size must be between 100 and 2000"
            raise ValueError(msg)
        return v

    def load_routes(self) -> RouteTable:
        """
        ルーティング設定ファイルを読み込む.

        ファイルが存在しない場合は空のテーブルを返す.

        Returns:
            ルーティングテーブル

        Raises:
            ValueError: 設定ファイルのフォーマットが不正な場合
        """
        if not self.routes_file.exists():
            logger.warning(
                "Routes file not found: %s. Returning empty table.",
                self.routes_file,
            )
            return RouteTable()

        try:
            content = self.routes_file.read_text(encoding="utf-8")
            table = RouteTable.model_validate_json(content)
        except ValueError:
            logger.exception("Invalid routes file format: %s", self.routes_file)
            raise

        logger.info(
            "Loaded %d terminal routes and %d project routes from %s",
            len(table.terminal_routes),
            len(table.project_routes),
            self.routes_file,
        )
        return table

    def save_routes(self, table: RouteTable) -> None:
        """
        ルーティングテーブルを設定ファイルに保存する.

        一時ファイルに書き込んでからリネームするため、読み込み側が
        書きかけのファイルを見ることはない.

        Args:
            table: ルーティングテーブル
        """
        try:
            # 親ディレクトリが存在しない場合は作成
            self.routes_file.parent.mkdir(parents=True, exist_ok=True)

            tmp_path = self.routes_file.with_name(f".{self.routes_file.name}.tmp")
            tmp_path.write_text(table.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self.routes_file)

            logger.info("Saved routes to %s", self.routes_file)

        except Exception:
            logger.exception("Failed to save routes file: %s", self.routes_file)
            raise


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
