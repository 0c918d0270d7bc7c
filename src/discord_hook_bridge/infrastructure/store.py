"""File-backed durable store for pending decision requests."""

from __future__ import annotations

import contextlib
import os
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

from discord_hook_bridge.application.models import PendingRequest
from discord_hook_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

logger = get_logger(__name__)

REQUEST_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"


class RequestNotFoundError(Exception):
    """リクエストファイルが存在しない場合の例外（決着済みまたは未作成）."""

    def __init__(self, request_id: str) -> None:
        """
        Initialize RequestNotFoundError.

        Args:
            request_id: リクエストID
        """
        super().__init__(f"Pending request {request_id} not found")
        self.request_id = request_id


class CorruptRequestError(Exception):
    """リクエストファイルを解釈できない場合の例外."""

    def __init__(self, request_id: str, reason: str = "") -> None:
        """
        Initialize CorruptRequestError.

        Args:
            request_id: リクエストID
            reason: 解釈できなかった理由
        """
        super().__init__(f"Pending request {request_id} is corrupt: {reason}")
        self.request_id = request_id
        self.reason = reason


class RequestExistsError(Exception):
    """同じIDのリクエストファイルが既に存在する場合の例外."""

    def __init__(self, request_id: str) -> None:
        """
        Initialize RequestExistsError.

        Args:
            request_id: リクエストID
        """
        super().__init__(f"Pending request {request_id} already exists")
        self.request_id = request_id


class RequestStore(Protocol):
    """判定リクエストの永続化ストア."""

    def create(self, request: PendingRequest) -> None: ...

    def read(self, request_id: str) -> PendingRequest: ...

    def update(
        self, request_id: str, mutator: Callable[[PendingRequest], None]
    ) -> PendingRequest: ...

    def delete(self, request_id: str) -> bool: ...

    def list_ids(self) -> list[str]: ...


class FileRequestStore:
    """
    1リクエスト1ファイルで判定リクエストを保存するストア.

    書き込みは一時ファイル経由のリネームで行うため、読み込み側が書きかけの
    ファイルを見ることはない。同一IDへの並行書き込みの排他は呼び出し側の責務。
    """

    def __init__(self, directory: Path) -> None:
        """
        Initialize FileRequestStore.

        Args:
            directory: リクエストファイルを置くディレクトリ
        """
        self.directory = directory

    def _path(self, request_id: str) -> Path:
        # パス区切りを含むIDでディレクトリ外を指さないようにする
        if not request_id or Path(request_id).name != request_id:
            raise RequestNotFoundError(request_id)
        return self.directory / f"{request_id}{REQUEST_SUFFIX}"

    def _write(self, path: Path, request: PendingRequest) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.stem}.{os.getpid()}{TEMP_SUFFIX}")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                f.write(request.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

    def create(self, request: PendingRequest) -> None:
        """
        新しいリクエストファイルを作成する.

        Args:
            request: 作成するリクエスト

        Raises:
            RequestExistsError: 同じIDのファイルが既に存在する場合
        """
        path = self._path(request.id)
        if path.exists():
            raise RequestExistsError(request.id)
        self._write(path, request)
        logger.debug("Created pending request", request_id=request.id, path=str(path))

    def read(self, request_id: str) -> PendingRequest:
        """
        リクエストファイルを読み込む.

        Args:
            request_id: リクエストID

        Returns:
            読み込んだリクエスト

        Raises:
            RequestNotFoundError: ファイルが存在しない場合
            CorruptRequestError: ファイルの内容が不正な場合
        """
        path = self._path(request_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise RequestNotFoundError(request_id) from None
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptRequestError(request_id, str(e)) from e

        try:
            return PendingRequest.model_validate_json(content)
        except ValidationError as e:
            raise CorruptRequestError(request_id, str(e)) from e

    def update(
        self, request_id: str, mutator: Callable[[PendingRequest], None]
    ) -> PendingRequest:
        """
        リクエストを読み込み、変更して書き戻す.

        Args:
            request_id: リクエストID
            mutator: リクエストを変更する関数（例外を送出すると書き込まない）

        Returns:
            更新後のリクエスト

        Raises:
            RequestNotFoundError: ファイルが存在しない場合
            CorruptRequestError: ファイルの内容が不正な場合
        """
        request = self.read(request_id)
        mutator(request)
        self._write(self._path(request_id), request)
        logger.debug(
            "Updated pending request",
            request_id=request_id,
            status=request.status.value,
        )
        return request

    def delete(self, request_id: str) -> bool:
        """
        リクエストファイルを削除する.

        Args:
            request_id: リクエストID

        Returns:
            削除した場合True、既に存在しなかった場合False
        """
        try:
            self._path(request_id).unlink()
        except (FileNotFoundError, RequestNotFoundError):
            return False
        logger.debug("Deleted pending request", request_id=request_id)
        return True

    def list_ids(self) -> list[str]:
        """
        保存されている全リクエストのIDを返す.

        Returns:
            リクエストIDのリスト（作成中の一時ファイルは含まない）
        """
        if not self.directory.is_dir():
            return []
        return sorted(
            path.stem
            for path in self.directory.iterdir()
            if path.suffix == REQUEST_SUFFIX and not path.name.startswith(".")
        )


def is_process_alive(pid: int) -> bool:
    """
    指定したPIDのプロセスが生存しているかどうかを返す.

    Args:
        pid: プロセスID

    Returns:
        生存している場合True
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 別ユーザーのプロセスとして存在している
        return True
    return True
