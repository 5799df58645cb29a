"""Executor builders that run transfers through the request gateway."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from console_runtime.models import ApiResponse, DownloadResult
from console_runtime.network.gateway import RequestGateway
from console_runtime.transfers.queue import Executor


def download_executor(
    gateway: RequestGateway,
    endpoint: str,
    dest_path: Path,
    *,
    params: Optional[Mapping[str, Any]] = None,
) -> Executor:
    """Build an executor that streams ``endpoint`` into ``dest_path``."""

    async def _download() -> DownloadResult:
        return await gateway.download(endpoint, Path(dest_path), params=params)

    return _download


def upload_executor(
    gateway: RequestGateway,
    endpoint: str,
    path: Path,
    *,
    field: str = "file",
    data: Optional[Dict[str, Any]] = None,
) -> Executor:
    async def _upload() -> ApiResponse:
        response = await gateway.upload(endpoint, Path(path), field=field, data=data)
        if not response.success:
            raise RuntimeError(response.error_message)
        return response

    return _upload
