from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field


class ApiResponse(BaseModel):
    """Normalized success/error envelope returned by the request gateway."""

    success: bool
    status_code: int
    data: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_success(self) -> bool:
        return self.success

    @property
    def is_error(self) -> bool:
        return not self.success

    @property
    def error_message(self) -> str:
        return self.error or "An unknown error occurred"


class DownloadResult(BaseModel):
    path: Path
    size_bytes: int
