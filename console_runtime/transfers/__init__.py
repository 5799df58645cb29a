"""Transfer admission queue and gateway-backed executors."""

from .executors import download_executor, upload_executor
from .queue import Executor, TransferKind, TransferQueue, TransferStatus, TransferTask

__all__ = [
    "Executor",
    "TransferKind",
    "TransferQueue",
    "TransferStatus",
    "TransferTask",
    "download_executor",
    "upload_executor",
]
