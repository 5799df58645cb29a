"""Wire and response models for the console runtime."""

from .api import ApiResponse, DownloadResult
from .realtime import ChannelControl, InboundEvent

__all__ = ["ApiResponse", "DownloadResult", "ChannelControl", "InboundEvent"]
