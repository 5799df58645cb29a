from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import AliasChoices, BaseModel, Field


class InboundEvent(BaseModel):
    """Event frame pushed by the backend to every subscriber of ``topic``.

    Older backend builds emit ``{"type": ..., "payload": ...}``; ``type`` is
    accepted as the topic name for those frames.
    """

    topic: str = Field(min_length=1, validation_alias=AliasChoices("topic", "type"))
    payload: Dict[str, Any] = Field(default_factory=dict)


class ChannelControl(BaseModel):
    """Outbound join/leave control message for a logical channel."""

    type: Literal["join", "leave"]
    channel: str = Field(min_length=1)
