"""
Wire envelopes exchanged with meeting clients.

Inbound events are the same regardless of transport (WebSocket or HTTP).
Field aliases keep the camelCase names the browser client sends.
"""

from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    CAPTURE = "capture"
    TRANSCRIPT = "transcript"
    CONTROL = "control"


class ControlCommand(str, Enum):
    START = "start"
    STOP = "stop"
    START_TRANSCRIPTION = "start_transcription"
    STOP_TRANSCRIPTION = "stop_transcription"
    PING = "ping"


class OutboundKind(str, Enum):
    STATUS = "status"
    DOCUMENT_UPDATE = "document_update"
    DOCUMENT_STATUS = "document_status"
    ERROR = "error"


class InboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: EventKind
    payload: Optional[str] = None
    meeting_id: str = Field(default="", alias="meetingId")
    speaker: Optional[str] = None
    command: Optional[ControlCommand] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class OutboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: OutboundKind
    content: str
    document_kind: Optional[str] = Field(default=None, alias="documentKind")
    document_version: Optional[int] = Field(default=None, alias="documentVersion")
    observation_count: Optional[int] = Field(default=None, alias="observationCount")

    @classmethod
    def status(cls, content: str) -> "OutboundEvent":
        return cls(kind=OutboundKind.STATUS, content=content)

    @classmethod
    def error(cls, content: str) -> "OutboundEvent":
        return cls(kind=OutboundKind.ERROR, content=content)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
