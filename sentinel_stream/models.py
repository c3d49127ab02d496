"""Pydantic models for the control-plane registration API."""

from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, constr

# Common constrained types
Topic = constr(strip_whitespace=True, min_length=1)
Ssrc = Annotated[int, Field(ge=0, le=0xFFFFFFFF)]
# RTP 宛先はホストローカルの非特権UDPポートに限定する
Port = Annotated[int, Field(ge=1024, le=65535)]


class MediaKind(str, Enum):
    """Media kind announced to the control plane."""

    AUDIO = "audio"
    VIDEO = "video"


class RegisterStreamRequest(BaseModel):
    """POST /api/streams/register request body."""

    topic: Topic
    media_type: Optional[MediaKind] = None

    def to_payload(self) -> dict[str, str]:
        """JSON body; media_type is left out when not set."""
        return self.model_dump(mode="json", exclude_none=True)


class StreamRegistration(BaseModel):
    """Registration result: SSRC and RTP port assigned by the server."""

    model_config = ConfigDict(frozen=True, strict=True)

    ssrc: Ssrc
    rtp_port: Port
