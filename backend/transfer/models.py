"""Pydantic models for file transfer."""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

import config
from transfer.framing import MAX_CHUNK_COUNT


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransferState.COMPLETED,
            TransferState.FAILED,
            TransferState.CANCELLED,
        )


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferSettings(BaseModel):
    """Per-session tunables. Defaults come from config.py."""
    chunk_size: int = Field(default=config.CHUNK_SIZE, gt=0)
    ack_timeout: float = Field(default=config.ACK_TIMEOUT, gt=0)
    ack_check_interval: float = Field(default=config.ACK_CHECK_INTERVAL, gt=0)
    max_chunk_retries: int = Field(default=config.MAX_CHUNK_RETRIES, ge=0)
    max_in_flight_chunks: int = Field(default=config.MAX_IN_FLIGHT_CHUNKS, gt=0)
    buffered_amount_low_threshold: int = Field(
        default=config.BUFFERED_AMOUNT_LOW_THRESHOLD, ge=0
    )
    size_tolerance: int = Field(default=config.SIZE_TOLERANCE, ge=0)


# --- Wire protocol: control messages (JSON text on the data channel) ---

class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class FileTransferInfo(_WireModel):
    """Metadata sent before file data. Immutable once created."""
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    size: int = Field(gt=0)
    mime_type: str = "application/octet-stream"
    chunk_count: int = Field(gt=0, le=MAX_CHUNK_COUNT)

    @model_validator(mode="after")
    def _chunks_fit_size(self):
        if self.chunk_count > self.size:
            raise ValueError("chunkCount cannot exceed size")
        return self


class ChunkAck(_WireModel):
    transfer_id: str = Field(min_length=1)
    chunk_index: int = Field(ge=0)


class TransferRef(_WireModel):
    transfer_id: str = Field(min_length=1)
    reason: str | None = None


class ControlMessageType(str, Enum):
    FILE_INFO = "file-info"
    FILE_COMPLETE = "file-complete"
    FILE_CHUNK_ACK = "file-chunk-ack"
    FILE_TRANSFER_CANCEL = "file-transfer-cancel"


class FileInfoMessage(_WireModel):
    type: Literal["file-info"] = "file-info"
    data: FileTransferInfo


class FileCompleteMessage(_WireModel):
    type: Literal["file-complete"] = "file-complete"
    data: TransferRef


class ChunkAckMessage(_WireModel):
    type: Literal["file-chunk-ack"] = "file-chunk-ack"
    data: ChunkAck


class CancelMessage(_WireModel):
    type: Literal["file-transfer-cancel"] = "file-transfer-cancel"
    data: TransferRef


ControlMessage = Annotated[
    Union[FileInfoMessage, FileCompleteMessage, ChunkAckMessage, CancelMessage],
    Field(discriminator="type"),
]

_control_adapter = TypeAdapter(ControlMessage)


def parse_control_message(raw: str | bytes) -> ControlMessage:
    """Validate a text control message. Raises pydantic.ValidationError."""
    return _control_adapter.validate_json(raw)


def encode_control_message(message: ControlMessage) -> str:
    return message.model_dump_json(by_alias=True)


class ReceivedFile(BaseModel):
    """A fully reassembled file handed to the collaborator."""
    transfer_id: str
    name: str
    size: int
    mime_type: str
    data: bytes
