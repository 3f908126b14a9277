"""Pydantic models for the signaling protocol and connection codes."""

import secrets
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from config import CONNECTION_CODE_LENGTH

# No 0/O or 1/I/L, codes get read aloud and typed by hand.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


def generate_connection_code(length: int = CONNECTION_CODE_LENGTH) -> str:
    """Create a fresh room id for the initiator to share out-of-band."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class SignalingMessageType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    RECEIVER_JOINED = "receiver-joined"
    RECEIVER_READY = "receiver-ready"
    FILE_TRANSFER_CANCEL = "file-transfer-cancel"


class _SignalModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class SessionDescription(_SignalModel):
    sdp: str = Field(min_length=1)
    type: Literal["offer", "answer"]


class IceCandidatePayload(_SignalModel):
    candidate: str = Field(min_length=1)
    sdp_mid: str | None = None
    sdp_m_line_index: int | None = Field(default=None, alias="sdpMLineIndex")


class CancelPayload(_SignalModel):
    transfer_id: str = Field(min_length=1)


class OfferSignal(_SignalModel):
    type: Literal["offer"] = "offer"
    room_id: str = Field(min_length=1)
    data: SessionDescription


class AnswerSignal(_SignalModel):
    type: Literal["answer"] = "answer"
    room_id: str = Field(min_length=1)
    data: SessionDescription


class IceCandidateSignal(_SignalModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    room_id: str = Field(min_length=1)
    data: IceCandidatePayload


class ReceiverJoinedSignal(_SignalModel):
    type: Literal["receiver-joined"] = "receiver-joined"
    room_id: str = Field(min_length=1)
    data: dict | None = None


class ReceiverReadySignal(_SignalModel):
    type: Literal["receiver-ready"] = "receiver-ready"
    room_id: str = Field(min_length=1)
    data: dict | None = None


class CancelSignal(_SignalModel):
    type: Literal["file-transfer-cancel"] = "file-transfer-cancel"
    room_id: str = Field(min_length=1)
    data: CancelPayload


SignalingMessage = Annotated[
    Union[
        OfferSignal,
        AnswerSignal,
        IceCandidateSignal,
        ReceiverJoinedSignal,
        ReceiverReadySignal,
        CancelSignal,
    ],
    Field(discriminator="type"),
]

_signal_adapter = TypeAdapter(SignalingMessage)


def parse_signaling_message(raw: str | bytes) -> SignalingMessage:
    """Validate an incoming signaling message. Raises pydantic.ValidationError."""
    return _signal_adapter.validate_json(raw)


def encode_signaling_message(message: SignalingMessage) -> str:
    return message.model_dump_json(by_alias=True)
