"""
Binary framing for file chunks on the peer data channel.

Frame layout (big-endian):

    [u8 idLength][transfer id, utf-8][u16 chunkIndex][u16 totalChunks][u32 payloadLength][payload]

The full transfer id is carried instead of a hash of it so that two
concurrent transfers can never be confused with each other.
"""

import struct
from dataclasses import dataclass

ID_LENGTH_FORMAT = "!B"
ID_LENGTH_SIZE = struct.calcsize(ID_LENGTH_FORMAT)
CHUNK_HEADER_FORMAT = "!HHI"  # index, total, payload length
CHUNK_HEADER_SIZE = struct.calcsize(CHUNK_HEADER_FORMAT)

MAX_TRANSFER_ID_LENGTH = 0xFF
MAX_CHUNK_COUNT = 0xFFFF


@dataclass(frozen=True)
class Chunk:
    """One decoded chunk frame."""
    transfer_id: str
    index: int
    total_chunks: int
    payload: bytes


def chunk_count_for(size: int, chunk_size: int) -> int:
    """Number of chunks needed for ``size`` bytes (ceil division)."""
    return -(-size // chunk_size)


def encode_chunk(transfer_id: str, index: int, total_chunks: int, payload: bytes) -> bytes:
    """Frame a chunk for transmission."""
    id_bytes = transfer_id.encode("utf-8")
    if not id_bytes or len(id_bytes) > MAX_TRANSFER_ID_LENGTH:
        raise ValueError(f"Transfer id must be 1-{MAX_TRANSFER_ID_LENGTH} bytes")
    if not 0 < total_chunks <= MAX_CHUNK_COUNT:
        raise ValueError(f"Total chunks out of range: {total_chunks}")
    if not 0 <= index < total_chunks:
        raise ValueError(f"Chunk index {index} out of range for {total_chunks} chunks")

    return (
        struct.pack(ID_LENGTH_FORMAT, len(id_bytes))
        + id_bytes
        + struct.pack(CHUNK_HEADER_FORMAT, index, total_chunks, len(payload))
        + payload
    )


def decode_chunk(frame: bytes) -> Chunk:
    """Parse a chunk frame. Raises ValueError on malformed input."""
    if len(frame) < ID_LENGTH_SIZE:
        raise ValueError("Empty chunk frame")

    (id_length,) = struct.unpack_from(ID_LENGTH_FORMAT, frame, 0)
    header_end = ID_LENGTH_SIZE + id_length + CHUNK_HEADER_SIZE
    if id_length == 0 or len(frame) < header_end:
        raise ValueError(f"Truncated chunk header ({len(frame)} bytes)")

    try:
        transfer_id = frame[ID_LENGTH_SIZE:ID_LENGTH_SIZE + id_length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Invalid transfer id encoding: {e}") from e

    index, total_chunks, payload_length = struct.unpack_from(
        CHUNK_HEADER_FORMAT, frame, ID_LENGTH_SIZE + id_length
    )
    payload = frame[header_end:]
    if len(payload) != payload_length:
        raise ValueError(
            f"Payload length mismatch: header says {payload_length}, got {len(payload)}"
        )

    return Chunk(
        transfer_id=transfer_id,
        index=index,
        total_chunks=total_chunks,
        payload=bytes(payload),
    )
