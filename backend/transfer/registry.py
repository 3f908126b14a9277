"""
Transfer Registry.

Per-side map of transfer id -> TransferRecord. A record is inserted once,
when the transfer is created, and removed the moment it reaches a terminal
status. Code holding a reference to a removed record must check
``record.is_active`` before touching it again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from errors import InvalidTransitionError
from transfer.models import FileTransferInfo, TransferDirection, TransferState

logger = logging.getLogger(__name__)

# Allowed forward moves. Cancellation is forced from any live status.
_TRANSITIONS: dict[TransferState, set[TransferState]] = {
    TransferState.PENDING: {
        TransferState.IN_PROGRESS,
        TransferState.FAILED,
        TransferState.CANCELLED,
    },
    TransferState.IN_PROGRESS: {
        TransferState.COMPLETED,
        TransferState.FAILED,
        TransferState.CANCELLED,
    },
}


@dataclass
class OutstandingChunk:
    """A sent chunk waiting for its ack."""
    payload: bytes
    sent_time: float
    retries: int = 0


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0, clock=time.monotonic):
        self._window = window
        self._clock = clock
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = self._clock()
        self._samples.append((now, byte_count))
        # Trim old samples
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


@dataclass
class TransferRecord:
    """Mutable state of one transfer on one side."""
    info: FileTransferInfo
    direction: TransferDirection
    status: TransferState = TransferState.PENDING
    transferred_bytes: int = 0
    error_message: str | None = None
    speed: SpeedTracker = field(default_factory=SpeedTracker, repr=False)

    # Sender side
    outstanding: dict[int, OutstandingChunk] = field(default_factory=dict)
    next_index: int = 0

    # Receiver side
    slots: list[bytes | None] = field(default_factory=list)
    received_count: int = 0

    tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def transfer_id(self) -> str:
        return self.info.id

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def add_bytes(self, byte_count: int) -> None:
        self.transferred_bytes += byte_count
        self.speed.record(byte_count)

    @property
    def progress_percent(self) -> float:
        return self.transferred_bytes / self.info.size * 100

    @property
    def speed_bps(self) -> float:
        if not self.is_active:
            return 0.0
        return self.speed.get_speed()

    @property
    def eta_seconds(self) -> float:
        """Seconds left at the current rate; 0 when unknown or finished."""
        speed = self.speed_bps
        remaining = self.info.size - self.transferred_bytes
        if speed <= 0 or remaining <= 0:
            return 0.0
        return remaining / speed

    def to_dict(self) -> dict:
        return {
            "transfer_id": self.transfer_id,
            "file_name": self.info.name,
            "file_size": self.info.size,
            "direction": self.direction.value,
            "state": self.status.value,
            "transferred_bytes": self.transferred_bytes,
            "speed_bps": self.speed_bps,
            "eta_seconds": self.eta_seconds,
            "error_message": self.error_message,
        }


class TransferRegistry:
    """Tracks every live transfer on this side of the session."""

    def __init__(self) -> None:
        self._records: dict[str, TransferRecord] = {}

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, transfer_id: str) -> TransferRecord | None:
        return self._records.get(transfer_id)

    def active(self) -> list[TransferRecord]:
        return list(self._records.values())

    def create(
        self,
        info: FileTransferInfo,
        direction: TransferDirection,
        status: TransferState = TransferState.PENDING,
    ) -> TransferRecord:
        """Insert a new record. An id can only ever be registered once."""
        if info.id in self._records:
            raise InvalidTransitionError(f"Transfer {info.id} already registered")
        if status.is_terminal:
            raise InvalidTransitionError(f"Cannot create transfer in state {status.value}")

        record = TransferRecord(info=info, direction=direction, status=status)
        self._records[info.id] = record
        logger.debug(f"Registered {direction.value} transfer {info.id} ({info.name})")
        return record

    def transition(self, record: TransferRecord, status: TransferState) -> TransferRecord:
        """
        Move a record to ``status``.

        Reaching a terminal status removes the record and cancels every task
        attached to it, except the task calling this method.
        """
        if status not in _TRANSITIONS.get(record.status, set()):
            raise InvalidTransitionError(
                f"Transfer {record.transfer_id}: {record.status.value} -> {status.value}"
            )

        record.status = status
        logger.debug(f"Transfer {record.transfer_id} -> {status.value}")

        if status.is_terminal:
            self._records.pop(record.transfer_id, None)
            current = asyncio.current_task() if _loop_running() else None
            for task in record.tasks:
                if task is not current and not task.done():
                    task.cancel()
            record.tasks.clear()
            record.outstanding.clear()
            record.slots = []

        return record


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
