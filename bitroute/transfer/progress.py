"""
Transfer Progress Telemetry

Progress events, the rolling speed estimator and the cancellation token
shared by the send and receive sides.
"""

from enum import Enum
from dataclasses import dataclass
from typing import Optional, Callable


class TransferStatus(Enum):
    PREPARING = "preparing"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class TransferProgress:
    """One progress event for a single file."""
    id: str
    filename: str
    size: int
    progress: int  # percent, 0-100
    status: TransferStatus
    speed: float = 0.0  # bytes/second
    eta: Optional[float] = None  # seconds
    bytes_transferred: int = 0
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TransferStatus.COMPLETED, TransferStatus.ERROR)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'filename': self.filename,
            'size': self.size,
            'progress': self.progress,
            'status': self.status.value,
            'speed': self.speed,
            'eta': self.eta,
            'bytes_transferred': self.bytes_transferred,
            'error': self.error,
        }


ProgressCallback = Callable[[TransferProgress], None]


def percent_of(done: int, total: int) -> int:
    """Whole percent done; 100 only when done == total."""
    if total <= 0:
        return 100
    return min(100, done * 100 // total)


@dataclass
class SpeedEstimator:
    """
    Rolling transfer-rate estimate.

    The rate is recomputed only when at least sample_interval seconds have
    passed since the previous sample, so a burst of small chunks cannot
    produce a wildly noisy instantaneous speed.
    """
    sample_interval: float = 0.5
    last_sample_time: Optional[float] = None
    last_sample_bytes: int = 0
    speed: float = 0.0

    def start(self, now: float, total_bytes: int = 0):
        self.last_sample_time = now
        self.last_sample_bytes = total_bytes
        self.speed = 0.0

    def update(self, now: float, total_bytes: int) -> float:
        """Record the byte count at time now; returns the current estimate."""
        if self.last_sample_time is None:
            self.start(now, total_bytes)
            return self.speed

        elapsed = now - self.last_sample_time
        if elapsed >= self.sample_interval and elapsed > 0:
            self.speed = (total_bytes - self.last_sample_bytes) / elapsed
            self.last_sample_time = now
            self.last_sample_bytes = total_bytes

        return self.speed

    def eta(self, bytes_remaining: int) -> Optional[float]:
        """Seconds left at the current speed, or None while speed is zero."""
        if self.speed <= 0:
            return None
        return bytes_remaining / self.speed


class CancellationToken:
    """Cooperative cancellation flag checked by the send loop."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True


def format_size(bytes_count: float) -> str:
    """Format bytes as human-readable size."""
    if bytes_count <= 0:
        return "0 B"
    for unit in ['B', 'KB', 'MB', 'GB']:
        if bytes_count < 1024:
            break
        bytes_count /= 1024
    else:
        unit = 'TB'
    return f"{bytes_count:.2f}".rstrip('0').rstrip('.') + f" {unit}"
