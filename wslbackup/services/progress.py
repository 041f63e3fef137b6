"""
Progress tracking for long-running restore and deployment operations.

Provides:
- Phase tracking (validating, importing, smoke check, overlays)
- Byte-based progress when the install directory can be measured
- Transfer rate and ETA estimation from recent samples
- Thread-safe snapshots for logging and API responses
"""

import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)

PHASES = ["preparing", "validating", "importing", "verifying", "overlaying", "configuring", "completed"]


@dataclass
class ProgressSample:
    timestamp: float
    elapsed: float
    bytes_written: Optional[int]


@dataclass
class OperationProgress:
    """State of one tracked operation."""
    operation: str
    target: str
    phase: str = "preparing"
    bytes_written: int = 0
    bytes_expected: int = 0
    steps_done: int = 0
    steps_total: int = 0
    polls: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _samples: List[ProgressSample] = field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float:
        if not self.started_at:
            return 0.0
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    @property
    def percent(self) -> Optional[float]:
        if self.phase == "completed":
            return 100.0
        if self.bytes_expected > 0 and self.bytes_written > 0:
            return min(99.0, (self.bytes_written / self.bytes_expected) * 100)
        if self.steps_total > 0:
            return min(99.0, (self.steps_done / self.steps_total) * 100)
        return None

    @property
    def rate_bps(self) -> float:
        """Write rate from the last 10 seconds of samples."""
        samples = [s for s in self._samples if s.bytes_written is not None]
        if len(samples) < 2:
            return 0.0

        now = time.time()
        recent = [s for s in samples if now - s.timestamp < 10]
        if len(recent) < 2:
            recent = samples[-2:]

        time_delta = recent[-1].timestamp - recent[0].timestamp
        bytes_delta = recent[-1].bytes_written - recent[0].bytes_written
        if time_delta <= 0:
            return 0.0
        return bytes_delta / time_delta

    @property
    def eta_seconds(self) -> Optional[int]:
        if self.bytes_expected <= 0 or self.bytes_written <= 0:
            return None
        if self.bytes_written >= self.bytes_expected:
            return 0
        rate = self.rate_bps
        if rate <= 0:
            return None
        return int((self.bytes_expected - self.bytes_written) / rate)

    def to_dict(self) -> Dict[str, Any]:
        percent = self.percent
        return {
            "operation": self.operation,
            "target": self.target,
            "phase": self.phase,
            "percent": round(percent, 1) if percent is not None else None,
            "bytes_written": self.bytes_written,
            "bytes_expected": self.bytes_expected,
            "steps_done": self.steps_done,
            "steps_total": self.steps_total,
            "polls": self.polls,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "rate_bps": round(self.rate_bps),
            "eta_seconds": self.eta_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


ProgressCallback = Callable[[Dict[str, Any]], None]


class ProgressTracker:
    """
    Track progress for a single operation.

    Updated by the orchestrator at every poll; listeners receive a snapshot
    after each update.
    """

    def __init__(self, operation: str, target: str, callback: Optional[ProgressCallback] = None):
        self._lock = threading.Lock()
        self._state = OperationProgress(operation=operation, target=target)
        self._callback = callback

    def start(self, bytes_expected: int = 0, steps_total: int = 0):
        with self._lock:
            self._state.started_at = datetime.now(timezone.utc)
            self._state.bytes_expected = bytes_expected
            self._state.steps_total = steps_total
        self._notify()

    def set_phase(self, phase: str):
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        with self._lock:
            self._state.phase = phase
        logger.debug(f"{self._state.operation} {self._state.target} phase: {phase}")
        self._notify()

    def poll(self, bytes_written: Optional[int] = None):
        """Record one polling tick."""
        with self._lock:
            state = self._state
            state.polls += 1
            if bytes_written is not None:
                state.bytes_written = bytes_written
            state._samples.append(ProgressSample(time.time(), state.elapsed_seconds, bytes_written))
            if len(state._samples) > 20:
                state._samples = state._samples[-20:]
        self._notify()

    def step_completed(self):
        with self._lock:
            self._state.steps_done += 1
        self._notify()

    def finish(self, phase: str = "completed"):
        with self._lock:
            self._state.phase = phase
            self._state.finished_at = datetime.now(timezone.utc)
        self._notify()

    def get_progress(self) -> Dict[str, Any]:
        with self._lock:
            return self._state.to_dict()

    def _notify(self):
        if self._callback is None:
            return
        try:
            self._callback(self.get_progress())
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
