from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

import numpy as np

from camrig.errors import DecodeError, Issue

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], np.ndarray]


@dataclass(frozen=True)
class Frame:
    camera_id: int
    pixels: np.ndarray  # (H,W,3) uint8 BGR
    timestamp_s: float


@dataclass(frozen=True)
class SynchronizedFrameSet:
    """
    Frames drained together, keyed by camera id, plus the decode failures of
    the same window. Timestamps are expected to lie within `tolerance_s` of
    each other; a wider spread is flagged, never rejected.
    """

    frames: Mapping[int, Frame]
    issues: list[Issue] = field(default_factory=list)
    tolerance_s: float = 0.016667

    @property
    def camera_ids(self) -> list[int]:
        return sorted(self.frames)

    @property
    def spread_s(self) -> float:
        if len(self.frames) < 2:
            return 0.0
        ts = [f.timestamp_s for f in self.frames.values()]
        return float(max(ts) - min(ts))

    @property
    def in_sync(self) -> bool:
        return self.spread_s <= self.tolerance_s

    def __len__(self) -> int:
        return len(self.frames)


class FrameSyncBuffer:
    """
    Latest decoded frame per camera, collected until a drain.

    `submit` is safe to call from several producer threads. Decoding happens
    outside the lock; only the store is guarded.
    """

    def __init__(self, camera_count: int, decoder: Decoder, tolerance_s: float = 0.016667) -> None:
        if camera_count < 1:
            raise ValueError("camera_count must be >= 1")
        self.camera_count = int(camera_count)
        self.tolerance_s = float(tolerance_s)
        self._decoder = decoder
        self._cond = threading.Condition()
        self._frames: dict[int, Frame] = {}
        self._failures: dict[int, Issue] = {}

    def _check_camera(self, camera_id: int) -> int:
        cid = int(camera_id)
        if not 0 <= cid < self.camera_count:
            raise ValueError(f"unknown camera id {camera_id} (rig has {self.camera_count} cameras)")
        return cid

    def submit(self, camera_id: int, data: bytes, timestamp_s: float) -> bool:
        """
        Decode and store one frame. Returns False when decoding failed; the
        failure is kept and reported by the next drain.
        """
        cid = self._check_camera(camera_id)
        try:
            pixels = self._decoder(data)
        except DecodeError as e:
            logger.warning("camera %d: frame at t=%.6f failed to decode: %s", cid, timestamp_s, e)
            issue = Issue(kind="DecodeFailure", stage="sync", message=str(e), camera_id=cid)
            with self._cond:
                self._frames.pop(cid, None)
                self._failures[cid] = issue
                self._cond.notify_all()
            return False

        frame = Frame(camera_id=cid, pixels=pixels, timestamp_s=float(timestamp_s))
        with self._cond:
            self._frames[cid] = frame
            self._failures.pop(cid, None)
            self._cond.notify_all()
        return True

    def _reported(self) -> int:
        return len(self._frames) + len(self._failures)

    def drain(self, timeout: float | None = None) -> SynchronizedFrameSet:
        """
        Wait until every camera has reported (a frame or a failure) or the
        timeout elapses, then snapshot and clear the buffer in one step.
        `timeout=None` returns whatever is buffered without waiting.
        """
        with self._cond:
            if timeout is not None:
                deadline = time.monotonic() + max(float(timeout), 0.0)
                while self._reported() < self.camera_count:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0.0:
                        break
                    self._cond.wait(remaining)
            frames = dict(self._frames)
            failures = [self._failures[k] for k in sorted(self._failures)]
            self._frames.clear()
            self._failures.clear()

        fs = SynchronizedFrameSet(frames=frames, issues=list(failures), tolerance_s=self.tolerance_s)
        if not fs.in_sync:
            msg = f"timestamp spread {fs.spread_s * 1e3:.2f} ms exceeds {self.tolerance_s * 1e3:.3f} ms"
            logger.warning("frame set: %s", msg)
            fs.issues.append(Issue(kind="SynchronizationWarning", stage="sync", message=msg))
        logger.debug("drained %d frames, %d decode failures", len(frames), len(failures))
        return fs

    def clear(self) -> None:
        with self._cond:
            self._frames.clear()
            self._failures.clear()
            self._cond.notify_all()
