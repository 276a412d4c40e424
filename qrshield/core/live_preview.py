"""
qrshield/core/live_preview.py

QRShield - Live Preview Frame Throttle
--------------------------------------
• Wraps a QRSecurityPipeline for callers feeding camera preview frames
• Frames arriving before the minimum interval are dropped, not queued
• At most one analysis runs at a time; overlapping frames are dropped

Author: QRShield Team
License: Apache 2.0
"""

import asyncio
import threading
import time
from typing import Callable, Optional

from qrshield.core.config_loader import LivePreviewSettings
from qrshield.core.pipeline import QRSecurityPipeline, SecurityResult
from qrshield.utils.logger import get_logger

logger = get_logger(__name__)


class LivePreviewAnalyzer:
    """Throttled per-frame analysis for live camera preview."""

    def __init__(self, pipeline: QRSecurityPipeline, min_interval_ms: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must be non-negative")
        self.pipeline = pipeline
        self.min_interval = min_interval_ms / 1000.0
        self._clock = clock
        self._busy = threading.Lock()
        self._counter_lock = threading.Lock()
        self._last_started: Optional[float] = None
        self._last_result: Optional[SecurityResult] = None
        self.frames_analyzed = 0
        self.frames_dropped = 0

    @classmethod
    def from_settings(cls, pipeline: QRSecurityPipeline,
                      settings: Optional[LivePreviewSettings] = None) -> "LivePreviewAnalyzer":
        settings = settings or LivePreviewSettings()
        return cls(pipeline, min_interval_ms=settings.min_interval_ms)

    @property
    def last_result(self) -> Optional[SecurityResult]:
        return self._last_result

    def submit(self, frame_bytes: bytes, qr_content: Optional[str] = None) -> Optional[SecurityResult]:
        """Analyse a frame, or return None if it was dropped."""
        if not self._busy.acquire(blocking=False):
            self._record_drop()
            logger.debug("Frame dropped: analysis already in progress")
            return None

        try:
            now = self._clock()
            if self._last_started is not None and now - self._last_started < self.min_interval:
                self._record_drop()
                return None

            self._last_started = now
            result = self.pipeline.analyze(frame_bytes, qr_content)
            self._last_result = result
            with self._counter_lock:
                self.frames_analyzed += 1
            return result
        finally:
            self._busy.release()

    def _record_drop(self):
        with self._counter_lock:
            self.frames_dropped += 1

    async def submit_async(self, frame_bytes: bytes, qr_content: Optional[str] = None) -> Optional[SecurityResult]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.submit, frame_bytes, qr_content)

    def reset(self):
        with self._busy, self._counter_lock:
            self._last_started = None
            self._last_result = None
            self.frames_analyzed = 0
            self.frames_dropped = 0
