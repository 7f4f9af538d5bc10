"""Lightweight terminal progress reporting."""

from __future__ import annotations

import math
import sys
import time

ETA_EWMA_ALPHA = 0.1
ETA_MIN_SAMPLES = 3


class ProgressReporter:
    """Terminal progress bar over simulated time with an ETA estimate."""

    def __init__(
        self,
        total_time_s: float,
        *,
        refresh_seconds: float = 1.0,
        enabled: bool = False,
    ) -> None:
        self.total_time_s = max(float(total_time_s), 0.0)
        self.enabled = bool(enabled and self.total_time_s > 0.0)
        self.refresh_seconds = max(float(refresh_seconds), 0.1)
        self.start = time.monotonic()
        self.last = -math.inf
        self._finished = False
        self._isatty = sys.stdout.isatty()
        self._eta_ewma_s: float | None = None
        self._eta_samples = 0
        self._last_wall: float | None = None
        self._last_sim: float | None = None

    def update(self, step_no: int, sim_time_s: float, *, force: bool = False) -> None:
        """Render the bar at most once per ``refresh_seconds`` unless forced."""

        if not self.enabled or self._finished:
            return
        now = time.monotonic()
        self._update_eta(sim_time_s, now)
        frac = min(max(sim_time_s / self.total_time_s, 0.0), 1.0)
        is_last = frac >= 1.0
        if not force and not is_last and now - self.last < self.refresh_seconds:
            return
        self.last = now
        bar_width = 28
        filled = int(bar_width * frac)
        bar = "#" * filled + "-" * (bar_width - filled)
        eta_text = "ETA ?"
        if self._eta_ewma_s is not None and self._eta_samples >= ETA_MIN_SAMPLES:
            eta_s = self._eta_ewma_s * max(self.total_time_s - sim_time_s, 0.0)
            if eta_s >= 3600.0:
                eta_text = f"ETA {eta_s / 3600.0:.1f}h"
            elif eta_s >= 60.0:
                eta_text = f"ETA {eta_s / 60.0:.1f}m"
            else:
                eta_text = f"ETA {eta_s:.0f}s"
        line = f"[{bar}] {frac * 100:5.1f}% step {step_no} t={sim_time_s:.4g} s {eta_text}"
        if self._isatty:
            sys.stdout.write(f"\r\033[2K{line}")
            if is_last:
                sys.stdout.write("\n")
        else:
            sys.stdout.write(f"{line}\n")
        if is_last:
            self._finished = True
        sys.stdout.flush()

    def finish(self, step_no: int, sim_time_s: float) -> None:
        """Force a final render to end the line cleanly."""

        if not self.enabled:
            return
        self.update(step_no, sim_time_s, force=True)

    def _update_eta(self, sim_time_s: float, now: float) -> None:
        """Track wall seconds per simulated second with an EWMA."""

        if self._last_wall is not None and self._last_sim is not None:
            advanced = sim_time_s - self._last_sim
            if advanced > 0.0:
                rate = (now - self._last_wall) / advanced
                if math.isfinite(rate) and rate > 0.0:
                    if self._eta_ewma_s is None:
                        self._eta_ewma_s = rate
                    else:
                        self._eta_ewma_s = ETA_EWMA_ALPHA * rate + (1.0 - ETA_EWMA_ALPHA) * self._eta_ewma_s
                    self._eta_samples += 1
        self._last_wall = now
        self._last_sim = sim_time_s
