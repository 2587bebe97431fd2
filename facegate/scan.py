"""
Face scan session: one bounded recognition attempt against the gateway.

The loop is a chain of delayed callbacks on a single thread. Each tick runs
to completion (camera read, local gate, remote identify) before the next one
is scheduled, so two ticks of one session are never in flight together.

    SCANNING --(same user_id seen scan_confirm_hits times in window)--> CONFIRMED
    SCANNING --(scan_duration_s elapsed)--------------------------------> TIMED_OUT
    any non-terminal --(cancel())--------------------------------------> CANCELLED
    IDLE --(camera cannot be opened)------------------------------------> CAMERA_ERROR
"""
from __future__ import annotations
import logging
import random
import sched
import time
import uuid
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, Optional, Protocol

from .camera import Camera, CameraError
from .config import Settings, settings as default_settings
from .gate import ForegroundGate
from .image_io import encode_frame_jpeg
from .logger import log_event


class ScanPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    CAMERA_ERROR = "camera_error"


TERMINAL_PHASES = frozenset({
    ScanPhase.CONFIRMED, ScanPhase.TIMED_OUT, ScanPhase.CANCELLED, ScanPhase.CAMERA_ERROR,
})


class RecentMatches:
    """Fixed-capacity window of user_id | None, oldest evicted first."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: Deque[Optional[str]] = deque(maxlen=capacity)

    def append(self, user_id: Optional[str]) -> None:
        self._items.append(user_id)

    def count(self, user_id: str) -> int:
        return sum(1 for x in self._items if x == user_id)

    def confirmed(self, min_hits: int) -> Optional[str]:
        """Most recent identity seen at least `min_hits` times, else None."""
        for user_id in reversed(self._items):
            if user_id is not None and self.count(user_id) >= min_hits:
                return user_id
        return None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Optional[str]]:
        return iter(self._items)


def next_poll_delay(rtt_ms: Optional[float], settings: Settings) -> float:
    """
    Delay before the next identify call. Non-decreasing in rtt_ms: fast
    answers poll at poll_min_delay_s, slow ones back off to poll_max_delay_s.
    """
    lo, hi = settings.poll_min_delay_s, settings.poll_max_delay_s
    fast, slow = settings.poll_fast_rtt_ms, settings.poll_slow_rtt_ms
    if rtt_ms is None or rtt_ms <= fast:
        return lo
    if rtt_ms >= slow or slow <= fast:
        return hi
    frac = (rtt_ms - fast) / (slow - fast)
    return lo + frac * (hi - lo)


class Timers(Protocol):
    def call_later(self, delay_s: float, fn: Callable[[], None]) -> Any: ...
    def cancel(self, handle: Any) -> None: ...


class SchedTimers:
    """Single-threaded timers on sched.scheduler; run() blocks until idle."""

    def __init__(self):
        self._sched = sched.scheduler(time.monotonic, time.sleep)

    def call_later(self, delay_s: float, fn: Callable[[], None]):
        return self._sched.enter(max(0.0, delay_s), 0, fn)

    def cancel(self, handle) -> None:
        try:
            self._sched.cancel(handle)
        except ValueError:
            pass  # already fired

    def run(self) -> None:
        self._sched.run()


@dataclass
class ScanResult:
    session_id: str
    phase: ScanPhase
    user_id: Optional[str] = None
    name: Optional[str] = None
    error_class: Optional[str] = None  # camera|connection|not_recognized
    remote_calls: int = 0
    elapsed_s: float = 0.0


class ScanSession:
    def __init__(
        self,
        gateway,
        camera_factory: Callable[[], Camera],
        gate: Optional[ForegroundGate] = None,
        timers: Optional[Timers] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        on_phase: Optional[Callable[["ScanSession"], None]] = None,
        on_hint: Optional[Callable[[str], None]] = None,
        on_return_home: Optional[Callable[["ScanSession"], None]] = None,
        reporter: Optional[Executor] = None,
    ):
        self.settings = settings or default_settings
        self.gateway = gateway
        self.gate = gate or ForegroundGate(settings=self.settings)
        self._camera_factory = camera_factory
        self._timers = timers or SchedTimers()
        self._clock = clock
        self._rng = rng or random.Random()
        self._on_phase = on_phase
        self._on_hint = on_hint
        self._on_return_home = on_return_home
        # metric reports run here, never on the tick path
        self._owns_reporter = reporter is None
        self._reporter = reporter or ThreadPoolExecutor(max_workers=1, thread_name_prefix="facegate-report")

        self.session_id = uuid.uuid4().hex
        self.phase = ScanPhase.IDLE
        self.started_at: Optional[float] = None
        self.recent_matches = RecentMatches(self.settings.scan_window)
        self.confirmed_user_id: Optional[str] = None
        self.confirmed_name: Optional[str] = None
        self.error_class: Optional[str] = None
        self.remote_calls = 0
        self.remote_failures = 0

        self._camera: Optional[Camera] = None
        self._tick_handle = None
        self._home_handle = None
        self._cancelled = False
        self._names: Dict[str, Optional[str]] = {}
        self._adapted = set()

    # ------------------------------------------------------------ lifecycle

    def start(self) -> None:
        if self.phase != ScanPhase.IDLE:
            raise RuntimeError(f"scan already {self.phase.value}")
        try:
            self._camera = self._camera_factory()
        except CameraError as exc:
            log_event("scan_camera_error", level=logging.ERROR,
                      session_id=self.session_id, error=str(exc))
            self.error_class = "camera"
            self._enter(ScanPhase.CAMERA_ERROR)
            return
        self.started_at = self._clock()
        self._enter(ScanPhase.SCANNING)
        self._schedule_tick(0.0)

    def cancel(self) -> None:
        """Tear down: release the camera, clear every pending timer, drop late results."""
        if self._cancelled:
            return
        self._cancelled = True
        self._stop()
        if self._home_handle is not None:
            self._timers.cancel(self._home_handle)
            self._home_handle = None
        if self.phase not in TERMINAL_PHASES:
            self._enter(ScanPhase.CANCELLED)

    def confirm(self, user_id: str, name: Optional[str] = None, frame_jpeg: Optional[bytes] = None) -> None:
        """
        Enter CONFIRMED for user_id. Re-entry for the same identity only
        re-checks passive adaptation, which fires at most once per user_id.
        """
        if self._cancelled:
            return
        if self.phase == ScanPhase.SCANNING:
            self.confirmed_user_id = user_id
            self.confirmed_name = name if name is not None else self._names.get(user_id)
            self._stop()
            self._enter(ScanPhase.CONFIRMED)
        elif self.phase != ScanPhase.CONFIRMED or user_id != self.confirmed_user_id:
            return
        if frame_jpeg is not None:
            self._adapt_once(user_id, frame_jpeg)

    @property
    def active(self) -> bool:
        return self.phase == ScanPhase.SCANNING and not self._cancelled

    @property
    def camera_open(self) -> bool:
        return self._camera is not None

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self._clock() - self.started_at

    def result(self) -> ScanResult:
        return ScanResult(
            session_id=self.session_id,
            phase=self.phase,
            user_id=self.confirmed_user_id,
            name=self.confirmed_name,
            error_class=self.error_class,
            remote_calls=self.remote_calls,
            elapsed_s=round(self.elapsed(), 3),
        )

    # ---------------------------------------------------------------- ticks

    def _schedule_tick(self, delay_s: float) -> None:
        remaining = self.settings.scan_duration_s - self.elapsed()
        delay_s = max(0.0, min(delay_s, remaining))
        self._tick_handle = self._timers.call_later(delay_s, self._tick)

    def _tick(self) -> None:
        self._tick_handle = None
        if not self.active:
            return
        if self.elapsed() >= self.settings.scan_duration_s:
            self._time_out()
            return
        try:
            delay = self._run_tick()
        except Exception as exc:
            log_event("scan_tick_failed", level=logging.WARNING,
                      session_id=self.session_id, error=repr(exc))
            if not self.active:
                return
            self.recent_matches.append(None)
            delay = self.settings.error_retry_delay_s
        if delay is None or not self.active:
            return
        if self.elapsed() >= self.settings.scan_duration_s:
            self._time_out()
            return
        self._schedule_tick(delay)

    def _run_tick(self) -> Optional[float]:
        """One gate -> capture -> identify round. Returns the next delay, or None when terminal."""
        s = self.settings
        frame = self._camera.read()
        decision = self.gate.evaluate(frame)
        if decision.advisory:
            self._hint(decision.advisory)
        if not decision.accepted:
            self._hint(decision.hint)
            self.recent_matches.append(None)
            return s.gate_retry_delay_s + self._rng.uniform(0.0, s.gate_retry_jitter_s)

        jpeg = encode_frame_jpeg(frame, s.capture_max_width, s.capture_max_height, s.capture_jpeg_quality)
        self.remote_calls += 1
        t0 = self._clock()
        try:
            result = self.gateway.identify(jpeg, session_id=self.session_id)
        except Exception:
            self.remote_failures += 1
            raise
        rtt_ms = (self._clock() - t0) * 1000
        if not self.active:
            log_event("scan_result_discarded", session_id=self.session_id, status=result.status)
            return None

        if result.status == "error":
            self.remote_failures += 1
        self._report(rtt_ms, result)

        if result.status == "found" and result.user_id:
            self._names[result.user_id] = result.name
            self.recent_matches.append(result.user_id)
            confirmed = self.recent_matches.confirmed(s.scan_confirm_hits)
            if confirmed is not None:
                self.confirm(confirmed, self._names.get(confirmed), jpeg)
                return None
        else:
            self.recent_matches.append(None)
        return next_poll_delay(rtt_ms, s)

    def _report(self, rtt_ms: float, result) -> None:
        """Fire-and-forget: queue the report and return without waiting on it."""
        try:
            self._reporter.submit(self._send_report, rtt_ms, result.status, result.reason, result.latency_ms)
        except RuntimeError as exc:
            # executor already shut down
            log_event("scan_metric_report_dropped", level=logging.WARNING,
                      session_id=self.session_id, error=repr(exc))

    def _send_report(self, rtt_ms: float, status, reason, server_processing_ms) -> None:
        try:
            self.gateway.report_client_metric(
                self.session_id,
                rtt_ms,
                status=status,
                reason=reason,
                server_processing_ms=server_processing_ms,
            )
        except Exception as exc:
            log_event("scan_metric_report_failed", level=logging.WARNING,
                      session_id=self.session_id, error=repr(exc))

    def _adapt_once(self, user_id: str, frame_jpeg: bytes) -> None:
        if user_id in self._adapted:
            return
        self._adapted.add(user_id)
        try:
            ok = self.gateway.adapt(frame_jpeg, user_id, session_id=self.session_id)
        except Exception as exc:
            log_event("scan_adapt_failed", level=logging.WARNING,
                      session_id=self.session_id, user_id=user_id, error=repr(exc))
            return
        if not ok:
            log_event("scan_adapt_rejected", level=logging.WARNING,
                      session_id=self.session_id, user_id=user_id)

    # ------------------------------------------------------------ terminals

    def _time_out(self) -> None:
        if self.remote_calls and self.remote_failures >= self.remote_calls:
            self.error_class = "connection"
        else:
            self.error_class = "not_recognized"
        self._stop()
        self._enter(ScanPhase.TIMED_OUT)
        self._home_handle = self._timers.call_later(self.settings.return_home_delay_s, self._return_home)

    def _return_home(self) -> None:
        self._home_handle = None
        if self._cancelled:
            return
        if self._on_return_home is not None:
            self._on_return_home(self)

    def _stop(self) -> None:
        if self._tick_handle is not None:
            self._timers.cancel(self._tick_handle)
            self._tick_handle = None
        camera, self._camera = self._camera, None
        if camera is not None:
            try:
                camera.release()
            except Exception as exc:
                log_event("scan_camera_release_failed", level=logging.WARNING,
                          session_id=self.session_id, error=repr(exc))
        if self._owns_reporter:
            # queued reports still go out
            self._reporter.shutdown(wait=False)

    def _enter(self, phase: ScanPhase) -> None:
        self.phase = phase
        log_event("scan_phase", session_id=self.session_id, phase=phase.value,
                  elapsed_s=round(self.elapsed(), 3), user_id=self.confirmed_user_id,
                  error_class=self.error_class)
        if self._on_phase is not None:
            self._on_phase(self)

    def _hint(self, text: Optional[str]) -> None:
        if text and self._on_hint is not None:
            self._on_hint(text)
