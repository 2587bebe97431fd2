# facegate/tests/conftest.py
import os
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta

# keep the import-time app away from the real data dir
os.environ.setdefault("METRICS_DB_URL", "sqlite:///./data/test_metrics.db")

import numpy as np
import pytest

from facegate.config import Settings
from facegate.db import make_engine
from facegate.metrics import MetricsStore
from facegate.schemas import IdentifyResponse


class DbClock:
    """Stands in for the store's UTC clock."""
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimers:
    """Manual timer queue driven by FakeClock."""
    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays = []
        self._queue = []
        self._seq = 0

    def call_later(self, delay_s, fn):
        self._seq += 1
        entry = {"due": self.clock.now + delay_s, "seq": self._seq, "fn": fn, "live": True}
        self._queue.append(entry)
        self.delays.append(delay_s)
        return entry

    def cancel(self, handle):
        handle["live"] = False

    @property
    def pending(self):
        return [e for e in self._queue if e["live"]]

    def run_next(self) -> bool:
        live = self.pending
        if not live:
            return False
        entry = min(live, key=lambda e: (e["due"], e["seq"]))
        entry["live"] = False
        self._queue.remove(entry)
        self.clock.now = max(self.clock.now, entry["due"])
        entry["fn"]()
        return True

    def run(self, limit: int = 10000) -> int:
        n = 0
        while n < limit and self.run_next():
            n += 1
        return n


class FakeCamera:
    def __init__(self, frame=None):
        self.frame = frame if frame is not None else np.full((480, 640, 3), 128, dtype=np.uint8)
        self.reads = 0
        self.releases = 0

    def read(self):
        self.reads += 1
        return self.frame

    def release(self):
        self.releases += 1


class InlineExecutor(Executor):
    """Runs submitted work immediately on the caller's thread."""
    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future


class DeferredExecutor(Executor):
    """Queues submitted work until drain()."""
    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def drain(self) -> int:
        jobs, self.jobs = self.jobs, []
        for future, fn, args, kwargs in jobs:
            future.set_result(fn(*args, **kwargs))
        return len(jobs)


class FakeGateway:
    """
    Scripted gateway. Each identify() advances the clock by latency_s and
    returns (or raises) the next scripted item; callables get the gateway.
    """
    def __init__(self, clock: FakeClock, results=(), latency_s: float = 0.1):
        self.clock = clock
        self.results = list(results)
        self.latency_s = latency_s
        self.identify_calls = []
        self.adapt_calls = []
        self.reports = []
        self.adapt_error = None
        self.report_error = None
        self.report_latency_s = 0.0

    def identify(self, image, session_id=None):
        self.identify_calls.append(self.clock.now)
        self.clock.advance(self.latency_s)
        item = self.results.pop(0) if self.results else unknown()
        if callable(item):
            item = item(self)
        if isinstance(item, Exception):
            raise item
        return item

    def adapt(self, image, user_id, session_id=None):
        self.adapt_calls.append((user_id, session_id))
        if self.adapt_error is not None:
            raise self.adapt_error
        return True

    def report_client_metric(self, session_id, client_rtt_ms, status=None, reason=None,
                             server_processing_ms=None):
        self.clock.advance(self.report_latency_s)
        if self.report_error is not None:
            raise self.report_error
        self.reports.append({
            "session_id": session_id,
            "client_rtt_ms": client_rtt_ms,
            "status": status,
            "reason": reason,
            "server_processing_ms": server_processing_ms,
        })
        return True


def found(user_id="u1", name="Asha", latency_ms=40.0):
    return IdentifyResponse(status="found", user_id=user_id, name=name, latency_ms=latency_ms)


def unknown(reason="no_match", latency_ms=40.0):
    return IdentifyResponse(status="unknown", reason=reason, latency_ms=latency_ms)


@pytest.fixture
def db_clock():
    return DbClock(datetime(2024, 1, 2, 12, 0, 0))


@pytest.fixture
def store(tmp_path, db_clock):
    engine = make_engine(f"sqlite:///{tmp_path / 'metrics.db'}")
    return MetricsStore(engine, retention_days=30, clock=db_clock)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return FakeTimers(clock)


@pytest.fixture
def scan_settings():
    return Settings(
        scan_duration_s=10.0,
        scan_window=5,
        scan_confirm_hits=2,
        return_home_delay_s=2.0,
        poll_min_delay_s=0.25,
        poll_max_delay_s=1.5,
        poll_fast_rtt_ms=300.0,
        poll_slow_rtt_ms=1500.0,
        gate_retry_delay_s=0.2,
        gate_retry_jitter_s=0.1,
        error_retry_delay_s=0.8,
    )
