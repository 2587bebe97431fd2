"""
Latency telemetry for identify calls.

MetricsStore owns one append-only table of MetricEvent rows. Writes come from
two vantage points (the gateway after proxying, the scan client after its own
round trip) and never raise on storage failure. Reads rebuild per-session
funnels from the flat log on demand; sessions are never materialized.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import groupby
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import make_session_factory
from .db_models import TIMING_COLUMNS, Base, MetricEvent
from .logger import log_event
from .utils import mean, normalize_ms, normalize_text, percentile, round_metric

SOURCES = ("server", "client")
STATUSES = ("found", "unknown", "error")


def utcnow() -> datetime:
    """Naive UTC, the representation stored in `created_at`."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def estimate_network_latency(client_rtt_ms, server_processing_ms) -> Optional[float]:
    """RTT minus service time, floored at 0. None unless both are known."""
    rtt = normalize_ms(client_rtt_ms)
    processing = normalize_ms(server_processing_ms)
    if rtt is None or processing is None:
        return None
    return max(0.0, rtt - processing)


class MetricsWindowError(ValueError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class MetricsWindow:
    mode: str  # today|custom
    start: datetime  # aware UTC, inclusive
    end: datetime  # aware UTC, exclusive

    @property
    def db_start(self) -> datetime:
        return self.start.astimezone(timezone.utc).replace(tzinfo=None)

    @property
    def db_end(self) -> datetime:
        return self.end.astimezone(timezone.utc).replace(tzinfo=None)

    def to_dict(self) -> dict:
        return {"from": _iso(self.start), "to": _iso(self.end), "mode": self.mode}


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


_FRACTION = re.compile(r"\.(\d+)(?=$|[+-]\d)")


def _parse_timestamp(raw: str) -> Optional[datetime]:
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_window(from_raw: Optional[str] = None, to_raw: Optional[str] = None,
                   now: Optional[datetime] = None) -> MetricsWindow:
    """
    Both bounds absent -> local midnight today until now.
    Exactly one bound, unparseable bounds or from >= to raise MetricsWindowError.
    """
    from_raw = (from_raw or "").strip()
    to_raw = (to_raw or "").strip()

    if bool(from_raw) != bool(to_raw):
        raise MetricsWindowError(
            "partial_window",
            "Both 'from' and 'to' must be provided together for a custom range.",
        )

    if not from_raw:
        now = now or datetime.now(timezone.utc)
        local_now = now.astimezone()
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return MetricsWindow(
            mode="today",
            start=midnight.astimezone(timezone.utc),
            end=now.astimezone(timezone.utc),
        )

    start = _parse_timestamp(from_raw)
    end = _parse_timestamp(to_raw)
    if start is None or end is None:
        raise MetricsWindowError(
            "invalid_timestamp",
            "Invalid date format. Use ISO datetime for 'from' and 'to'.",
        )
    if start >= end:
        raise MetricsWindowError("empty_window", "'from' must be earlier than 'to'.")
    return MetricsWindow(mode="custom", start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc))


@dataclass
class _SessionAccumulator:
    session_id: str
    started_at: datetime
    ended_at: datetime
    attempt_count: int = 0
    attempts_until_success: Optional[int] = None
    first_success_at: Optional[datetime] = None
    final_status: Optional[str] = None
    final_reason: Optional[str] = None
    server_ms: List[float] = field(default_factory=list)
    gateway_ms: List[float] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.first_success_at is not None

    @property
    def first_success_time_ms(self) -> Optional[float]:
        if self.first_success_at is None:
            return None
        delta = (self.first_success_at - self.started_at).total_seconds() * 1000
        return max(0.0, delta)

    def add(self, row: MetricEvent) -> None:
        self.attempt_count += 1
        self.ended_at = row.created_at
        self.final_status = row.status
        self.final_reason = row.reason
        if row.server_processing_ms is not None:
            self.server_ms.append(row.server_processing_ms)
        if row.gateway_upstream_ms is not None:
            self.gateway_ms.append(row.gateway_upstream_ms)
        if self.first_success_at is None and row.status == "found":
            self.attempts_until_success = self.attempt_count
            self.first_success_at = row.created_at


class MetricsStore:
    def __init__(self, engine: Engine, retention_days: int = 30,
                 clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.SessionLocal = make_session_factory(engine)
        self.retention_days = retention_days
        self._clock = clock
        Base.metadata.create_all(bind=engine)

    # ---------------------------------------------------------------- ingest

    def record_event(
        self,
        source: str,
        session_id: Optional[str] = None,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        server_processing_ms=None,
        gateway_upstream_ms=None,
        client_rtt_ms=None,
        network_latency_ms_est=None,
    ) -> bool:
        """
        Normalize and persist one event, then prune expired rows.
        Returns False (after logging) when storage fails; never raises for that.
        """
        if source not in SOURCES:
            raise ValueError(f"Unsupported metric source: {source!r}")
        status = normalize_text(status)
        if status not in STATUSES:
            status = None
        session_id = normalize_text(session_id)
        try:
            row = MetricEvent(
                created_at=self._clock(),
                session_id=session_id,
                source=source,
                status=status,
                reason=normalize_text(reason),
                server_processing_ms=normalize_ms(server_processing_ms),
                gateway_upstream_ms=normalize_ms(gateway_upstream_ms),
                client_rtt_ms=normalize_ms(client_rtt_ms),
                network_latency_ms_est=normalize_ms(network_latency_ms_est),
            )
        except (TypeError, ValueError, OverflowError) as exc:
            log_event("metrics_normalize_failed", level=logging.ERROR,
                      source=source, session_id=session_id, error=repr(exc))
            return False
        db = self.SessionLocal()
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            db.close()
            log_event("metrics_write_failed", level=logging.ERROR,
                      source=source, session_id=session_id, error=str(exc))
            return False
        try:
            self._prune(db)
        except SQLAlchemyError as exc:
            db.rollback()
            log_event("metrics_prune_failed", level=logging.WARNING, error=str(exc))
        finally:
            db.close()
        return True

    def _prune(self, db) -> int:
        cutoff = self._clock() - timedelta(days=self.retention_days)
        deleted = (
            db.query(MetricEvent)
            .filter(MetricEvent.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted

    # ------------------------------------------------------------------ read

    def summary(self, window: MetricsWindow) -> dict:
        db = self.SessionLocal()
        try:
            out = {"request_count": self._request_count(db, window)}
            for column in TIMING_COLUMNS:
                out[column] = self._column_stats(db, column, window)
            out["status_reason_counts"] = self._status_reason_counts(db, window)
            out["grouped"] = self._grouped(db, window)
            return out
        finally:
            db.close()

    def _in_window(self, query, window: MetricsWindow):
        return query.filter(
            MetricEvent.created_at >= window.db_start,
            MetricEvent.created_at < window.db_end,
        )

    def _request_count(self, db, window: MetricsWindow) -> int:
        q = db.query(func.count(MetricEvent.id)).filter(MetricEvent.source == "server")
        return int(self._in_window(q, window).scalar() or 0)

    def _column_stats(self, db, column: str, window: MetricsWindow) -> Dict[str, Optional[float]]:
        if column not in TIMING_COLUMNS:
            raise ValueError(f"Unsupported metric column: {column}")
        col = getattr(MetricEvent, column)
        q = db.query(func.avg(col), func.min(col), func.max(col)).filter(col.isnot(None))
        avg, lo, hi = self._in_window(q, window).one()
        last_q = db.query(col).filter(col.isnot(None))
        last = self._in_window(last_q, window).order_by(MetricEvent.id.desc()).limit(1).scalar()
        return {
            "avg": round_metric(avg),
            "min": round_metric(lo),
            "max": round_metric(hi),
            "last": round_metric(last),
        }

    def _status_reason_counts(self, db, window: MetricsWindow) -> List[dict]:
        count = func.count(MetricEvent.id)
        q = (
            db.query(MetricEvent.status, MetricEvent.reason, count)
            .filter(MetricEvent.source == "server")
        )
        rows = self._in_window(q, window).group_by(MetricEvent.status, MetricEvent.reason).all()
        out = [{"status": s, "reason": r, "count": int(c)} for s, r, c in rows]
        out.sort(key=lambda x: (-x["count"], x["status"] or "", x["reason"] or ""))
        return out

    def _client_averages(self, db, window: MetricsWindow) -> Dict[str, tuple]:
        q = (
            db.query(
                MetricEvent.session_id,
                func.avg(MetricEvent.client_rtt_ms),
                func.avg(MetricEvent.network_latency_ms_est),
            )
            .filter(MetricEvent.source == "client", MetricEvent.session_id.isnot(None))
        )
        rows = self._in_window(q, window).group_by(MetricEvent.session_id).all()
        return {sid: (rtt, net) for sid, rtt, net in rows}

    def _grouped(self, db, window: MetricsWindow) -> dict:
        q = db.query(MetricEvent).filter(
            MetricEvent.source == "server", MetricEvent.session_id.isnot(None)
        )
        rows = self._in_window(q, window).order_by(MetricEvent.session_id, MetricEvent.id).all()
        client_avgs = self._client_averages(db, window)

        accs: List[_SessionAccumulator] = []
        for session_id, group in groupby(rows, key=lambda r: r.session_id):
            group = list(group)
            acc = _SessionAccumulator(session_id, group[0].created_at, group[0].created_at)
            for row in group:
                acc.add(row)
            accs.append(acc)
        accs.sort(key=lambda a: (a.started_at, a.session_id), reverse=True)

        sessions = []
        for acc in accs:
            rtt, net = client_avgs.get(acc.session_id, (None, None))
            sessions.append({
                "session_id": acc.session_id,
                "started_at": _iso(acc.started_at.replace(tzinfo=timezone.utc)),
                "ended_at": _iso(acc.ended_at.replace(tzinfo=timezone.utc)),
                "attempt_count": acc.attempt_count,
                "success": acc.success,
                "attempts_until_success": acc.attempts_until_success,
                "first_success_at": _iso(acc.first_success_at.replace(tzinfo=timezone.utc)) if acc.first_success_at else None,
                "first_success_time_ms": round_metric(acc.first_success_time_ms),
                "avg_server_processing_ms": round_metric(mean(acc.server_ms)),
                "avg_gateway_upstream_ms": round_metric(mean(acc.gateway_ms)),
                "avg_client_rtt_ms": round_metric(rtt),
                "avg_network_latency_ms_est": round_metric(net),
                "final_status": acc.final_status,
                "final_reason": acc.final_reason,
            })

        successful = [a for a in accs if a.success]
        first_success = [a.first_success_time_ms for a in successful]
        per_session_latency = [m for m in (mean(a.server_ms) for a in accs) if m is not None]
        total = len(accs)

        return {
            "window": window.to_dict(),
            "session_summary": {
                "total_sessions": total,
                "successful_sessions": len(successful),
                "failed_sessions": total - len(successful),
                "success_rate": round_metric(len(successful) / total) if total else 0,
                "avg_attempts_until_success": round_metric(mean(a.attempts_until_success for a in successful)),
                "p50_first_success_time_ms": round_metric(percentile(first_success, 50)),
                "p90_first_success_time_ms": round_metric(percentile(first_success, 90)),
                "avg_attempt_latency_per_session_ms": round_metric(mean(per_session_latency)),
            },
            "sessions": sessions,
        }
