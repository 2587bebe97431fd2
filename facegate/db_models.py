from __future__ import annotations
from sqlalchemy import Column, DateTime, Float, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class MetricEvent(Base):
    """One latency/status observation. Rows are append-only."""
    __tablename__ = "identify_metrics_events"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime, nullable=False, index=True)  # naive UTC, server-assigned
    session_id = Column(String(128), index=True)
    source = Column(String(16), nullable=False, index=True)  # server|client
    status = Column(String(16))  # found|unknown|error
    reason = Column(String(64))
    server_processing_ms = Column(Float)
    gateway_upstream_ms = Column(Float)
    client_rtt_ms = Column(Float)
    network_latency_ms_est = Column(Float)

    __table_args__ = (
        Index("ix_identify_metrics_status_reason", "status", "reason"),
    )

TIMING_COLUMNS = (
    "server_processing_ms",
    "gateway_upstream_ms",
    "client_rtt_ms",
    "network_latency_ms_est",
)
