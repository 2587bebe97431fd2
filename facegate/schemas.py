from __future__ import annotations
from typing import Any, Optional, Tuple
from pydantic import BaseModel, ValidationError, field_validator

class IdentifyResponse(BaseModel):
    """What the scan loop needs from the face service's identify answer."""
    status: str = "error"
    name: Optional[str] = None
    user_id: Optional[str] = None
    reason: Optional[str] = None
    latency_ms: Optional[float] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _user_id_as_text(cls, v: Any):
        if v is None or isinstance(v, bool):
            return None
        return str(v)

    @field_validator("latency_ms", mode="before")
    @classmethod
    def _latency_number(cls, v: Any):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return v

    @field_validator("name", "reason", mode="before")
    @classmethod
    def _optional_text(cls, v: Any):
        return v if isinstance(v, str) else None

class ClientMetricIn(BaseModel):
    """Body of POST /api/metrics/face/client."""
    session_id: Optional[str] = None
    client_rtt_ms: float
    status: Optional[str] = None
    reason: Optional[str] = None
    server_processing_ms: Optional[float] = None
    gateway_upstream_ms: Optional[float] = None

    @field_validator("client_rtt_ms", mode="before")
    @classmethod
    def _rtt_number(cls, v: Any):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("client_rtt_ms must be a number")
        return v

    @field_validator("server_processing_ms", "gateway_upstream_ms", mode="before")
    @classmethod
    def _optional_number(cls, v: Any):
        # bad optional timings are dropped, not rejected
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return v

    @field_validator("session_id", "status", "reason", mode="before")
    @classmethod
    def _optional_text(cls, v: Any):
        return v if isinstance(v, str) else None

def parse_client_metric(payload: Any, header_session_id: Optional[str] = None
                        ) -> Tuple[Optional[ClientMetricIn], Optional[str]]:
    """
    Returns (metric, None) or (None, error message). The session id may come
    from the body or from the x-session-id header; one of them is required.
    """
    if not isinstance(payload, dict):
        return None, "body must be a JSON object"
    try:
        metric = ClientMetricIn.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field_name = ".".join(str(p) for p in first.get("loc", ())) or "body"
        return None, f"{field_name}: {first.get('msg', 'invalid value')}"
    session_id = (metric.session_id or "").strip() or (header_session_id or "").strip()
    if not session_id:
        return None, "session_id is required"
    metric.session_id = session_id
    return metric, None
