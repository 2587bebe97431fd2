"""
HTTP client used by the scan loop to reach the gateway.

Usage:
    gw = GatewayClient("http://localhost:8080")
    result = gw.identify(jpeg_bytes, session_id="3f2c...")
    if result.status == "found":
        print(result.name, result.user_id)
"""
from __future__ import annotations
from typing import Optional

import requests
from pydantic import ValidationError

from .schemas import IdentifyResponse

STATUSES = ("found", "unknown", "error")


class GatewayClient:
    def __init__(self, base_url: str = "http://localhost:8080", timeout: float = 10.0,
                 report_timeout: float = 2.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.report_timeout = report_timeout

    def _headers(self, session_id: Optional[str]) -> dict:
        return {"x-session-id": session_id} if session_id else {}

    def identify(self, image: bytes, session_id: Optional[str] = None) -> IdentifyResponse:
        """
        Raises requests.RequestException on transport failure. HTTP errors
        come back as status="error" with the upstream reason when given.
        """
        resp = requests.post(
            f"{self.base_url}/api/face/identify",
            files={"file": ("identify.jpg", image, "image/jpeg")},
            data={"session_id": session_id} if session_id else {},
            headers=self._headers(session_id),
            timeout=self.timeout,
        )
        fallback = IdentifyResponse(status="error", reason=f"http_{resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            return fallback
        if not isinstance(data, dict) or data.get("status") not in STATUSES:
            return fallback
        try:
            result = IdentifyResponse.model_validate(data)
        except ValidationError:
            return fallback
        if result.status == "found" and not result.user_id:
            result.status = "error"
            result.reason = result.reason or "missing_user_id"
        return result

    def adapt(self, image: bytes, user_id: str, session_id: Optional[str] = None) -> bool:
        resp = requests.post(
            f"{self.base_url}/api/face/identify/adapt",
            files={"file": ("identify-adapt.jpg", image, "image/jpeg")},
            data={"user_id": user_id, **({"session_id": session_id} if session_id else {})},
            headers=self._headers(session_id),
            timeout=self.timeout,
        )
        return resp.ok

    def report_client_metric(
        self,
        session_id: str,
        client_rtt_ms: float,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        server_processing_ms: Optional[float] = None,
    ) -> bool:
        payload = {
            "session_id": session_id,
            "client_rtt_ms": client_rtt_ms,
            "status": status,
            "reason": reason,
            "server_processing_ms": server_processing_ms,
        }
        resp = requests.post(
            f"{self.base_url}/api/metrics/face/client",
            json=payload,
            headers=self._headers(session_id),
            timeout=self.report_timeout,
        )
        return resp.ok
