"""Multipart forwarding to the external face-recognition service."""
from __future__ import annotations
import json
import time
from dataclasses import dataclass
from typing import Dict, Optional

import requests


@dataclass
class UpstreamResponse:
    status_code: int
    body: bytes
    content_type: str
    elapsed_ms: float

    def json(self) -> Optional[dict]:
        try:
            data = json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        return data if isinstance(data, dict) else None


class FaceServiceClient:
    """
    Thin proxy client. Errors from `requests` (timeouts, refused connections)
    propagate as requests.RequestException; HTTP error statuses do not raise,
    they are returned to the caller unchanged.
    """

    def __init__(self, base_url: str, timeout: float = 15.0):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _post(self, path: str, files: dict, data: Optional[dict] = None,
              headers: Optional[Dict[str, str]] = None) -> UpstreamResponse:
        if not self.configured:
            raise RuntimeError("FACE_API_BASE is not configured")
        t0 = time.perf_counter()
        resp = requests.post(
            f"{self.base_url}{path}",
            files=files,
            data=data or {},
            headers=headers or {},
            timeout=self.timeout,
        )
        elapsed_ms = (time.perf_counter() - t0) * 1000
        return UpstreamResponse(
            status_code=resp.status_code,
            body=resp.content,
            content_type=resp.headers.get("content-type", "application/json"),
            elapsed_ms=elapsed_ms,
        )

    def identify(self, image: bytes, filename: str = "identify.jpg",
                 session_id: Optional[str] = None) -> UpstreamResponse:
        headers = {"x-session-id": session_id} if session_id else None
        return self._post("/identify", files={"file": (filename, image, "image/jpeg")}, headers=headers)

    def adapt(self, image: bytes, user_id: str, filename: str = "identify-adapt.jpg",
              session_id: Optional[str] = None) -> UpstreamResponse:
        data = {"user_id": user_id}
        headers = None
        if session_id:
            data["session_id"] = session_id
            headers = {"x-session-id": session_id}
        return self._post("/identify/adapt", files={"file": (filename, image, "image/jpeg")},
                          data=data, headers=headers)

    def register(self, image: bytes, name: str, filename: str = "register.jpg") -> UpstreamResponse:
        return self._post("/register", files={"file": (filename, image, "image/jpeg")}, data={"name": name})
