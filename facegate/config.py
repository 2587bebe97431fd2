from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    app_host: str = os.getenv("APP_HOST", "0.0.0.0")
    app_port: int = int(os.getenv("APP_PORT", "8080"))
    allowed_origins: str = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # gateway
    face_api_base: str = os.getenv("FACE_API_BASE", "")
    upstream_timeout_s: float = float(os.getenv("UPSTREAM_TIMEOUT_S", "15"))
    adapt_session_capacity: int = int(os.getenv("ADAPT_SESSION_CAPACITY", "256"))
    metrics_db_url: str = os.getenv("METRICS_DB_URL", "sqlite:///./data/metrics.db")
    metrics_retention_days: int = int(os.getenv("METRICS_RETENTION_DAYS", "30"))

    # scan client
    gateway_url: str = os.getenv("GATEWAY_URL", "http://localhost:8080")
    camera_index: int = int(os.getenv("CAMERA_INDEX", "0"))
    scan_duration_s: float = float(os.getenv("SCAN_DURATION_S", "10"))
    scan_window: int = int(os.getenv("SCAN_WINDOW", "5"))
    scan_confirm_hits: int = int(os.getenv("SCAN_CONFIRM_HITS", "2"))
    return_home_delay_s: float = float(os.getenv("RETURN_HOME_DELAY_S", "2.5"))
    poll_min_delay_s: float = float(os.getenv("POLL_MIN_DELAY_S", "0.25"))
    poll_max_delay_s: float = float(os.getenv("POLL_MAX_DELAY_S", "1.5"))
    poll_fast_rtt_ms: float = float(os.getenv("POLL_FAST_RTT_MS", "300"))
    poll_slow_rtt_ms: float = float(os.getenv("POLL_SLOW_RTT_MS", "1500"))
    gate_retry_delay_s: float = float(os.getenv("GATE_RETRY_DELAY_S", "0.2"))
    gate_retry_jitter_s: float = float(os.getenv("GATE_RETRY_JITTER_S", "0.1"))
    error_retry_delay_s: float = float(os.getenv("ERROR_RETRY_DELAY_S", "0.8"))
    metrics_report_timeout_s: float = float(os.getenv("METRICS_REPORT_TIMEOUT_S", "2"))

    # foreground gate
    gate_min_face_area: float = float(os.getenv("GATE_MIN_FACE_AREA", "0.05"))
    gate_max_center_offset: float = float(os.getenv("GATE_MAX_CENTER_OFFSET", "0.25"))
    gate_min_blur_var: float = float(os.getenv("GATE_MIN_BLUR_VAR", "40.0"))
    gate_thumb_width: int = int(os.getenv("GATE_THUMB_WIDTH", "96"))

    # frame capture
    capture_max_width: int = int(os.getenv("CAPTURE_MAX_WIDTH", "1024"))
    capture_max_height: int = int(os.getenv("CAPTURE_MAX_HEIGHT", "1280"))
    capture_jpeg_quality: int = int(os.getenv("CAPTURE_JPEG_QUALITY", "80"))
settings = Settings()
