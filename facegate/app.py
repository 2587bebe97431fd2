from __future__ import annotations
import logging
import time
from typing import Optional

import requests
from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from .config import Settings, settings as default_settings
from .db import make_engine
from .face_client import FaceServiceClient, UpstreamResponse
from .image_io import decode_image_bytes_to_bgr
from .logger import log_event, log_middleware
from .metrics import (
    STATUSES,
    MetricsStore,
    MetricsWindowError,
    estimate_network_latency,
    resolve_window,
)
from .schemas import parse_client_metric
from .session_store import SessionStore
from .utils import normalize_text


def get_store(request: Request) -> MetricsStore:
    return request.app.state.metrics_store

def get_face_client(request: Request) -> FaceServiceClient:
    return request.app.state.face_client

def get_adapt_sessions(request: Request) -> SessionStore:
    return request.app.state.adapt_sessions

def _session_id(request: Request, form_value: Optional[str]) -> Optional[str]:
    return normalize_text(form_value) or normalize_text(request.headers.get("x-session-id"))

def _passthrough(upstream: UpstreamResponse) -> Response:
    return Response(content=upstream.body, status_code=upstream.status_code, media_type=upstream.content_type)

def _not_configured() -> JSONResponse:
    return JSONResponse({"error": "FACE_API_BASE is not configured"}, status_code=500)

def _proxy_failed(route: str, exc: Exception) -> JSONResponse:
    log_event("proxy_failed", level=logging.ERROR, route=route, error=str(exc))
    return JSONResponse({"error": f"Face service unavailable: {exc}"}, status_code=502)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[MetricsStore] = None,
    face_client: Optional[FaceServiceClient] = None,
) -> FastAPI:
    settings = settings or default_settings
    app = FastAPI(title="facegate")

    # Explicit handles, built once per process
    app.state.settings = settings
    app.state.metrics_store = store or MetricsStore(
        make_engine(settings.metrics_db_url), retention_days=settings.metrics_retention_days
    )
    app.state.face_client = face_client or FaceServiceClient(
        settings.face_api_base, timeout=settings.upstream_timeout_s
    )
    app.state.adapt_sessions = SessionStore(capacity=settings.adapt_session_capacity)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.allowed_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    # Logging
    app.middleware("http")(log_middleware)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/api/face/identify")
    def identify(
        request: Request,
        file: Optional[UploadFile] = File(None),
        session_id: Optional[str] = Form(None),
        store: MetricsStore = Depends(get_store),
        face: FaceServiceClient = Depends(get_face_client),
    ):
        if file is None:
            return JSONResponse({"error": "file is required"}, status_code=400)
        if not face.configured:
            return _not_configured()
        sid = _session_id(request, session_id)
        content = file.file.read()

        t0 = time.perf_counter()
        try:
            upstream = face.identify(content, filename=file.filename or "identify.jpg", session_id=sid)
        except requests.RequestException as exc:
            store.record_event(
                "server", session_id=sid, status="error", reason="proxy_error",
                gateway_upstream_ms=(time.perf_counter() - t0) * 1000,
            )
            return _proxy_failed("identify", exc)

        data = upstream.json() or {}
        status = data.get("status") if data.get("status") in STATUSES else "error"
        reason = data.get("reason") if status != "found" else None
        if status == "error" and not normalize_text(reason):
            reason = f"upstream_http_{upstream.status_code}" if upstream.status_code >= 400 else "invalid_response"
        store.record_event(
            "server",
            session_id=sid,
            status=status,
            reason=reason,
            server_processing_ms=data.get("latency_ms"),
            gateway_upstream_ms=upstream.elapsed_ms,
        )
        return _passthrough(upstream)

    @app.post("/api/face/identify/adapt")
    def identify_adapt(
        request: Request,
        file: Optional[UploadFile] = File(None),
        user_id: Optional[str] = Form(None),
        session_id: Optional[str] = Form(None),
        face: FaceServiceClient = Depends(get_face_client),
        sessions: SessionStore = Depends(get_adapt_sessions),
    ):
        if file is None:
            return JSONResponse({"error": "file is required"}, status_code=400)
        user_id = normalize_text(user_id)
        if not user_id:
            return JSONResponse({"error": "user_id is required"}, status_code=400)
        if not face.configured:
            return _not_configured()
        sid = _session_id(request, session_id)

        # marked before forwarding: at most one attempt per (session, user), even if it fails
        if sid:
            adapted = sessions.setdefault(sid, set)
            if user_id in adapted:
                log_event("adapt_skipped", session_id=sid, user_id=user_id)
                return {"status": "skipped", "reason": "already_adapted"}
            adapted.add(user_id)

        try:
            upstream = face.adapt(file.file.read(), user_id,
                                  filename=file.filename or "identify-adapt.jpg", session_id=sid)
        except requests.RequestException as exc:
            return _proxy_failed("identify_adapt", exc)
        return _passthrough(upstream)

    @app.post("/api/face/register")
    def register(
        file: Optional[UploadFile] = File(None),
        name: Optional[str] = Form(None),
        face: FaceServiceClient = Depends(get_face_client),
    ):
        name = normalize_text(name)
        if not name:
            return JSONResponse({"error": "name is required"}, status_code=400)
        if file is None:
            return JSONResponse({"error": "file is required"}, status_code=400)
        content = file.file.read()
        if decode_image_bytes_to_bgr(content) is None:
            return JSONResponse({"error": "file is not a decodable image"}, status_code=422)
        if not face.configured:
            return _not_configured()
        try:
            upstream = face.register(content, name, filename=file.filename or "register.jpg")
        except requests.RequestException as exc:
            return _proxy_failed("register", exc)
        return _passthrough(upstream)

    @app.get("/api/metrics/face")
    def metrics_face(
        from_: Optional[str] = Query(None, alias="from"),
        to: Optional[str] = Query(None),
        store: MetricsStore = Depends(get_store),
    ):
        try:
            window = resolve_window(from_, to)
        except MetricsWindowError as exc:
            return JSONResponse({"error": exc.message, "code": exc.code}, status_code=400)
        try:
            return store.summary(window)
        except SQLAlchemyError as exc:
            log_event("metrics_read_failed", level=logging.ERROR, error=str(exc))
            return JSONResponse({"error": f"Metrics read failed: {exc}"}, status_code=500)

    @app.post("/api/metrics/face/client")
    async def metrics_face_client(request: Request, store: MetricsStore = Depends(get_store)):
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "body must be valid JSON"}, status_code=400)
        metric, error = parse_client_metric(payload, request.headers.get("x-session-id"))
        if error:
            return JSONResponse({"error": error}, status_code=400)

        # persistence failures are logged by the store; the reply stays ok
        await run_in_threadpool(
            store.record_event,
            "client",
            session_id=metric.session_id,
            status=metric.status,
            reason=metric.reason,
            server_processing_ms=metric.server_processing_ms,
            gateway_upstream_ms=metric.gateway_upstream_ms,
            client_rtt_ms=metric.client_rtt_ms,
            network_latency_ms_est=estimate_network_latency(metric.client_rtt_ms, metric.server_processing_ms),
        )
        return {"ok": True}

    return app


app = create_app()
