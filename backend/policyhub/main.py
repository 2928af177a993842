import logging
import os
import time
import uuid
from urllib.parse import parse_qsl, urlencode
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from .auth import optional_caller, require_caller
from .db import init_db, read_snapshot, utcnow
from .errors import PolicyHubError, StorageError, ValidationError
from .listing import list_policies, list_portal_policies
from .logging_config import log_event
from .portals import find_active_portal
from .review_queue import list_review_queue, review_stats
from .schemas import (
    ErrorResponse,
    PolicyListParams,
    PolicyListResponse,
    PortalPolicyListParams,
    PortalPolicyListResponse,
    ReviewQueueParams,
    ReviewQueueResponse,
    ReviewStats,
    parse_params,
)
from .scope import Caller


# --- App ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


openapi_tags = [
    {"name": "Health", "description": "Service status and metrics"},
    {"name": "Policies", "description": "Scoped policy listings with filters and acknowledgment aggregates"},
    {"name": "Portals", "description": "Policies published through a portal"},
    {"name": "Review", "description": "Policies due for periodic review"},
]

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}

app = FastAPI(
    title="Policy Hub API",
    version="0.1.0",
    description="Read API for organizational policies: scoped listings, portal views and the review queue.",
    lifespan=lifespan,
    openapi_tags=openapi_tags,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=(os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",") if os.getenv("CORS_ALLOWED_ORIGINS") else ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Request ID + metrics middleware ---
if 'REQUEST_COUNT' not in globals():
    REQUEST_COUNT = Counter(
        "http_requests_total",
        "Total HTTP requests",
        labelnames=("method", "status"),
    )
if 'ERROR_COUNT' not in globals():
    ERROR_COUNT = Counter(
        "http_requests_errors_total",
        "Total HTTP error responses",
        labelnames=("method", "status"),
    )

# duration histogram (seconds) with per-route label
if 'REQUEST_DURATION' not in globals():
    REQUEST_DURATION = Histogram(
        "http_request_duration_seconds",
        "HTTP request duration in seconds",
        labelnames=("method", "route", "status"),
        buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    )

# time spent inside one read snapshot, per operation
if 'QUERY_DURATION' not in globals():
    QUERY_DURATION = Histogram(
        "policy_query_duration_seconds",
        "Policy query duration in seconds",
        labelnames=("operation",),
        buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    )


# Query keys whose values never reach the logs
SENSITIVE_QUERY_KEYS = ("password", "token", "access_token")


def redact_query(query: str) -> str:
    if not query:
        return query
    pairs = parse_qsl(query, keep_blank_values=True)
    return urlencode([(k, "***" if k.lower() in SENSITIVE_QUERY_KEYS else v) for k, v in pairs], safe="*")


@app.middleware("http")
async def add_request_id_and_collect_metrics(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    start = time.perf_counter()
    request.state.request_id = req_id
    try:
        response: Response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000.0
        REQUEST_COUNT.labels(method=request.method, status=str(500)).inc()
        ERROR_COUNT.labels(method=request.method, status=str(500)).inc()
        route_label = getattr(request.scope.get("route"), "path", request.url.path)
        REQUEST_DURATION.labels(method=request.method, route=route_label, status="500").observe(duration_ms / 1000.0)
        log_event(
            "request_error",
            level=logging.ERROR,
            request_id=req_id,
            method=request.method,
            path=request.url.path,
            query=redact_query(request.url.query),
            status=500,
            duration_ms=round(duration_ms, 2),
            client_ip=getattr(request.client, "host", None),
            user_agent=request.headers.get("user-agent"),
            error=str(exc),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    REQUEST_COUNT.labels(method=request.method, status=str(response.status_code)).inc()
    if response.status_code >= 400:
        ERROR_COUNT.labels(method=request.method, status=str(response.status_code)).inc()
    duration_ms = (time.perf_counter() - start) * 1000.0
    route_label = getattr(request.scope.get("route"), "path", request.url.path)
    REQUEST_DURATION.labels(method=request.method, route=route_label, status=str(response.status_code)).observe(duration_ms / 1000.0)
    log_event(
        "request",
        request_id=req_id,
        method=request.method,
        path=request.url.path,
        query=redact_query(request.url.query),
        status=response.status_code,
        duration_ms=round(duration_ms, 2),
        client_ip=getattr(request.client, "host", None),
        user_agent=request.headers.get("user-agent"),
    )
    return response


# Security headers
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    if os.getenv("ENV", "dev").lower() == "prod":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    return response


# --- OpenTelemetry (optional) ---
if os.getenv("OTEL_ENABLED", "false").lower() in ("1", "true", "yes"):
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from .db import engine

        provider = TracerProvider(resource=Resource(attributes={"service.name": "policyhub-backend"}))
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        FastAPIInstrumentor.instrument_app(app)
        SQLAlchemyInstrumentor().instrument(engine=engine)
    except ImportError as exc:
        log_event("otel_disabled", level=logging.WARNING, error=str(exc))


# --- Error mapping ---
@app.exception_handler(PolicyHubError)
async def policyhub_error_handler(request: Request, exc: PolicyHubError):
    body = {"detail": exc.message}
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    if isinstance(exc, StorageError):
        # Driver messages stay in the log
        body = {"detail": "Internal server error"}
    elif exc.status_code >= 400:
        log_event(
            "request_rejected",
            level=logging.WARNING,
            request_id=getattr(request.state, "request_id", None),
            path=request.url.path,
            status=exc.status_code,
            **exc.to_dict(),
        )
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok"}


@app.get("/metrics", tags=["Health"])
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- Policies ---
@app.get(
    "/policies",
    tags=["Policies"],
    response_model=PolicyListResponse,
    response_model_exclude_unset=True,
    responses=ERROR_RESPONSES,
)
def get_policies(
    request: Request,
    search: Optional[str] = None,
    status: Optional[str] = None,
    department: Optional[str] = None,
    category: Optional[str] = None,
    portal: Optional[str] = None,
    tags: Optional[List[str]] = Query(None),
    requires_acknowledgment: Optional[bool] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    public_only: bool = False,
    get_filter_metadata: bool = False,
    caller: Caller = Depends(optional_caller),
):
    params = parse_params(
        PolicyListParams,
        search=search,
        status=status,
        department=department,
        category=category,
        portal=portal,
        tags=tags,
        requires_acknowledgment=requires_acknowledgment,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
        public_only=public_only,
        get_filter_metadata=get_filter_metadata,
    )
    start = time.perf_counter()
    with QUERY_DURATION.labels(operation="policy_list").time():
        with read_snapshot() as conn:
            result = list_policies(conn, caller, params, utcnow())
    scope = result.pop("scope")
    log_event(
        "policy_list",
        request_id=getattr(request.state, "request_id", None),
        scope=scope.kind,
        authenticated=caller.is_authenticated,
        filters_applied=params.any_set,
        page=params.page,
        limit=params.limit,
        returned=len(result["policies"]),
        total=result["pagination"]["total"],
        duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
    )
    return result


@app.get(
    "/portals/{slug}/policies",
    tags=["Portals"],
    response_model=PortalPolicyListResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse}},
)
def get_portal_policies(
    slug: str,
    request: Request,
    password: Optional[str] = None,
    search: Optional[str] = None,
    status: Optional[str] = None,
    department: Optional[str] = None,
    category: Optional[str] = None,
    tags: Optional[List[str]] = Query(None),
    requires_acknowledgment: Optional[bool] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    caller: Caller = Depends(optional_caller),
):
    params = parse_params(
        PortalPolicyListParams,
        password=password,
        search=search,
        status=status,
        department=department,
        category=category,
        tags=tags,
        requires_acknowledgment=requires_acknowledgment,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    with QUERY_DURATION.labels(operation="portal_policy_list").time():
        with read_snapshot() as conn:
            portal = find_active_portal(conn, slug, caller)
            if portal is None:
                raise HTTPException(status_code=404, detail="Portal not found or is not active")
            result = list_portal_policies(conn, caller, portal, params, utcnow())
    scope = result.pop("scope")
    log_event(
        "portal_policy_list",
        request_id=getattr(request.state, "request_id", None),
        portal_id=scope.portal_id,
        password_verified=scope.password_verified,
        authenticated=caller.is_authenticated,
        returned=len(result["policies"]),
        total=result["pagination"]["total"],
    )
    return result


# --- Review queue ---
@app.get(
    "/review-policies",
    tags=["Review"],
    response_model=ReviewQueueResponse,
    responses=ERROR_RESPONSES,
)
def get_review_policies(
    request: Request,
    department: Optional[str] = None,
    category: Optional[str] = None,
    overdue_only: bool = False,
    sort: Optional[str] = None,
    order: Optional[str] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    caller: Caller = Depends(require_caller),
):
    params = parse_params(
        ReviewQueueParams,
        department=department,
        category=category,
        overdue_only=overdue_only,
        sort=sort,
        order=order,
        page=page,
        limit=limit,
    )
    with QUERY_DURATION.labels(operation="review_queue").time():
        with read_snapshot() as conn:
            result = list_review_queue(conn, caller, params, utcnow())
    log_event(
        "review_queue",
        request_id=getattr(request.state, "request_id", None),
        role=caller.role,
        overdue_only=params.overdue_only,
        returned=len(result["policies"]),
        total=result["pagination"]["total"],
    )
    return result


@app.get("/review-policies/stats", tags=["Review"], response_model=ReviewStats, responses=ERROR_RESPONSES)
def get_review_stats(caller: Caller = Depends(require_caller)):
    with QUERY_DURATION.labels(operation="review_stats").time():
        with read_snapshot() as conn:
            return review_stats(conn, caller, utcnow())


def run():
    import uvicorn

    uvicorn.run("backend.policyhub.main:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
