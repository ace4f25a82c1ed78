from __future__ import annotations

import time
import uuid
from secrets import compare_digest
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from core.logging_utils import get_request_id, maybe_enable_json_logging, set_request_id
from core.metrics import export_prometheus, observe_request
from core.observability import init_sentry
from core.settings import cors_origins, get_settings
from hris_api.main import ADMIN_COOKIE_NAME, USER_COOKIE_NAME, lifespan as api_lifespan
from hris_api.main import register_exception_handlers, router as api_router

from .routes.leave_overtime import router as leave_overtime_router
from .routes.master_data import router as master_data_router
from .routes.material_requests import router as material_requests_router
from .routes.payroll_runs import router as payroll_runs_router
from .routes.statutory import router as statutory_router

UNSAFE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
API_ROUTERS = (
    api_router,
    payroll_runs_router,
    statutory_router,
    material_requests_router,
    leave_overtime_router,
    master_data_router,
)


def _forbidden(detail: str) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": detail, "code": "forbidden", "request_id": get_request_id()},
        status_code=403,
    )


def _origin_violation(request: Request) -> str | None:
    """Cookie-authenticated writes must come from this host."""
    expected = (request.url.scheme, request.url.netloc)
    origin = (request.headers.get("origin") or "").strip()
    if origin:
        parsed = urlparse(origin)
        return None if (parsed.scheme, parsed.netloc) == expected else "invalid origin"
    referer = (request.headers.get("referer") or "").strip()
    if referer:
        parsed = urlparse(referer)
        return None if (parsed.scheme, parsed.netloc) == expected else "invalid referer"
    return None


def create_app() -> FastAPI:
    maybe_enable_json_logging()
    init_sentry()
    settings = get_settings()
    application = FastAPI(title="PH HRIS Back-office", version=settings.app_version, lifespan=api_lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(settings),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in API_ROUTERS:
        application.include_router(router, prefix="/api")
    for router in API_ROUTERS:
        application.include_router(router, prefix="/api/v1")
    register_exception_handlers(application)

    @application.get("/", include_in_schema=False)
    def root_redirect():
        return RedirectResponse(url="/docs", status_code=307)

    @application.middleware("http")
    async def csrf_origin_guard(request: Request, call_next):
        path = request.url.path or ""
        has_cookie = bool(request.cookies.get(USER_COOKIE_NAME) or request.cookies.get(ADMIN_COOKIE_NAME))
        if request.method.upper() in UNSAFE_METHODS and has_cookie and path.startswith("/api"):
            problem = _origin_violation(request)
            if problem:
                return _forbidden(problem)
            csrf_cookie = request.cookies.get("hris_csrf") or ""
            if csrf_cookie:
                sent = (request.headers.get("x-csrf-token") or "").strip()
                if not sent or not compare_digest(sent, csrf_cookie):
                    return _forbidden("invalid csrf token")
        return await call_next(request)

    @application.middleware("http")
    async def security_headers(request: Request, call_next):
        resp = await call_next(request)
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        resp.headers["Cross-Origin-Resource-Policy"] = "same-site"
        resp.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
        resp.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=(), usb=(), payment=()")
        if "Content-Security-Policy" not in resp.headers:
            resp.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'"
        xf_proto = request.headers.get("x-forwarded-proto", "").split(",")[0].strip().lower()
        if (request.url.scheme or "").lower() == "https" or xf_proto == "https":
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return resp

    @application.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = getattr(response, "status_code", 200) or 200
            return response
        finally:
            route = request.scope.get("route")
            handler = getattr(route, "name", None) or request.url.path
            observe_request(str(handler), request.method, int(status), max(0.0, time.perf_counter() - started))

    # Registered last so it wraps the other middlewares.
    @application.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_request_id(rid)
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp

    @application.get("/metrics", include_in_schema=False)
    async def metrics():
        return PlainTextResponse(export_prometheus(), media_type="text/plain; version=0.0.4; charset=utf-8")

    def custom_openapi():
        if application.openapi_schema:
            return application.openapi_schema
        schema = get_openapi(
            title=application.title,
            version=application.version,
            description="Philippine HR and payroll back-office API",
            routes=application.routes,
        )
        comps = schema.setdefault("components", {})
        comps.setdefault("parameters", {})["IdempotencyKey"] = {
            "name": "Idempotency-Key",
            "in": "header",
            "required": False,
            "schema": {"type": "string"},
            "description": "Provide to make mutation requests idempotent.",
        }
        comps.setdefault("schemas", {})["ProblemDetails"] = {
            "type": "object",
            "properties": {
                "type": {"type": "string"},
                "title": {"type": "string"},
                "status": {"type": "integer"},
                "detail": {"type": "string"},
                "instance": {"type": "string"},
                "request_id": {"type": "string"},
            },
        }
        for ops in schema.get("paths", {}).values():
            for method, op in ops.items():
                if method.upper() not in UNSAFE_METHODS:
                    continue
                params = op.setdefault("parameters", [])
                if not any(p.get("name") == "Idempotency-Key" for p in params if isinstance(p, dict)):
                    params.append({"$ref": "#/components/parameters/IdempotencyKey"})
                responses = op.setdefault("responses", {})
                for code in ("400", "401", "403", "404", "409"):
                    responses.setdefault(
                        code,
                        {
                            "description": "Error",
                            "content": {
                                "application/problem+json": {"schema": {"$ref": "#/components/schemas/ProblemDetails"}}
                            },
                        },
                    )
        application.openapi_schema = schema
        return application.openapi_schema

    application.openapi = custom_openapi
    return application


app = create_app()
