from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Optional

from fastapi import APIRouter, Body, Cookie, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.db import get_engine, init_database
from core.errors import NotFound, ServiceError
from core.logging_utils import get_request_id
from core.repositories import companies as companies_repo
from core.services import companies as company_service
from core.services.audit import record_event
from core.services.auth import (
    Actor,
    authenticate_admin,
    authenticate_user,
    extract_token,
    issue_admin_token,
    issue_user_token,
)
from core.services.idempotency import compute_body_hash, maybe_idempotent_json
from core.services.policy import get_policy, set_policy, validate_policy
from core.settings import get_settings

from .database import get_db
from .schemas import (
    CompanyCreateRequest,
    CompanyCreateResponse,
    CompanySummary,
    DepartmentCreateRequest,
    HealthResponse,
    LoginRequest,
    MetaResponse,
    SimpleOkResponse,
    TokenResponse,
    UserCreateRequest,
)

USER_COOKIE_NAME = "hris_token"
ADMIN_COOKIE_NAME = "hris_admin_token"
ADMIN_TOKEN_TTL = 2 * 60 * 60

logger = logging.getLogger("hris_api")
audit_logger = logging.getLogger("hris_api.audit")


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    if not settings.auto_apply_ddl:
        logger.info("HRIS_AUTO_APPLY_DDL=0: skipping automatic DDL. Ensure Alembic migrations have been applied.")
    if settings.enforce_alembic_migrations and settings.auto_apply_ddl:
        logger.warning("HRIS_ENFORCE_ALEMBIC=1 while HRIS_AUTO_APPLY_DDL=1; skipping migration check.")
    init_database()
    yield


router = APIRouter()


# --------------------------------------------------------------------------
# Error rendering
# --------------------------------------------------------------------------


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or get_request_id() or ""


def _format_error_payload(detail: object, code: Optional[str] = None) -> dict:
    if isinstance(detail, dict):
        message = detail.get("error") or detail.get("detail") or str(detail)
        code = code or detail.get("code")
    else:
        message = str(detail or "")
    payload = {"ok": False, "error": message or "error"}
    if code:
        payload["code"] = str(code)
    return payload


def register_exception_handlers(target) -> None:
    def _wants_problem_json(request: Request) -> bool:
        accept = (request.headers.get("accept") or "").lower()
        return "application/problem+json" in accept

    def _problem_payload(request: Request, status: int, detail: str | dict | list | None = None, code: Optional[str] = None):
        try:
            title = HTTPStatus(status).phrase
        except ValueError:
            title = "Error"
        if isinstance(detail, dict):
            det = detail.get("detail") or detail.get("error") or detail
        else:
            det = detail or ""
        body = {
            "type": "about:blank",
            "title": title,
            "status": status,
            "detail": det,
            "instance": str(request.url.path),
            "request_id": _request_id(request),
        }
        if code:
            body["code"] = code
        return body

    def _respond(request: Request, status: int, payload: dict, detail) -> JSONResponse:
        if _wants_problem_json(request):
            content = _problem_payload(request, status, detail, payload.get("code"))
            return JSONResponse(status_code=status, content=content, media_type="application/problem+json")
        payload["request_id"] = _request_id(request)
        return JSONResponse(status_code=status, content=payload)

    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _respond(request, exc.status_code, _format_error_payload(exc.detail), exc.detail)

    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        payload = {"ok": False, "error": "validation_error", "code": "validation_error", "details": errors}
        return _respond(request, 422, payload, {"detail": errors})

    async def service_error_handler(request: Request, exc: ServiceError):
        payload = {"ok": False, "error": exc.message, "code": exc.code}
        if exc.details is not None:
            payload["details"] = exc.details
        if exc.status_code >= 500:
            logger.error("service error: %s", exc.message, extra={"status": exc.status_code})
        return _respond(request, exc.status_code, payload, exc.message)

    async def sa_integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning("integrity error on %s", request.url.path, exc_info=exc)
        payload = {"ok": False, "error": "constraint_violation", "code": "constraint_violation"}
        return _respond(request, 400, payload, {"detail": "constraint_violation"})

    target.add_exception_handler(StarletteHTTPException, http_exception_handler)
    target.add_exception_handler(RequestValidationError, validation_exception_handler)
    target.add_exception_handler(ServiceError, service_error_handler)
    target.add_exception_handler(IntegrityError, sa_integrity_error_handler)


# --------------------------------------------------------------------------
# Auth dependencies
# --------------------------------------------------------------------------


def current_actor(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(None),
    x_api_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
    user_cookie: Optional[str] = Cookie(None, alias=USER_COOKIE_NAME),
) -> Actor:
    tok = extract_token(authorization, x_api_token, token, user_cookie)
    if not tok:
        raise HTTPException(status_code=401, detail="unauthorized")
    user = authenticate_user(db, tok)
    if user is None:
        raise HTTPException(status_code=401, detail="unauthorized")
    return Actor.from_user(user)


def require_hr(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_hr:
        raise HTTPException(status_code=403, detail="forbidden")
    return actor


def require_admin(
    authorization: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
    admin_cookie: Optional[str] = Cookie(None, alias=ADMIN_COOKIE_NAME),
) -> None:
    tok = extract_token(authorization, x_admin_token, None, admin_cookie)
    if not tok or not authenticate_admin(tok):
        raise HTTPException(status_code=403, detail="forbidden")


def client_meta(request: Request) -> dict[str, str]:
    ip = (request.client.host if request.client else "") or request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    return {"ip": ip or "", "ua": request.headers.get("user-agent", "")}


def json_result(content: dict, status: int) -> JSONResponse:
    return JSONResponse(content=content, status_code=status)


# --------------------------------------------------------------------------
# Health
# --------------------------------------------------------------------------


@router.get("/healthz", response_model=HealthResponse)
def healthz(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("health check failed")
        raise HTTPException(status_code=500, detail=str(e)) from e
    return {"ok": True, "status": "healthy"}


@router.get("/livez", response_model=SimpleOkResponse)
def livez():
    return SimpleOkResponse()


@router.get("/readyz", response_model=HealthResponse)
def readyz():
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("readiness check failed")
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"ok": True, "status": "ready"}


@router.get("/meta", response_model=MetaResponse)
def meta():
    settings = get_settings()
    return MetaResponse(version=settings.app_version, git_sha=settings.git_sha, build_ts=settings.build_ts)


# --------------------------------------------------------------------------
# Sessions
# --------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
def user_login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    company = companies_repo.get_by_slug(db, payload.company_slug.strip().lower())
    user = companies_repo.get_user_by_username(db, company.id, payload.username) if company else None
    if user is None or not company_service.check_user_password(user, payload.password):
        record_event(
            db,
            actor=f"login:{payload.username[:60]}",
            action="LOGIN_FAILED",
            resource="/auth/login",
            company_id=company.id if company else None,
            result="fail",
            **client_meta(request),
        )
        raise HTTPException(status_code=401, detail="invalid credentials")
    ttl = int(get_settings().user_token_ttl)
    tok = issue_user_token(db, user, ttl_seconds=ttl)
    record_event(db, actor=f"user:{user.id}", action="LOGIN", resource="/auth/login", company_id=company.id, **client_meta(request))
    response = JSONResponse({"ok": True, "token": tok, "ttl": ttl})
    response.set_cookie(key=USER_COOKIE_NAME, value=tok, httponly=True, samesite="lax", max_age=ttl)
    return response


@router.get("/auth/me")
def whoami(actor: Actor = Depends(current_actor)):
    return {
        "ok": True,
        "user_id": actor.user_id,
        "company_id": actor.company_id,
        "role": actor.role,
        "employee_id": actor.employee_id,
        "is_hr": actor.is_hr,
        "is_request_approver": actor.is_request_approver,
        "is_material_request_purchaser": actor.is_material_request_purchaser,
        "is_material_request_poster": actor.is_material_request_poster,
    }


@router.post("/admin/login", response_model=TokenResponse)
def admin_login(request: Request, password: str = Body(..., embed=True), db: Session = Depends(get_db)):
    if not company_service.verify_admin_password(password):
        record_event(db, actor="admin", action="ADMIN_LOGIN_FAILED", resource="/admin/login", result="fail", **client_meta(request))
        raise HTTPException(status_code=403, detail="invalid password")
    tok = issue_admin_token(ttl_seconds=ADMIN_TOKEN_TTL)
    response = JSONResponse({"ok": True, "token": tok, "ttl": ADMIN_TOKEN_TTL})
    response.set_cookie(key=ADMIN_COOKIE_NAME, value=tok, httponly=True, samesite="lax", max_age=ADMIN_TOKEN_TTL)
    return response


# --------------------------------------------------------------------------
# Superadmin: companies, users, policy
# --------------------------------------------------------------------------


def _company_summary(company) -> dict:
    return CompanySummary(
        id=company.id,
        name=company.name,
        slug=company.slug,
        created_at=company.created_at.isoformat() if company.created_at else None,
    ).model_dump()


@router.post("/admin/companies", response_model=CompanyCreateResponse, dependencies=[Depends(require_admin)])
def admin_create_company(payload: CompanyCreateRequest, request: Request, db: Session = Depends(get_db)):
    def _produce():
        company = company_service.create_company(db, payload.name, payload.slug, tin=payload.tin)
        record_event(
            db,
            actor="admin",
            action="CREATE_COMPANY",
            resource=f"company:{company.id}",
            company_id=company.id,
            meta={"slug": company.slug},
            **client_meta(request),
        )
        audit_logger.info("company_created", extra={"company_id": company.id})
        return {"ok": True, "company": _company_summary(company)}, 200

    content, status = maybe_idempotent_json(
        db, request, company_id=None, body_hash=compute_body_hash(payload.model_dump(mode="json")), produce=_produce
    )
    return json_result(content, status)


@router.get("/admin/companies", dependencies=[Depends(require_admin)])
def admin_list_companies(db: Session = Depends(get_db)):
    return {"ok": True, "companies": [_company_summary(c) for c in companies_repo.list_companies(db)]}


def _admin_company(db: Session, company_id: int):
    company = companies_repo.get_by_id(db, company_id)
    if company is None:
        raise NotFound("Company not found.")
    return company


@router.post("/admin/companies/{company_id}/users", dependencies=[Depends(require_admin)])
def admin_create_user(company_id: int, payload: UserCreateRequest, request: Request, db: Session = Depends(get_db)):
    company = _admin_company(db, company_id)
    body = payload.model_dump(mode="json")
    body.pop("password")

    def _produce():
        user = company_service.create_user(db, company, **payload.model_dump())
        record_event(
            db,
            actor="admin",
            action="CREATE_USER",
            resource=f"user:{user.id}",
            company_id=company.id,
            meta={"username": user.username, "role": user.role},
            **client_meta(request),
        )
        return {"ok": True, "user": {"id": user.id, "username": user.username, "role": user.role}}, 200

    content, status = maybe_idempotent_json(
        db, request, company_id=company.id, body_hash=compute_body_hash(body), produce=_produce
    )
    return json_result(content, status)


@router.post("/admin/companies/{company_id}/departments", dependencies=[Depends(require_admin)])
def admin_create_department(company_id: int, payload: DepartmentCreateRequest, db: Session = Depends(get_db)):
    company = _admin_company(db, company_id)
    dept = company_service.create_department(db, company, payload.code, payload.name)
    return {"ok": True, "department": {"id": dept.id, "code": dept.code, "name": dept.name}}


@router.post("/admin/companies/{company_id}/rotate-token-key", response_model=SimpleOkResponse, dependencies=[Depends(require_admin)])
def admin_rotate_token_key(company_id: int, request: Request, db: Session = Depends(get_db)):
    company = _admin_company(db, company_id)
    company_service.rotate_company_token_key(db, company)
    record_event(db, actor="admin", action="ROTATE_TOKEN_KEY", resource=f"company:{company.id}", company_id=company.id, **client_meta(request))
    return SimpleOkResponse()


@router.get("/admin/policy", dependencies=[Depends(require_admin)])
def admin_get_policy(
    year: int = Query(...),
    company_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return {"ok": True, "policy": get_policy(db, company_id, year)}


@router.post("/admin/policy", dependencies=[Depends(require_admin)])
def admin_set_policy(
    request: Request,
    year: int = Query(...),
    company_id: int | None = Query(default=None),
    body: dict = Body(...),
    db: Session = Depends(get_db),
):
    problems = validate_policy(body)
    if problems:
        raise HTTPException(status_code=400, detail={"error": "; ".join(problems), "code": "invalid_policy"})

    def _produce():
        merged = set_policy(db, company_id, year, body, actor="admin")
        db.commit()
        audit_logger.info("policy_updated", extra={"company_id": company_id})
        return {"ok": True, "policy": merged}, 200

    content, status = maybe_idempotent_json(
        db,
        request,
        company_id=company_id,
        body_hash=compute_body_hash({"company_id": company_id, "year": year, "policy": body}),
        produce=_produce,
    )
    return json_result(content, status)
