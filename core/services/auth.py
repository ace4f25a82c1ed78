from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from core.auth import make_admin_token, make_user_token, verify_admin_token, verify_user_token
from core.models import Company, User
from core.repositories import companies as companies_repo
from core.settings import get_settings

HR_ROLES = frozenset({"COMPANY_ADMIN", "HR_ADMIN", "PAYROLL_ADMIN"})


@dataclass(frozen=True)
class Actor:
    """The authenticated caller as seen by domain services."""

    user_id: int
    company_id: int
    role: str
    employee_id: Optional[int] = None
    is_request_approver: bool = False
    is_material_request_purchaser: bool = False
    is_material_request_poster: bool = False

    @property
    def is_hr(self) -> bool:
        return self.role in HR_ROLES

    @property
    def label(self) -> str:
        return f"user:{self.user_id}"

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(
            user_id=user.id,
            company_id=user.company_id,
            role=user.role,
            employee_id=user.employee_id,
            is_request_approver=bool(user.is_request_approver),
            is_material_request_purchaser=bool(user.is_material_request_purchaser),
            is_material_request_poster=bool(user.is_material_request_poster),
        )


def extract_token(
    authorization: str | None,
    header_token: str | None,
    query_token: str | None,
    cookie_token: str | None = None,
) -> str | None:
    """Normalize token retrieval across headers, query params and cookies.

    Explicit credentials win over the ambient cookie.
    """
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    for candidate in (header_token, query_token, cookie_token):
        if candidate:
            token = str(candidate).strip()
            if token:
                return token
    return None


def authenticate_user(session: Session, token: str) -> User | None:
    payload = verify_user_token(get_settings().secret_key, token)
    if not payload:
        return None
    company = companies_repo.get_by_id(session, int(payload.get("cid", 0)))
    if company is None:
        return None
    token_key = (company.token_key or "").strip()
    if token_key and token_key != str(payload.get("key") or "").strip():
        return None
    user = companies_repo.get_user(session, company.id, int(payload.get("uid", 0)))
    if user is None or not user.is_active:
        return None
    # Role changes take effect immediately; a stale token role is ignored.
    return user


def issue_user_token(session: Session, user: User, *, ttl_seconds: int | None = None) -> str:
    from core.services import companies as company_service  # local import to avoid circular import

    company: Company = user.company
    company_service.ensure_token_key(session, company)
    settings = get_settings()
    ttl = ttl_seconds if ttl_seconds is not None else int(settings.user_token_ttl or 43200)
    return make_user_token(
        settings.secret_key,
        user.id,
        company.id,
        user.role,
        ttl_seconds=ttl,
        key=(company.token_key or "").strip() or None,
    )


def authenticate_admin(token: str) -> bool:
    return verify_admin_token(get_settings().secret_key, token) is not None


def issue_admin_token(*, ttl_seconds: int = 2 * 60 * 60) -> str:
    return make_admin_token(get_settings().secret_key, ttl_seconds=ttl_seconds)
