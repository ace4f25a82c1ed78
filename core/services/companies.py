from __future__ import annotations

import re
import secrets
from typing import Optional

from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from core.errors import Conflict, ValidationFailed
from core.models import Company, Department, User
from core.repositories import companies as companies_repo
from core.settings import get_settings

ROLES = ("COMPANY_ADMIN", "HR_ADMIN", "PAYROLL_ADMIN", "APPROVER", "EMPLOYEE")
_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,78}[a-z0-9]$")

_HASH_PREFIXES = ("pbkdf2:", "scrypt:")


def verify_admin_password(password: str) -> bool:
    candidate = (password or "").strip()
    expected = (get_settings().admin_password or "").strip()
    if not expected or not candidate:
        return False
    if expected.startswith(_HASH_PREFIXES):
        return check_password_hash(expected, candidate)
    # ADMIN_PASSWORD may be configured in plain text
    return secrets.compare_digest(candidate.encode(), expected.encode())


def create_company(session: Session, name: str, slug: str, *, tin: str = "") -> Company:
    slug = slug.strip().lower()
    if not _SLUG_RE.match(slug):
        raise ValidationFailed("Company slug must be 3-80 lowercase letters, digits or dashes.")
    if companies_repo.get_by_slug(session, slug):
        raise Conflict(f"Company slug {slug} is already taken.")
    company = Company(name=name.strip(), slug=slug, tin=tin.strip(), token_key=secrets.token_hex(16))
    session.add(company)
    session.commit()
    return company


def create_user(
    session: Session,
    company: Company,
    *,
    username: str,
    password: str,
    role: str = "EMPLOYEE",
    full_name: str = "",
    employee_id: Optional[int] = None,
    is_request_approver: bool = False,
    is_material_request_purchaser: bool = False,
    is_material_request_poster: bool = False,
) -> User:
    role = role.strip().upper()
    if role not in ROLES:
        raise ValidationFailed(f"Unknown role {role}.")
    if len(password or "") < 8:
        raise ValidationFailed("Password must be at least 8 characters.")
    if companies_repo.get_user_by_username(session, company.id, username):
        raise Conflict(f"Username {username} already exists in this company.")
    user = User(
        company_id=company.id,
        username=username.strip().lower(),
        full_name=full_name.strip(),
        password_hash=generate_password_hash(password),
        role=role,
        employee_id=employee_id,
        is_request_approver=is_request_approver,
        is_material_request_purchaser=is_material_request_purchaser,
        is_material_request_poster=is_material_request_poster,
    )
    session.add(user)
    session.commit()
    return user


def check_user_password(user: User, password: str) -> bool:
    if not user.is_active or not password:
        return False
    return check_password_hash(user.password_hash, password)


def create_department(session: Session, company: Company, code: str, name: str) -> Department:
    dept = Department(company_id=company.id, code=code.strip().upper(), name=name.strip())
    session.add(dept)
    session.commit()
    return dept


def ensure_token_key(session: Session, company: Company) -> None:
    if company.token_key and company.token_key.strip():
        return
    company.token_key = secrets.token_hex(16)
    session.commit()


def rotate_company_token_key(session: Session, company: Company) -> str:
    """Rotate the company's token key; every outstanding user token stops verifying."""
    company.token_key = secrets.token_hex(16)
    session.commit()
    return company.token_key
