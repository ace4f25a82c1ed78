from __future__ import annotations

from sqlalchemy.orm import Session

from core.models import Company, Department, User


def get_by_slug(session: Session, slug: str) -> Company | None:
    return session.query(Company).filter(Company.slug == slug).first()


def get_by_id(session: Session, company_id: int) -> Company | None:
    return session.get(Company, company_id)


def list_companies(session: Session) -> list[Company]:
    return session.query(Company).order_by(Company.created_at.desc()).all()


def get_user(session: Session, company_id: int, user_id: int) -> User | None:
    user = session.get(User, user_id)
    if user is None or user.company_id != company_id:
        return None
    return user


def get_user_by_username(session: Session, company_id: int, username: str) -> User | None:
    return (
        session.query(User)
        .filter(User.company_id == company_id, User.username == username.strip().lower())
        .first()
    )


def get_department(session: Session, company_id: int, department_id: int) -> Department | None:
    dept = session.get(Department, department_id)
    if dept is None or dept.company_id != company_id:
        return None
    return dept
