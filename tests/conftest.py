from __future__ import annotations

import datetime as dt
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure project root is importable as a module path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core import db as core_db
from core.models import DailyTimeRecord, Employee, EmployeeSalary, LeaveType
from core.services import companies as company_service
from core.services import statutory
from core.services.auth import Actor, issue_user_token
from core.settings import reset_settings_cache
from core.utils.dates import date_range

ADMIN_PASSWORD = "admin-secret-123"
USER_PASSWORD = "user-pass-123"


@pytest.fixture()
def database(tmp_path, monkeypatch):
    """Point the global engine at a throwaway SQLite file.

    A file (not :memory:) so the audit writer's independent session sees
    the same database as the request session.
    """
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'hris-test.db'}")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("HRIS_AUTO_APPLY_DDL", "1")
    reset_settings_cache()
    monkeypatch.setattr(core_db, "_engine", None)
    monkeypatch.setattr(core_db, "_SessionLocal", None)
    monkeypatch.setattr(core_db, "_ScopedSession", None)
    engine = core_db.init_database(auto_apply_ddl=True)
    yield engine
    engine.dispose()
    reset_settings_cache()


@pytest.fixture()
def session(database):
    SessionLocal = core_db.get_sessionmaker()
    with SessionLocal() as s:
        yield s


@pytest.fixture()
def client(database):
    from fastapi.testclient import TestClient

    from app.main import create_app

    with TestClient(create_app()) as c:
        yield c


# --------------------------------------------------------------------------
# Org fixtures
# --------------------------------------------------------------------------


@pytest.fixture()
def company(session):
    return company_service.create_company(session, "Acme Philippines Inc.", "acme-ph", tin="000-123-456-000")


@pytest.fixture()
def department(session, company):
    return company_service.create_department(session, company, "OPS", "Operations")


@pytest.fixture()
def hr_user(session, company):
    return company_service.create_user(
        session, company, username="hr", password=USER_PASSWORD, role="HR_ADMIN", full_name="HR Admin"
    )


@pytest.fixture()
def hr(hr_user):
    return Actor.from_user(hr_user)


@pytest.fixture()
def supervisor_user(session, company):
    return company_service.create_user(
        session,
        company,
        username="boss",
        password=USER_PASSWORD,
        role="APPROVER",
        full_name="Dept Head",
        is_request_approver=True,
    )


def make_employee(
    session,
    company,
    department,
    *,
    number: str = "EMP-0001",
    first_name: str = "Maria",
    last_name: str = "Santos",
    base_salary: str = "30000.00",
    supervisor_user_id=None,
    **extra,
) -> Employee:
    employee = Employee(
        company_id=company.id,
        employee_number=number,
        first_name=first_name,
        last_name=last_name,
        department_id=department.id if department is not None else None,
        supervisor_user_id=supervisor_user_id,
        hire_date=dt.date(2024, 1, 15),
        **extra,
    )
    employee.salary = EmployeeSalary(base_salary=Decimal(base_salary), salary_rate_type="MONTHLY")
    session.add(employee)
    session.commit()
    return employee


@pytest.fixture()
def employee(session, company, department, supervisor_user):
    return make_employee(session, company, department, supervisor_user_id=supervisor_user.id)


@pytest.fixture()
def employee_user(session, company, employee):
    return company_service.create_user(
        session,
        company,
        username="msantos",
        password=USER_PASSWORD,
        role="EMPLOYEE",
        full_name="Maria Santos",
        employee_id=employee.id,
    )


@pytest.fixture()
def staff(employee_user):
    return Actor.from_user(employee_user)


@pytest.fixture()
def statutory_tables(session):
    statutory.seed_default_tables(session, dt.date(2026, 1, 1), actor="test")
    return statutory.active_tables(session, dt.date(2026, 1, 15))


@pytest.fixture()
def leave_types(session):
    rows = [
        LeaveType(company_id=None, code="VL", name="Vacation Leave", is_paid=True),
        LeaveType(company_id=None, code="SL", name="Sick Leave", is_paid=True),
        LeaveType(company_id=None, code="EL", name="Emergency Leave", is_paid=True),
        LeaveType(company_id=None, code="LWOP", name="Leave Without Pay", is_paid=False),
    ]
    session.add_all(rows)
    session.commit()
    return {row.code: row for row in rows}


def fill_attendance(session, employee, start: dt.date, end: dt.date, *, approval_status: str = "APPROVED") -> None:
    """One PRESENT 8-hour record per weekday in the range."""
    for day in date_range(start, end):
        if day.weekday() >= 5:
            continue
        session.add(
            DailyTimeRecord(
                employee_id=employee.id,
                attendance_date=day,
                attendance_status="PRESENT",
                approval_status=approval_status,
                hours_worked=Decimal("8"),
            )
        )
    session.commit()


def auth_headers(session, user) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_user_token(session, user)}"}
