from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy.orm import Session

from core.db import init_database, session_scope
from core.models import Company, Employee, EmployeeSalary, LeaveType
from core.services import companies as company_service
from core.services import statutory

DEMO_PASSWORD = "demo-pass-123"


def main() -> None:
    init_database(auto_apply_ddl=True)
    with session_scope() as session:
        _seed_company(session)


def _seed_company(session: Session) -> None:
    slug = "demo-ph"
    existing = session.query(Company).filter(Company.slug == slug).first()
    if existing:
        print(f"Company already exists: {existing.slug} (id={existing.id})")
        return
    company = company_service.create_company(session, name="Demo Philippines Inc.", slug=slug, tin="000-123-456-000")
    dept = company_service.create_department(session, company, "OPS", "Operations")

    employee = Employee(
        company_id=company.id,
        employee_number="EMP-0001",
        first_name="Maria",
        last_name="Santos",
        department_id=dept.id,
        hire_date=dt.date(2024, 1, 15),
    )
    employee.salary = EmployeeSalary(base_salary=Decimal("30000.00"), salary_rate_type="MONTHLY")
    session.add(employee)
    session.add_all(
        [
            LeaveType(company_id=None, code="VL", name="Vacation Leave", is_paid=True),
            LeaveType(company_id=None, code="SL", name="Sick Leave", is_paid=True),
            LeaveType(company_id=None, code="EL", name="Emergency Leave", is_paid=True),
        ]
    )
    session.commit()

    company_service.create_user(session, company, username="hr", password=DEMO_PASSWORD, role="HR_ADMIN", full_name="HR Admin")
    company_service.create_user(
        session,
        company,
        username="msantos",
        password=DEMO_PASSWORD,
        role="EMPLOYEE",
        full_name=employee.full_name,
        employee_id=employee.id,
    )
    print(statutory.seed_default_tables(session, dt.date(dt.date.today().year, 1, 1), actor="seed"))
    print(f"Created company: {company.slug} (id={company.id})")
    print(f"Users: hr / msantos (password: {DEMO_PASSWORD})")


if __name__ == "__main__":
    main()
