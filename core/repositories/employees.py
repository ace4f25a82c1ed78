from __future__ import annotations

import datetime as dt
from typing import Iterable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, joinedload

from core.models import Employee, PayPeriod


def get_employee(session: Session, company_id: int, employee_id: int) -> Employee | None:
    emp = session.get(Employee, employee_id)
    if emp is None or emp.company_id != company_id:
        return None
    return emp


def employee_for_user(session: Session, company_id: int, employee_id: Optional[int]) -> Employee | None:
    if not employee_id:
        return None
    return get_employee(session, company_id, employee_id)


def eligible_employees(
    session: Session,
    period: PayPeriod,
    *,
    department_ids: Iterable[int] = (),
    employee_ids: Iterable[int] = (),
    include_separated_in_year: bool = False,
) -> list[Employee]:
    """Employees on the period's pay frequency who match the run scope.

    13th month runs also pick up employees separated earlier in the same
    year, since they are still owed the pro-rated benefit.
    """
    q = (
        session.query(Employee)
        .options(joinedload(Employee.salary), joinedload(Employee.department))
        .filter(Employee.company_id == period.company_id, Employee.pay_frequency == period.pay_frequency)
    )
    if include_separated_in_year:
        q = q.filter(
            or_(
                Employee.is_active.is_(True),
                and_(
                    Employee.separation_date.is_not(None),
                    Employee.separation_date >= dt.date(period.year, 1, 1),
                ),
            )
        )
    else:
        q = q.filter(Employee.is_active.is_(True))
    dept_ids = [int(d) for d in department_ids]
    emp_ids = [int(e) for e in employee_ids]
    if dept_ids:
        q = q.filter(Employee.department_id.in_(dept_ids))
    if emp_ids:
        q = q.filter(Employee.id.in_(emp_ids))
    return q.order_by(Employee.last_name.asc(), Employee.first_name.asc(), Employee.id.asc()).all()
