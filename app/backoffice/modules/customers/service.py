from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.backoffice.errors import NotFoundError, ValidationError
from app.backoffice.modules.customers.models import Customer


def get_customer(s: Session, customer_id: int) -> Customer:
    customer = s.get(Customer, int(customer_id))
    if not customer:
        raise NotFoundError("Customer not found")
    return customer


def find_customer_by_email(s: Session, email: str) -> Customer | None:
    email = (email or "").strip().lower()
    if not email:
        return None
    return s.query(Customer).filter(Customer.email == email).one_or_none()


def create_customer(s: Session, *, company_name: str, email: str, password: str) -> Customer:
    company_name = (company_name or "").strip()
    email = (email or "").strip().lower()
    if not company_name:
        raise ValidationError("company_name is required")
    if not email:
        raise ValidationError("email is required")
    if find_customer_by_email(s, email):
        raise ValidationError(f"Customer with email {email} already exists")
    now = datetime.utcnow()
    c = Customer(
        company_name=company_name,
        email=email,
        password_hash=generate_password_hash(password),
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(c)
    s.flush()
    return c
