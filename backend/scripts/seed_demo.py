#!/usr/bin/env python3
"""
Demo Seed Script
Creates an employer login and one employee for local runs.

Usage:
    python -m scripts.seed_demo <employer_email> <password> [employee_cuil]

Example:
    python -m scripts.seed_demo rrhh@acme.com.ar securepassword123 20-12345678-9
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from notice_engine.auth import hash_password
from notice_engine.database import SessionLocal, init_db
from notice_engine.models.db_models import EmployeeDB, EmployerDB


def create_demo_rows(email: str, password: str, employee_cuil: str) -> bool:
    """Create an employer and a demo employee."""
    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        if db.query(EmployerDB).filter(EmployerDB.email == email).first():
            print(f"Error: Employer '{email}' already exists.")
            return False

        employer = EmployerDB(
            id=str(uuid4()),
            email=email,
            password_hash=hash_password(password),
            legal_name="Demo S.A.",
            tax_id="30-71234567-8",
        )
        employee = EmployeeDB(
            id=str(uuid4()),
            employer_id=employer.id,
            full_name="Juan Pérez",
            tax_id=employee_cuil,
            employee_number="1001",
            email="juan.perez@example.com",
            phone="+5491155550000",
        )
        db.add(employer)
        db.add(employee)
        db.commit()

        print("Demo rows created successfully!")
        print(f"  Employer: {email} ({employer.id})")
        print(f"  Employee: {employee.full_name} ({employee.id})")
        print("  Next: POST /employees/{id}/domicile to issue the agreement link.")
        return True

    except Exception as e:
        print(f"Error creating demo rows: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) not in (3, 4):
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1]
    password = sys.argv[2]
    employee_cuil = sys.argv[3] if len(sys.argv) == 4 else "20-12345678-9"

    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    success = create_demo_rows(email, password, employee_cuil)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
