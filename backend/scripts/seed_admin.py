#!/usr/bin/env python3
"""
Admin Operator Seed Script
Creates an active, KYC-verified administrator and, optionally, the first
case so the administrator has a case to log in against.

Usage:
    python -m scripts.seed_admin <email> <username> <phone> <password> [case_number]

Example:
    python -m scripts.seed_admin admin@custody.local admin +15550100 securepassword123 CASE-2024-001
"""
import sys
from typing import Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from custody.auth import hash_password
from custody.clock import utcnow
from custody.database import SessionLocal, init_db
from custody.models.db_models import (
    OperatorDB, CaseDB, CaseStatus, KycStatus, Role, AuditAction,
)
from custody.services.cases.case_registry import generate_case_id
from custody.services.ledger.audit_ledger import AuditLedger


def create_admin_operator(email: str, username: str, phone: str, password: str,
                          case_number: Optional[str] = None) -> bool:
    """Create an admin operator (and bootstrap case) in the database."""
    init_db()

    db: Session = SessionLocal()
    try:
        existing = db.query(OperatorDB).filter(
            or_(OperatorDB.email == email, OperatorDB.username == username, OperatorDB.phone == phone)
        ).first()
        if existing:
            print(f"Error: an operator with that email, username or phone already exists ({existing.username}).")
            return False

        now = utcnow()
        admin = OperatorDB(
            id=str(uuid4()),
            username=username,
            email=email,
            phone=phone,
            password_hash=hash_password(password),
            role=Role.ADMIN,
            is_active=True,
            kyc_status=KycStatus.VERIFIED,
            kyc_verified_at=now,
            failed_login_count=0,
            otp_attempts=0,
            created_at=now,
        )
        db.add(admin)
        db.flush()

        ledger = AuditLedger(db)
        ledger.record(AuditAction.OPERATOR_REGISTERED, actor=admin, detail="seeded administrator", origin="seed")

        case = None
        if case_number:
            case = CaseDB(
                case_id=generate_case_id(),
                case_number=case_number,
                name=f"Case {case_number}",
                status=CaseStatus.ACTIVE,
                created_by=admin.id,
                evidence_count=0,
                created_at=now,
                updated_at=now,
            )
            db.add(case)
            db.flush()
            ledger.record(AuditAction.CASE_CREATED, actor=admin, case_id=case.case_id,
                          detail=f"case_number={case_number}", origin="seed")

        db.commit()

        print("Admin operator created successfully!")
        print(f"  Email: {email}")
        print(f"  Username: {username}")
        print("  Role: admin")
        if case is not None:
            print(f"  Case ID: {case.case_id} ({case_number})")
        return True

    except Exception as e:
        print(f"Error creating admin operator: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) not in (5, 6):
        print(__doc__)
        sys.exit(1)

    email, username, phone, password = sys.argv[1:5]
    case_number = sys.argv[5] if len(sys.argv) == 6 else None

    # Basic validation
    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    success = create_admin_operator(email, username, phone, password, case_number)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
