"""
Notice Engine - Authentication Router
Employer account registration, login and session verification.
"""
from uuid import uuid4
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import EmployerDB
from ..auth import hash_password, verify_password, create_access_token, get_current_employer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., description="At least 8 characters")
    legal_name: str = Field(..., description="Company legal name (razon social)")
    tax_id: Optional[str] = Field(None, description="Company CUIT")

    @field_validator("password")
    @classmethod
    def validate_password_strength(cls, v):
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class EmployerResponse(BaseModel):
    id: str
    email: str
    legal_name: str
    tax_id: Optional[str] = None


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/register", response_model=EmployerResponse, status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new employer account.
    """
    existing = db.query(EmployerDB).filter(EmployerDB.email == request.email).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    employer = EmployerDB(
        id=str(uuid4()),
        email=request.email,
        password_hash=hash_password(request.password),
        legal_name=request.legal_name,
        tax_id=request.tax_id,
    )
    db.add(employer)
    db.commit()

    logger.info(f"Employer registered: {request.email}")
    return EmployerResponse(id=employer.id, email=employer.email, legal_name=employer.legal_name, tax_id=employer.tax_id)


@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Authenticate an employer and return a JWT token.
    """
    employer = db.query(EmployerDB).filter(EmployerDB.email == request.email).first()

    if not employer or not verify_password(request.password, employer.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info(f"Employer logged in: {request.email}")
    return TokenResponse(access_token=create_access_token(employer.id, employer.email))


@router.get("/me", response_model=EmployerResponse)
async def get_me(current_employer: EmployerDB = Depends(get_current_employer)):
    return EmployerResponse(
        id=current_employer.id,
        email=current_employer.email,
        legal_name=current_employer.legal_name,
        tax_id=current_employer.tax_id,
    )
