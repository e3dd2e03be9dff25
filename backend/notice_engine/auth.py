"""
Notice Engine - Authentication Utilities
Password hashing, JWT tokens, and the employer auth dependency
"""
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import JWT_SECRET_KEY
from .database import get_db
from .models.db_models import EmployerDB

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 12

# Bearer token security
security = HTTPBearer()


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(employer_id: str, email: str) -> str:
    """Create a JWT access token for an employer account."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": employer_id,
        "email": email,
        "role": "employer",
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def get_current_employer(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> EmployerDB:
    """
    Dependency to get the authenticated employer.
    Expired or malformed tokens fail jose validation and map to 401.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    employer_id = payload.get("sub")
    if employer_id is None:
        raise credentials_exception

    employer = db.query(EmployerDB).filter(EmployerDB.id == employer_id).first()
    if employer is None:
        raise credentials_exception

    return employer
