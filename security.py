import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext

from schemas import MAX_ID

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days

# Seeded accounts are hashed at startup, so the cost is configurable.
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def issue_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign a bearer token naming the user and their role."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(user["id"]),
        "role": user["role"],
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def user_id_from_token(token: str) -> int:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    subject = str(payload.get("sub") or "")
    if not subject.isdigit() or not 1 <= int(subject) <= MAX_ID:
        raise HTTPException(status_code=401, detail="Invalid token")
    return int(subject)
