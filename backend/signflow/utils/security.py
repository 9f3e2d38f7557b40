from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4

from jose import JWTError, jwt

from signflow.core.config import settings


class TokenType(str, Enum):
    ACCESS = "access"


def create_access_token(subject: str, extra_claims: Mapping[str, Any] | None = None) -> str:
    """Issue an owner access token.

    Production tokens come from the identity provider; this mirrors its
    format for local tooling and tests.
    """
    expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode = {
        "sub": subject,
        "exp": expire,
        "token_type": TokenType.ACCESS.value,
        "jti": str(uuid4()),
    }
    if extra_claims:
        to_encode.update(extra_claims)
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if "token_type" not in payload:
        raise ValueError("Invalid token payload")
    return payload
