"""
Tokens JWT (HS256) firmados con APP_SECRET_STRING.

El proveedor de identidad emite los tokens; aquí solo se verifican. Los
helpers de creación los usan los tests y las herramientas internas.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import HTTPException, status
import jwt
from app.core.config import settings


def _encode(data: dict, token_type: str, expires_delta: Optional[timedelta]) -> str:
    expires_delta = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {**data, "exp": datetime.now(timezone.utc) + expires_delta, "type": token_type}
    return jwt.encode(claims, settings.APP_SECRET_STRING, algorithm=settings.ALGORITHM)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Token de usuario: sub y, opcionalmente, role."""
    return _encode(data, "access", expires_delta)


def create_context_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Token de contexto: además de sub lleva tenant_id y user_role."""
    return _encode(data, "context", expires_delta)


def verify_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.APP_SECRET_STRING, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        detail = "Token expirado"
    except jwt.InvalidTokenError:
        detail = "Token inválido"
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )
