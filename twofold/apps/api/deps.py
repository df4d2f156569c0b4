from __future__ import annotations

from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.core.config import get_settings
from twofold.persistence.db import get_session


_DEV_PRINCIPAL_ID = "dev-principal"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the trusted gateway; the API does no credential checks itself.
    principal_id: str
    email: str | None = None
    display_name: str | None = None
    auth_method: str = "gateway_header"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _header(request: Request, name: str) -> str | None:
    value = (request.headers.get(name) or "").strip()
    return value or None


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    principal_id = _header(request, settings.auth_principal_header)
    email = _header(request, settings.auth_email_header)
    display_name = _header(request, settings.auth_name_header)
    if principal_id is None:
        if settings.auth_enabled:
            raise _auth_error(f"{settings.auth_principal_header} header is required")
        # Local development only: a fixed principal when no gateway sits in front.
        return Principal(
            principal_id=_DEV_PRINCIPAL_ID,
            email=email,
            display_name=display_name,
            auth_method="dev_bypass",
        )
    request.state.principal_id = principal_id
    return Principal(principal_id=principal_id, email=email.lower() if email else None, display_name=display_name)
