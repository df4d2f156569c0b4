from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from twofold.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from twofold.apps.api.response import SuccessEnvelope, envelope, is_versioned_request
from twofold.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    service: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", service=get_settings().app_name).model_dump()
    if is_versioned_request(request):
        return envelope(request=request, data=payload)
    return payload
