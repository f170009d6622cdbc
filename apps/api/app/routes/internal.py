"""Internal callback routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from app.routes.dependencies import (
    get_internal_callback_service,
    get_payment_event_service,
    require_callback_secret,
)
from app.schemas.error import ErrorResponse, EventIdPayloadMismatchError, NoLeakNotFoundError
from app.schemas.internal import (
    EngineCallbackRequest,
    EngineCallbackResponse,
    PaymentEvent,
    PaymentEventResponse,
)
from app.services.internal_callbacks import InternalCallbackService
from app.services.payments import PaymentEventService

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.post(
    "/engine/callbacks/{token}",
    response_model=EngineCallbackResponse,
    responses={
        401: {"model": ErrorResponse},
        404: {"model": NoLeakNotFoundError},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
def post_engine_callback(
    token: Annotated[str, Path()],
    payload: EngineCallbackRequest,
    __: Annotated[None, Depends(require_callback_secret)],
    callback_service: Annotated[InternalCallbackService, Depends(get_internal_callback_service)],
) -> EngineCallbackResponse:
    return callback_service.process_engine_callback(token=token, payload=payload)


@router.post(
    "/payments/events",
    response_model=PaymentEventResponse,
    responses={
        401: {"model": ErrorResponse},
        409: {"model": EventIdPayloadMismatchError},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def post_payment_event(
    payload: PaymentEvent,
    __: Annotated[None, Depends(require_callback_secret)],
    service: Annotated[PaymentEventService, Depends(get_payment_event_service)],
) -> PaymentEventResponse:
    return service.process(payload)
