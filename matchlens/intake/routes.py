"""
Intake HTTP routes — POST /api/payments/store,
                      GET  /api/payments/order/{order_id},
                      GET  /api/payments/payment/{payment_id},
                      GET  /api/payments/user/{user_id},
                      GET  /api/payments/list,
                      GET  /api/payments/stats,
                      POST /api/payments/payment/{payment_id}/status

POST /api/payments/store is the payment-gated commit: the checkout page calls
it once PayPal has captured the order, with the questionnaire and photos
embedded. Everything else is read-side administration over the same tables.

Errors are raised as IntakeError subclasses and rendered by main.py.
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from matchlens.config import settings
from matchlens.database import get_db
from matchlens.errors import NotFoundError
from matchlens.payments.schemas import StatusUpdateRequest
from matchlens.store import (
    get_payment_by_order_id,
    get_payment_by_payment_id,
    get_payment_stats,
    get_user_with_payments,
    list_payments,
    update_payment_status,
)

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# POST /api/payments/store
# ---------------------------------------------------------------------------

@router.post("/store")
async def store_payment(
    request: Request,
    payload: Any = Body(...),
) -> JSONResponse:
    """
    Commit a completed payment together with its onboarding questionnaire.

    The body is validated by the orchestrator rather than by FastAPI so every
    field violation comes back with its camelCase path in one 422.

    Returns:
      200: {success, message, userId, paymentId, orderId, verified, assets, degraded}
      400: payment status is not "completed"
      402/502/503: PayPal could not confirm the capture
      409: order already stored (existing receipt in error.receipt) or email taken
      422: validation errors
      503: database unavailable, nothing was written
    """
    orchestrator = request.app.state.orchestrator
    result = await orchestrator.submit(payload)
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "message": "Payment and onboarding data stored successfully",
            **result,
        },
    )


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

@router.get("/order/{order_id}")
async def get_order_payment(
    order_id: str,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Payment joined with its submission, by PayPal order id."""
    payment = await get_payment_by_order_id(db, order_id)
    if payment is None:
        raise NotFoundError(f"Payment for order '{order_id}' not found")
    return JSONResponse(status_code=200, content={"success": True, "payment": payment})


@router.get("/payment/{payment_id}")
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    payment = await get_payment_by_payment_id(db, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment '{payment_id}' not found")
    return JSONResponse(status_code=200, content={"success": True, "payment": payment})


@router.get("/user/{user_id}")
async def get_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Onboarding submission plus every payment made under it, newest first."""
    result = await get_user_with_payments(db, user_id)
    if result is None:
        raise NotFoundError(f"User '{user_id}' not found")
    return JSONResponse(status_code=200, content={"success": True, **result})


@router.get("/list")
async def list_all_payments(
    limit: int = Query(default=50),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Newest first. limit is clamped to LIST_PAGE_MAX rather than rejected."""
    effective_limit = max(1, min(limit, settings.list_page_max))
    payments = await list_payments(db, effective_limit, offset, max_limit=settings.list_page_max)
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "payments": payments,
            "count": len(payments),
            "limit": effective_limit,
            "offset": offset,
        },
    )


@router.get("/stats")
async def payment_stats(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    stats = await get_payment_stats(db)
    return JSONResponse(status_code=200, content={"success": True, "stats": stats})


# ---------------------------------------------------------------------------
# POST /api/payments/payment/{payment_id}/status
# ---------------------------------------------------------------------------

@router.post("/payment/{payment_id}/status")
async def change_payment_status(
    payment_id: str,
    body: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """
    Move a payment along the status table (e.g. completed → refunded).
    Illegal moves such as completed → pending return 409 INVALID_STATUS_TRANSITION.
    """
    payment = await update_payment_status(db, payment_id, body.status)
    if payment is None:
        raise NotFoundError(f"Payment '{payment_id}' not found")
    return JSONResponse(status_code=200, content={"success": True, "payment": payment})
