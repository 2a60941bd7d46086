"""
PayPal HTTP routes — POST /api/paypal/orders,
                     POST /api/paypal/orders/{order_id}/capture

The checkout page creates the order here, sends the buyer to PayPal's approve
URL, then captures. Only after a completed capture does it call
POST /api/payments/store.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from matchlens.payments.schemas import CreateOrderRequest

router = APIRouter(prefix="/api/paypal", tags=["paypal"])
logger = logging.getLogger(__name__)


@router.post("/orders")
async def create_paypal_order(request: Request, body: CreateOrderRequest) -> JSONResponse:
    """Create a PayPal order for a package; returns orderId and the approve URL."""
    verifier = request.app.state.verifier
    order = await verifier.create_order(body)
    logger.info("PayPal order created order_id=%s package_id=%s", order["orderId"], body.package_id)
    return JSONResponse(status_code=201, content={"success": True, **order})


@router.post("/orders/{order_id}/capture")
async def capture_paypal_order(request: Request, order_id: str) -> JSONResponse:
    """
    Capture an approved order. Safe to repeat: an already-captured order is
    read back instead of failing.
    """
    verifier = request.app.state.verifier
    result = await verifier.confirm_capture(order_id)
    logger.info("PayPal capture order_id=%s status=%s", order_id, result.status.value)
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "orderId": result.order_id,
            "captureId": result.capture_id,
            "status": result.status.value,
            "amount": str(result.amount),
            "currency": result.currency,
            "payerEmail": result.payer_email,
            "payerName": result.payer_name,
        },
    )
