import logging
import math
import os
from decimal import Decimal
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from fib_payments import payment_service
from fib_payments.auth import verify_token
from fib_payments.config import FibSettings
from fib_payments.database import get_db
from fib_payments.exceptions import FibError, PaymentError, PaymentNotFound
from fib_payments.fib_service import FibPaymentClient
from fib_payments.models import Payment
from fib_payments.token_cache import TokenCache, build_token_cache

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentRequest(BaseModel):
    amount: Decimal = Field(..., ge=Decimal("0.01"))
    description: str = ""


@lru_cache
def get_token_cache() -> TokenCache:
    return build_token_cache(os.getenv("REDIS_URL"))


@lru_cache
def get_fib_client() -> FibPaymentClient:
    # One client per process, so its requests.Session keeps pooling connections.
    return FibPaymentClient(FibSettings.from_env(), get_token_cache())


def _isoformat(value):
    return value.isoformat() if value else None


def _paid_by(payment: Payment):
    if not payment.paid_by_name:
        return None
    return {"name": payment.paid_by_name, "iban": payment.paid_by_iban}


def _summary(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "payment_id": payment.payment_id,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "valid_until": _isoformat(payment.valid_until),
        "created_at": _isoformat(payment.created_at),
        "updated_at": _isoformat(payment.updated_at),
    }


def _detail(payment: Payment) -> dict:
    return {
        **_summary(payment),
        "readable_code": payment.readable_code,
        "qr_code": payment.qr_code,
        "personal_app_link": payment.personal_app_link,
        "business_app_link": payment.business_app_link,
        "corporate_app_link": payment.corporate_app_link,
        "declining_reason": payment.declining_reason,
        "declined_at": _isoformat(payment.declined_at),
        "paid_by": _paid_by(payment),
    }


def _to_http(exc: Exception, action: str, **context) -> HTTPException:
    if isinstance(exc, PaymentNotFound):
        return HTTPException(status_code=404, detail="Payment not found")
    if isinstance(exc, PaymentError):
        return HTTPException(status_code=422, detail=str(exc))
    logger.error("Failed to %s: %s (%s)", action, exc, ", ".join(f"{k}={v}" for k, v in context.items()))
    return HTTPException(status_code=500, detail=f"Failed to {action}: {exc}")


@router.post("/payments", status_code=201)
def create_payment_api(
    request: PaymentRequest,
    user_id: int = Depends(verify_token),
    db: Session = Depends(get_db),
    client: FibPaymentClient = Depends(get_fib_client),
):
    try:
        payment = payment_service.create_payment(
            db, client, user_id, request.amount, request.description
        )
    except (FibError, PaymentError) as exc:
        raise _to_http(exc, "create payment", user_id=user_id, amount=request.amount)
    return _detail(payment)


@router.get("/payments")
def list_payments_api(
    page: int = Query(1, ge=1),
    user_id: int = Depends(verify_token),
    db: Session = Depends(get_db),
):
    items, total = payment_service.list_payments(db, user_id, page)
    per_page = payment_service.PER_PAGE
    return {
        "data": [_summary(p) for p in items],
        "meta": {
            "current_page": page,
            "per_page": per_page,
            "total": total,
            "last_page": max(1, math.ceil(total / per_page)),
        },
    }


@router.get("/payments/{id}")
def get_payment_api(id: int, user_id: int = Depends(verify_token), db: Session = Depends(get_db)):
    try:
        payment = payment_service.get_payment(db, user_id, id)
    except PaymentNotFound as exc:
        raise _to_http(exc, "fetch payment")
    return _detail(payment)


@router.get("/payments/{payment_id}/status")
def payment_status_api(
    payment_id: str,
    user_id: int = Depends(verify_token),
    db: Session = Depends(get_db),
    client: FibPaymentClient = Depends(get_fib_client),
):
    try:
        payment = payment_service.refresh_payment_status(db, client, user_id, payment_id)
    except (FibError, PaymentError) as exc:
        raise _to_http(exc, "fetch payment status", user_id=user_id, payment_id=payment_id)

    return {
        "payment_id": payment.payment_id,
        "status": payment.status,
        "valid_until": _isoformat(payment.valid_until),
        "amount": {"amount": float(payment.amount), "currency": payment.currency},
        "declining_reason": payment.declining_reason,
        "declined_at": _isoformat(payment.declined_at),
        "paid_by": _paid_by(payment),
    }


@router.post("/payments/{payment_id}/cancel")
def cancel_payment_api(
    payment_id: str,
    user_id: int = Depends(verify_token),
    db: Session = Depends(get_db),
    client: FibPaymentClient = Depends(get_fib_client),
):
    try:
        payment_service.cancel_payment(db, client, user_id, payment_id)
    except (FibError, PaymentError) as exc:
        raise _to_http(exc, "cancel payment", user_id=user_id, payment_id=payment_id)
    return {"message": "Payment cancelled successfully"}


@router.post("/payments/{payment_id}/refund", status_code=202)
def refund_payment_api(
    payment_id: str,
    user_id: int = Depends(verify_token),
    db: Session = Depends(get_db),
    client: FibPaymentClient = Depends(get_fib_client),
):
    try:
        payment_service.refund_payment(db, client, user_id, payment_id)
    except (FibError, PaymentError) as exc:
        raise _to_http(exc, "refund payment", user_id=user_id, payment_id=payment_id)
    return {"message": "Refund requested", "payment_id": payment_id}
