"""
Keeps local ``Payment`` rows in line with what FIB reports.

Rows change on three triggers: a user creating a payment, a user polling its
status, and FIB calling the webhook. Poll and webhook both re-read the
payment from FIB and overwrite the status-dependent columns; there is no
version check, so concurrent updates are last-write-wins.
"""
import enum
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from fib_payments.exceptions import (
    InvalidAmount,
    PaymentConflict,
    PaymentCreationError,
    PaymentNotFound,
    PaymentStatusError,
)
from fib_payments.fib_service import FibPaymentClient
from fib_payments.models import DecliningReason, Payment, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

MIN_AMOUNT = Decimal("0.01")
PER_PAGE = 10


class CallbackPayload(BaseModel):
    id: str
    status: PaymentStatus


class CallbackOutcome(str, enum.Enum):
    """Result of a webhook delivery. Only an unknown payment id is answered with 404."""

    UPDATED = "Payment status updated successfully"
    UNKNOWN_PAYMENT = "Payment not found"
    INVALID_PAYLOAD = "Invalid callback payload"
    FAILED = "Error processing callback"


def _parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def validate_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmount("The amount must be a valid number.")
    if not value.is_finite():
        raise InvalidAmount("The amount must be a valid number.")
    if value < MIN_AMOUNT:
        raise InvalidAmount("The amount must be at least 0.01.")
    return value


def create_payment(
    db: Session, client: FibPaymentClient, user_id: int, amount, description: str = ""
) -> Payment:
    amount = validate_amount(amount)
    response = client.create(amount, description)
    try:
        valid_until = _parse_timestamp(response.get("validUntil"))
    except (AttributeError, TypeError, ValueError) as exc:
        raise PaymentCreationError(f"FIB returned a malformed validUntil: {exc}")

    payment = Payment(
        user_id=user_id,
        payment_id=response["paymentId"],
        readable_code=response.get("readableCode"),
        qr_code=response.get("qrCode"),
        valid_until=valid_until,
        personal_app_link=response.get("personalAppLink"),
        business_app_link=response.get("businessAppLink"),
        corporate_app_link=response.get("corporateAppLink"),
        amount=amount,
        currency=client.settings.currency,
        status=PaymentStatus.UNPAID.value,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def get_owned_payment(db: Session, user_id: int, payment_id: str) -> Payment:
    payment = db.query(Payment).filter_by(payment_id=payment_id, user_id=user_id).first()
    if payment is None:
        raise PaymentNotFound(payment_id)
    return payment


def get_payment(db: Session, user_id: int, id: int) -> Payment:
    payment = db.query(Payment).filter_by(id=id, user_id=user_id).first()
    if payment is None:
        raise PaymentNotFound(id)
    return payment


def list_payments(db: Session, user_id: int, page: int = 1, per_page: int = PER_PAGE):
    """Return one page of the user's payments, newest first, and the total count."""
    query = db.query(Payment).filter_by(user_id=user_id)
    total = query.count()
    items = (
        query.order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return items, total


def apply_provider_status(payment: Payment, data: dict) -> Payment:
    try:
        status = PaymentStatus(data["status"]).value
    except (KeyError, TypeError, ValueError):
        raise PaymentStatusError(f"FIB returned an unknown payment status: {data.get('status')!r}")

    if payment.is_terminal and status != payment.status:
        logger.warning(
            "FIB moved payment %s from terminal status %s to %s",
            payment.payment_id,
            payment.status,
            status,
        )

    try:
        monetary = data.get("amount") or {}
        paid_by = data.get("paidBy") or {}
        valid_until = _parse_timestamp(data.get("validUntil"))
        declined_at = _parse_timestamp(data.get("declinedAt"))
        amount = monetary.get("amount")
        if amount is not None:
            amount = Decimal(str(amount))
            if not amount.is_finite():
                raise ValueError(f"non-finite amount {amount}")
    except (AttributeError, TypeError, ValueError, InvalidOperation) as exc:
        raise PaymentStatusError(f"FIB returned a malformed payment status: {exc}")

    payment.status = status
    payment.valid_until = valid_until
    if amount is not None:
        payment.amount = amount
    if monetary.get("currency"):
        payment.currency = monetary["currency"]
    payment.declining_reason = data.get("decliningReason")
    payment.declined_at = declined_at
    payment.paid_by_name = paid_by.get("name")
    payment.paid_by_iban = paid_by.get("iban")
    return payment


def refresh_payment_status(
    db: Session, client: FibPaymentClient, user_id: int, payment_id: str
) -> Payment:
    payment = get_owned_payment(db, user_id, payment_id)
    apply_provider_status(payment, client.status(payment_id))
    db.commit()
    db.refresh(payment)
    return payment


def cancel_payment(
    db: Session, client: FibPaymentClient, user_id: int, payment_id: str
) -> Payment:
    payment = get_owned_payment(db, user_id, payment_id)
    if payment.status == PaymentStatus.PAID.value:
        raise PaymentConflict("Cannot cancel a paid payment")
    if payment.status == PaymentStatus.DECLINED.value:
        raise PaymentConflict("Payment is already declined")

    client.cancel(payment_id)

    payment.status = PaymentStatus.DECLINED.value
    payment.declining_reason = DecliningReason.PAYMENT_CANCELLATION.value
    payment.declined_at = utcnow()
    db.commit()
    db.refresh(payment)
    return payment


def refund_payment(
    db: Session, client: FibPaymentClient, user_id: int, payment_id: str
) -> Payment:
    # FIB settles refunds asynchronously; the row changes on the next poll or callback.
    payment = get_owned_payment(db, user_id, payment_id)
    if payment.status != PaymentStatus.PAID.value:
        raise PaymentConflict("Only paid payments can be refunded")
    client.refund(payment_id)
    logger.info("FIB refund accepted: payment_id=%s user_id=%s", payment_id, user_id)
    return payment


def handle_callback(db: Session, client: FibPaymentClient, payload) -> CallbackOutcome:
    """
    Process a status callback from FIB.

    The callback only tells us *which* payment changed. The authoritative
    state is re-fetched from FIB before anything is written. Failures are
    logged and reported as an outcome, never raised, so that FIB gets its
    acknowledgement and does not keep redelivering.
    """
    try:
        callback = CallbackPayload.model_validate(payload)
    except ValidationError as exc:
        logger.warning("FIB callback rejected: payload=%r errors=%s", payload, exc.errors())
        return CallbackOutcome.INVALID_PAYLOAD

    try:
        payment = db.query(Payment).filter_by(payment_id=callback.id).first()
        if payment is None:
            logger.warning(
                "FIB callback: payment not found payment_id=%s status=%s",
                callback.id,
                callback.status.value,
            )
            return CallbackOutcome.UNKNOWN_PAYMENT

        apply_provider_status(payment, client.status(callback.id))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("FIB callback error: payment_id=%s", callback.id)
        return CallbackOutcome.FAILED

    logger.info(
        "FIB callback processed: payment_id=%s status=%s", payment.payment_id, payment.status
    )
    return CallbackOutcome.UPDATED
