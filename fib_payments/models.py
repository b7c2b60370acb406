import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship, validates

from fib_payments.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class PaymentStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    DECLINED = "DECLINED"


TERMINAL_STATUSES = {PaymentStatus.PAID.value, PaymentStatus.DECLINED.value}


class DecliningReason(str, enum.Enum):
    SERVER_FAILURE = "SERVER_FAILURE"
    PAYMENT_EXPIRATION = "PAYMENT_EXPIRATION"
    PAYMENT_CANCELLATION = "PAYMENT_CANCELLATION"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    payments = relationship("Payment", back_populates="user", cascade="all, delete-orphan")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = Column(String, unique=True, nullable=False, index=True)  # FIB payment ID
    readable_code = Column(String)
    qr_code = Column(Text)                         # base64 QR image
    valid_until = Column(DateTime(timezone=True))
    personal_app_link = Column(String)
    business_app_link = Column(String)
    corporate_app_link = Column(String)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="IQD")
    status = Column(String, nullable=False, default=PaymentStatus.UNPAID.value)  # UNPAID | PAID | DECLINED
    declining_reason = Column(String)
    declined_at = Column(DateTime(timezone=True))
    paid_by_name = Column(String)
    paid_by_iban = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="payments")

    @validates("payment_id")
    def _freeze_payment_id(self, key, value):
        if self.payment_id is not None and value != self.payment_id:
            raise ValueError("payment_id cannot be changed once set")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
