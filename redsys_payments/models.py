import datetime as dt
import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from redsys_payments.database import Base


def utcnow() -> dt.datetime:
    # Naive UTC; SQLite drops tzinfo on round-trip.
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def as_naive_utc(moment: dt.datetime) -> dt.datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(dt.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    ERROR = "error"


class PaymentContext(str, enum.Enum):
    SHOP = "shop"
    MEMBERSHIP = "membership"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String(32), primary_key=True, default=new_id)
    gateway_order = Column(String(12), unique=True, index=True, nullable=False)
    context = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    transaction_type = Column(String(2), nullable=False, default="0")
    amount = Column(Integer, nullable=False)                    # minor units
    currency = Column(String(3), nullable=False, default="978")  # ISO-4217 numeric

    response_code = Column(String(8))
    authorization_code = Column(String(16))
    card_brand = Column(String(8))
    card_country = Column(String(8))
    last_four = Column(String(4))
    recurring_token = Column(String(64))
    cof_transaction_id = Column(String(64))

    is_mit = Column(Boolean, nullable=False, default=False)
    subscription_id = Column(String(32), index=True)
    description = Column(String(125))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(64), index=True, nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    plan_name = Column(String(64))
    interval = Column(String(10), nullable=False, default="monthly")  # monthly | annual
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="978")

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    next_renewal_at = Column(DateTime, index=True)

    recurring_token = Column(String(64))
    cof_transaction_id = Column(String(64))
    last_gateway_order = Column(String(12))
    renewal_failures = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, nullable=False, default=utcnow)


class ShopOrder(Base):
    __tablename__ = "shop_orders"

    id = Column(String(32), primary_key=True, default=new_id)
    gateway_order = Column(String(12), unique=True, index=True)
    status = Column(String(20), nullable=False, default="pending")  # pending | paid
    updated_at = Column(DateTime, nullable=False, default=utcnow)
