"""Database models for the MobilePay bridge"""

import enum
import uuid

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mobilepay_bridge.database.database import Base


PAYMENT_METHOD_MOBILEPAY = "mobilepay"


class AgreementStatus(str, enum.Enum):
    """Local mirror of the MobilePay agreement status."""
    pending = "pending"
    active = "active"
    stopped = "stopped"
    expired = "expired"


class ChargeStatus(str, enum.Enum):
    """Local mirror of the MobilePay charge status."""
    pending = "pending"
    due = "due"
    reserved = "reserved"
    charged = "charged"
    failed = "failed"
    cancelled = "cancelled"
    refunded = "refunded"
    partially_refunded = "partially_refunded"


class IntervalUnit(str, enum.Enum):
    """Billing interval units understood by MobilePay."""
    day = "DAY"
    week = "WEEK"
    month = "MONTH"
    year = "YEAR"


class PlanType(str, enum.Enum):
    """Subscription plans sold through MobilePay."""
    monthly = "monthly"
    semi_annual = "semi_annual"
    annual = "annual"


class SubscriptionLinkStatus(str, enum.Enum):
    active = "active"
    cancelled = "cancelled"


def _uuid() -> str:
    return str(uuid.uuid4())


class Customer(Base):
    """Payer identity, looked up by email"""
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String, nullable=True)
    name = Column(String, nullable=True)
    # Customer id in the billing platform (Stripe on the platform side)
    billing_customer_id = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    agreements = relationship("Agreement", back_populates="customer")
    subscription_links = relationship("SubscriptionLink", back_populates="customer")


class Agreement(Base):
    """Recurring payment agreement held by MobilePay"""
    __tablename__ = "agreements"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False, index=True)
    mobilepay_agreement_id = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, nullable=False, default=AgreementStatus.pending.value, index=True)
    interval_unit = Column(String, nullable=False)
    interval_count = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units (øre)
    currency = Column(String(3), nullable=False, default="DKK")
    product_name = Column(String, nullable=False)
    product_description = Column(Text, nullable=True)
    merchant_agreement_url = Column(String, nullable=True)
    confirmation_url = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", back_populates="agreements")
    charges = relationship("Charge", back_populates="agreement", cascade="all, delete-orphan")
    subscription_links = relationship(
        "SubscriptionLink", back_populates="agreement", cascade="all, delete-orphan"
    )


class Charge(Base):
    """One billing attempt against an agreement for a due date"""
    __tablename__ = "charges"
    __table_args__ = (
        # attempt 0 is the scheduled charge, manual retries count up from 1
        UniqueConstraint("agreement_id", "due_date", "attempt", name="uq_charges_agreement_due_attempt"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    agreement_id = Column(String, ForeignKey("agreements.id"), nullable=False, index=True)
    mobilepay_charge_id = Column(String, unique=True, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    description = Column(String, nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    status = Column(String, nullable=False, default=ChargeStatus.pending.value, index=True)
    retry_days = Column(Integer, nullable=False, default=5)
    attempt = Column(Integer, nullable=False, default=0)
    retry_of_id = Column(String, ForeignKey("charges.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    agreement = relationship("Agreement", back_populates="charges")


class SubscriptionLink(Base):
    """Ties a customer's plan to an agreement and its next billing date"""
    __tablename__ = "subscription_links"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False, index=True)
    agreement_id = Column(String, ForeignKey("agreements.id"), nullable=False, index=True)
    payment_method = Column(String, nullable=False, default=PAYMENT_METHOD_MOBILEPAY)
    plan_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SubscriptionLinkStatus.active.value, index=True)
    next_billing_date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", back_populates="subscription_links")
    agreement = relationship("Agreement", back_populates="subscription_links")
