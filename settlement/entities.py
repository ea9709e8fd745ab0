# settlement/entities.py
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntentStatus(str, Enum):
    CREATED = "CREATED"
    FUNDING_DETECTED = "FUNDING_DETECTED"
    ROUTING = "ROUTING"
    SHIELDING = "SHIELDING"
    SETTLED = "SETTLED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (IntentStatus.SETTLED.value, IntentStatus.FAILED.value)

# forward-only: each working status has exactly one successor (plus FAILED)
NEXT_STATUS = {
    IntentStatus.CREATED.value: IntentStatus.FUNDING_DETECTED.value,
    IntentStatus.FUNDING_DETECTED.value: IntentStatus.ROUTING.value,
    IntentStatus.ROUTING.value: IntentStatus.SHIELDING.value,
    IntentStatus.SHIELDING.value: IntentStatus.SETTLED.value,
}


class InputMethod(str, Enum):
    LEDGER_BALANCE = "LEDGER_BALANCE"
    CHAIN_WALLET = "CHAIN_WALLET"
    FIAT_GATEWAY = "FIAT_GATEWAY"


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    family_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)   # parent, child, clinic
    wallet_address: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        Index("ix_profiles_family_role", "family_id", "role"),
    )


class Wallet(Base, TimestampMixin):
    __tablename__ = "wallets"

    user_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        primary_key=True,
    )
    usdc_balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        server_default=text("0"),
        default=Decimal("0"),
    )
    sol_balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 6),
        nullable=False,
        server_default=text("0"),
        default=Decimal("0"),
    )


class PaymentIntent(Base, TimestampMixin):
    __tablename__ = "payment_intents"

    intent_id: Mapped[UUID] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    family_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    clinic_id: Mapped[UUID] = mapped_column(String(36), nullable=False)

    fiat_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    input_method: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str | None] = mapped_column(String(32))

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IntentStatus.CREATED.value,
    )

    # funding proof supplied by the caller for CHAIN_WALLET
    input_tx_ref: Mapped[str | None] = mapped_column(Text)

    settlement_rail: Mapped[str | None] = mapped_column(String(32))
    settlement_tx_ref: Mapped[str | None] = mapped_column(Text)
    proof_handle: Mapped[str | None] = mapped_column(Text)

    # what the custodial ledger gave up for this intent (null = nothing)
    ledger_asset: Mapped[str | None] = mapped_column(String(8))
    ledger_debit: Mapped[Decimal | None] = mapped_column(Numeric(20, 6))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    failure_reason: Mapped[str | None] = mapped_column(Text)

    lease_owner: Mapped[str | None] = mapped_column(String(64))
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_payment_intents_family_id", "family_id"),
        Index("ix_payment_intents_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "intent_id": self.intent_id,
            "family_id": self.family_id,
            "clinic_id": self.clinic_id,
            "fiat_amount": str(self.fiat_amount),
            "currency": self.currency,
            "input_method": self.input_method,
            "network": self.network,
            "status": self.status,
            "input_tx_ref": self.input_tx_ref,
            "settlement_rail": self.settlement_rail,
            "settlement_tx_ref": self.settlement_tx_ref,
            "proof_handle": self.proof_handle,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    sender_id = Column(String, nullable=False)
    receiver_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
