"""SQLAlchemy tables owned by the billing core.

The webhook inbox, the idempotency ledger and per-tenant provider
configuration. Billing entities themselves live behind the persistence port.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from payments_core.core.database import Base


class WebhookEvent(Base):
    """Inbox record for one provider event.

    A row with ``processed_at`` set means the event was fully applied and
    published; a row without it was received but not yet applied.
    """

    __tablename__ = "webhook_events"

    provider: Mapped[str] = mapped_column(String(50), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_webhook_events_processed_at", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent({self.provider}:{self.event_id}, processed={self.processed_at is not None})>"


class IdempotencyKey(Base):
    """Memoized result of an idempotent operation.

    ``completed_at`` is null while the first caller is still running.
    """

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ProviderConfigRecord(Base):
    """Per-tenant provider configuration with Fernet-encrypted credentials."""

    __tablename__ = "provider_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    live_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # JSON document of the provider's credential model, encrypted as a whole
    credentials_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_provider_configs_tenant_provider"),
    )

    def __repr__(self) -> str:
        return f"<ProviderConfigRecord({self.tenant_id}/{self.provider}, enabled={self.is_enabled})>"
