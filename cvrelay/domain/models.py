from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    func,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class MerchantSession(Base):
    __tablename__ = "merchant_sessions"

    # Written by the app-install flow; the ingestion core only reads the current row.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    shop: Mapped[str] = mapped_column(String)
    access_token: Mapped[str] = mapped_column(String)
    primary_domain: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PixelKeyPair(Base):
    __tablename__ = "pixel_key_pairs"

    kid: Mapped[str] = mapped_column(String, primary_key=True)
    # Public JWK JSON exactly as pushed to the pixel configuration.
    public_jwk: Mapped[str] = mapped_column(Text)
    # Fernet-wrapped PKCS#8 PEM; plaintext private keys never reach the database.
    private_key_ciphertext: Mapped[str] = mapped_column(Text)
    # Set explicitly so rotations within the same second still order correctly.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class ReplayToken(Base):
    __tablename__ = "replay_tokens"

    nonce: Mapped[str] = mapped_column(String, primary_key=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


class ConversionRecord(Base):
    __tablename__ = "conversion_records"
    __table_args__ = (
        Index("ix_conversion_records_export", "is_processed", "converted_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Click identifier carrying the network prefix (YSS / YJAD).
    yclid: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    visited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    converted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Flips false -> true once, in the exporter's bulk update.
    is_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Idempotency key across every delivery of the same purchase.
    order_id: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AdApplication(Base):
    __tablename__ = "ad_applications"

    # Credential row owned by the OAuth linking flow; exporter reads and refreshes tokens.
    client_id: Mapped[str] = mapped_column(String, primary_key=True)
    client_secret: Mapped[str] = mapped_column(String)
    redirect_uri: Mapped[str] = mapped_column(String)
    state: Mapped[str | None] = mapped_column(String, nullable=True)
    code: Mapped[str | None] = mapped_column(String, nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AdAccount(Base):
    __tablename__ = "ad_accounts"

    # Operator-configured export destination; read-only to the pipeline.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    network_type: Mapped[str] = mapped_column(String)
    account_id: Mapped[str] = mapped_column(String)
    child_account_id: Mapped[str] = mapped_column(String)
    duration_days: Mapped[int] = mapped_column(Integer)
    conversion_title: Mapped[str] = mapped_column(String)
