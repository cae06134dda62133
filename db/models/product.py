"""
db/models/product.py

Product row as seen by the pipeline engine. Only the columns the engine
reads or writes are mapped; enrichment fields live in phase outputs.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin
from db.models.enums import FIRST_PHASE, ProductStatus, enum_type


class Product(Base, TimestampMixin):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_phase: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=FIRST_PHASE,
    )
    status: Mapped[ProductStatus] = mapped_column(
        enum_type(ProductStatus),
        nullable=False,
        default=ProductStatus.UPLOADING,
    )
    is_pipeline_running: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("current_phase BETWEEN 1 AND 4", name="ck_products_current_phase"),
        Index("ix_products_status", "status"),
    )
