from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.constants import APPROVAL_APPROVED, DEFAULT_INTERVAL, LIST_STATUS_ACTIVE, ROLE_STAFF
from app.backoffice.models import Base
from app.backoffice.modules.scheduled_lists.actors import Actor, actor_from_parts, actor_role

# Postgres gets JSONB; sqlite (tests/dev) falls back to generic JSON.
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid.uuid4().hex


class _HexIdMixin:
    """String uuid primary key, assigned at construction so it is usable before flush."""

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("id", _new_id())
        super().__init__(**kwargs)


class _CreatorMixin:
    """Persists the Staff | Customer creator union as (kind, id)."""

    creator_kind: Mapped[str] = mapped_column(String(16), nullable=False, default=ROLE_STAFF)
    creator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    @property
    def creator(self) -> Actor | None:
        return actor_from_parts(self.creator_kind, self.creator_id)

    @creator.setter
    def creator(self, actor: Actor) -> None:
        self.creator_kind = actor_role(actor)
        self.creator_id = actor.id


class OrderList(_HexIdMixin, _CreatorMixin, Base):
    __tablename__ = "order_lists"
    __table_args__ = (
        Index("idx_order_lists_customer_id", "customer_id"),
        Index("idx_order_lists_status", "status"),
    )

    list_number: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=LIST_STATUS_ACTIVE)

    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer = relationship("Customer", lazy="selectin")
    items: Mapped[list["ListItem"]] = relationship(
        "ListItem",
        back_populates="order_list",
        cascade="all, delete-orphan",
        order_by="ListItem.position",
        lazy="selectin",
    )
    activity_logs: Mapped[list["ListActivityLog"]] = relationship(
        "ListActivityLog",
        back_populates="order_list",
        cascade="all, delete-orphan",
        # seq is assigned in memory; concurrent writers can repeat it
        order_by="[ListActivityLog.seq, ListActivityLog.created_at, ListActivityLog.id]",
        lazy="selectin",
    )

    def to_dict(self, *, include_items: bool = True, include_logs: bool = False) -> dict[str, Any]:
        creator = self.creator
        d: dict[str, Any] = {
            "id": self.id,
            "list_number": self.list_number,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "customer_id": self.customer_id,
            "creator": {"role": actor_role(creator), "id": creator.id} if creator else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        if include_logs:
            # newest first, as the dashboard shows them
            d["activity_logs"] = [e.to_dict() for e in reversed(self.activity_logs)]
        return d


class ListItem(_HexIdMixin, _CreatorMixin, Base):
    __tablename__ = "list_items"
    __table_args__ = (
        Index("idx_list_items_list_id", "list_id"),
        Index("idx_list_items_item_key", "item_key"),
    )

    list_id: Mapped[str] = mapped_column(ForeignKey("order_lists.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # MIS item id (i.id), kept as text
    item_key: Mapped[str] = mapped_column(String(64), nullable=False)

    # Mirrored from MIS on every refresh
    article_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    article_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    item_no_de: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Locally owned
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(precision=14, scale=3), nullable=True)
    interval: Mapped[str] = mapped_column(String(16), nullable=False, default=DEFAULT_INTERVAL)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    marked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # {"2024-03": {...Delivery...}}; always reassigned, never mutated in place
    deliveries: Mapped[dict] = mapped_column(JsonColumn, nullable=False, default=dict)

    last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    order_list: Mapped[OrderList] = relationship("OrderList", back_populates="items")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "list_id": self.list_id,
            "item_key": self.item_key,
            "article_name": self.article_name,
            "article_number": self.article_number,
            "item_no_de": self.item_no_de,
            "image_url": self.image_url,
            "quantity": float(self.quantity) if self.quantity is not None else None,
            "interval": self.interval,
            "comment": self.comment,
            "marked": bool(self.marked),
            "deliveries": dict(self.deliveries or {}),
            "last_refreshed_at": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
        }


class ListActivityLog(_HexIdMixin, Base):
    """
    One observed change on a list or list item. Never deleted; the approval fields
    move at most once (pending -> approved | rejected).
    """

    __tablename__ = "list_activity_logs"
    __table_args__ = (
        Index("idx_list_activity_logs_list_id", "list_id"),
        Index("idx_list_activity_logs_approval", "list_id", "actor_role", "approval_state"),
    )

    # Insertion order within a list; timestamps collide within one request.
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    list_id: Mapped[str] = mapped_column(ForeignKey("order_lists.id", ondelete="CASCADE"), nullable=False)
    item_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    field: Mapped[str] = mapped_column(String(128), nullable=False)
    old_value: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    new_value: Mapped[Any] = mapped_column(JsonColumn, nullable=True)
    action: Mapped[str] = mapped_column(String(160), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    actor_role: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    approval_state: Mapped[str] = mapped_column(String(16), nullable=False, default=APPROVAL_APPROVED)
    acknowledged_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    order_list: Mapped[OrderList] = relationship("OrderList", back_populates="activity_logs")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "list_id": self.list_id,
            "item_id": self.item_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "action": self.action,
            "message": self.message,
            "actor_role": self.actor_role,
            "actor_id": self.actor_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "approval_state": self.approval_state,
            "acknowledged_by_id": self.acknowledged_by_id,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "rejection_reason": self.rejection_reason,
        }


class ListRefreshRun(Base):
    __tablename__ = "list_refresh_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ran_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")

    total_lists: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refreshed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
