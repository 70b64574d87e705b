"""SQLModel ORM tables for order storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class OrderRow(SQLModel, table=True):
    __tablename__ = "orders"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_orders_due", "status", "next_attempt_at"),)

    order_id: str = Field(primary_key=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempt_count: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    next_attempt_at: int | None = Field(default=None, sa_column=Column(BigInteger))
    locked_by: str | None = Field(default=None, index=True)
    locked_until: int | None = Field(default=None, sa_column=Column(BigInteger))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrderResultRow(SQLModel, table=True):
    __tablename__ = "order_results"  # type: ignore[bad-override]

    order_id: str = Field(
        sa_column=Column(
            ForeignKey("orders.order_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    result_id: str | None = Field(default=None, index=True, unique=True)
    approved: bool = Field(default=False)
    decision: str | None = None
    approval_record_id: str | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrderApprovalRow(SQLModel, table=True):
    __tablename__ = "order_approvals"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_order_approvals_result_time", "result_id", "decided_at"),)

    approval_id: str = Field(primary_key=True)
    order_id: str = Field(
        sa_column=Column(
            ForeignKey("orders.order_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    result_id: str
    decision: str
    decided_by: str
    feedback: str = Field(sa_column=Column(Text, nullable=False))
    improvement_requirements_json: str = Field(sa_column=Column(Text, nullable=False))
    quality_score: int
    overall_risk: str
    supersedes: str | None = None
    decided_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrderEventRow(SQLModel, table=True):
    __tablename__ = "order_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_order_events_order_time", "order_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    order_id: str = Field(
        sa_column=Column(
            ForeignKey("orders.order_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
