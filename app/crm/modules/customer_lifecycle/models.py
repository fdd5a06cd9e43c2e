from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Integer, String, Text, event
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column

from app.crm.models import Base
from app.crm.modules.customer_lifecycle.constants import (
    CustomerImportance,
    CustomerNature,
    OperationType,
    Progress,
)
from app.crm.modules.customer_lifecycle.errors import AppendOnlyViolation


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_related_sales_id", "related_sales_id"),
        Index("idx_customers_related_agent_id", "related_agent_id"),
        Index("idx_customers_progress", "progress"),
        Index("idx_customers_last_update_time", "last_update_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Classification
    nature: Mapped[CustomerNature] = mapped_column(Enum(CustomerNature, native_enum=False, length=32), nullable=False)
    importance: Mapped[CustomerImportance] = mapped_column(
        Enum(CustomerImportance, native_enum=False, length=8), nullable=False
    )
    application_field: Mapped[str] = mapped_column(Text, nullable=False, default="")
    product_needs: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)  # product ids

    # Contact
    contact_person: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle
    progress: Mapped[Progress] = mapped_column(Enum(Progress, native_enum=False, length=32), nullable=False)
    annual_demand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Creator (never changes once set)
    owner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Currently responsible sales rep / agent. No sales rep means the customer is in the public pool.
    related_sales_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    related_sales_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    related_agent_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    related_agent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Snapshot taken when the customer last entered the pool
    previous_owner_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    previous_owner_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # role of previous_owner_id: FACTORY_SALES
    previous_related_agent_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_related_agent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Optimistic concurrency: every UPDATE is "... WHERE version = :seen"
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    last_update_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    @hybrid_property
    def is_in_public_pool(self) -> bool:
        return self.related_sales_id is None

    @is_in_public_pool.inplace.expression
    @classmethod
    def _is_in_public_pool_expression(cls):
        return cls.related_sales_id.is_(None)

    def __repr__(self) -> str:
        return f"<Customer {self.id} {self.name!r} sales={self.related_sales_id} progress={self.progress}>"


class AssignmentHistory(Base):
    """
    Immutable audit row for every ownership change (assign, claim, pool entry, creation).
    customer_id has no foreign key: rows outlive the customer they describe.
    """

    __tablename__ = "customer_assignment_history"
    __table_args__ = (
        Index("idx_assignment_history_customer_id", "customer_id", "created_at"),
        Index("idx_assignment_history_operation_type", "operation_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)

    from_related_sales_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_related_sales_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    to_related_sales_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_related_sales_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    from_related_agent_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_related_agent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    to_related_agent_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_related_agent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    operator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    operator_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    operation_type: Mapped[OperationType] = mapped_column(
        Enum(OperationType, native_enum=False, length=32), nullable=False
    )
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Client-supplied idempotency token; a replay returns the row it produced.
    request_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class ProgressHistory(Base):
    __tablename__ = "customer_progress_history"
    __table_args__ = (
        Index("idx_progress_history_customer_id", "customer_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)

    from_progress: Mapped[str] = mapped_column(String(32), nullable=False)  # Progress value or NO_PROGRESS
    to_progress: Mapped[str] = mapped_column(String(32), nullable=False)

    operator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    operator_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


def _reject_history_write(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only (id={target.id}).")


for _history_cls in (AssignmentHistory, ProgressHistory):
    event.listen(_history_cls, "before_update", _reject_history_write)
    event.listen(_history_cls, "before_delete", _reject_history_write)
