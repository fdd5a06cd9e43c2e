"""create users, audit events, customers and customer history tables

Revision ID: a1c3e5f7b9d0
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp())


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False),
            sa.Column("phone", sa.String(length=64), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("related_sales_id", sa.Integer(), nullable=True),
            _timestamp("created_at"),
            _timestamp("updated_at"),
            sa.ForeignKeyConstraint(["related_sales_id"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("name", name="uq_users_name"),
        )
        op.create_index("idx_users_role", "users", ["role"])
        op.create_index("idx_users_related_sales_id", "users", ["related_sales_id"])

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            _timestamp("created_at"),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_name", sa.String(length=255), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])

    if "customers" not in existing_tables:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("nature", sa.String(length=32), nullable=False),
            sa.Column("importance", sa.String(length=8), nullable=False),
            sa.Column("application_field", sa.Text(), nullable=False, server_default=""),
            sa.Column("product_needs", sa.JSON(), nullable=False),
            sa.Column("contact_person", sa.Text(), nullable=True),
            sa.Column("contact_phone", sa.Text(), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("progress", sa.String(length=32), nullable=False),
            sa.Column("annual_demand", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("owner_id", sa.Integer(), nullable=True),
            sa.Column("owner_name", sa.String(length=255), nullable=True),
            sa.Column("owner_type", sa.String(length=32), nullable=True),
            sa.Column("related_sales_id", sa.Integer(), nullable=True),
            sa.Column("related_sales_name", sa.String(length=255), nullable=True),
            sa.Column("related_agent_id", sa.Integer(), nullable=True),
            sa.Column("related_agent_name", sa.String(length=255), nullable=True),
            sa.Column("previous_owner_id", sa.Integer(), nullable=True),
            sa.Column("previous_owner_name", sa.String(length=255), nullable=True),
            sa.Column("previous_owner_type", sa.String(length=32), nullable=True),
            sa.Column("previous_related_agent_id", sa.Integer(), nullable=True),
            sa.Column("previous_related_agent_name", sa.String(length=255), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            _timestamp("created_at"),
            _timestamp("updated_at"),
            _timestamp("last_update_time"),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["related_sales_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["related_agent_id"], ["users.id"]),
            sa.UniqueConstraint("name", name="uq_customers_name"),
        )
        for idx_name, cols in (
            ("idx_customers_related_sales_id", ["related_sales_id"]),
            ("idx_customers_related_agent_id", ["related_agent_id"]),
            ("idx_customers_progress", ["progress"]),
            ("idx_customers_last_update_time", ["last_update_time"]),
        ):
            op.create_index(idx_name, "customers", cols)

    # History tables carry customer_id without a foreign key so rows survive a customer delete.
    if "customer_assignment_history" not in existing_tables:
        op.create_table(
            "customer_assignment_history",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("customer_name", sa.String(length=255), nullable=False),
            sa.Column("from_related_sales_id", sa.Integer(), nullable=True),
            sa.Column("from_related_sales_name", sa.String(length=255), nullable=True),
            sa.Column("to_related_sales_id", sa.Integer(), nullable=True),
            sa.Column("to_related_sales_name", sa.String(length=255), nullable=True),
            sa.Column("from_related_agent_id", sa.Integer(), nullable=True),
            sa.Column("from_related_agent_name", sa.String(length=255), nullable=True),
            sa.Column("to_related_agent_id", sa.Integer(), nullable=True),
            sa.Column("to_related_agent_name", sa.String(length=255), nullable=True),
            sa.Column("operator_id", sa.Integer(), nullable=True),
            sa.Column("operator_name", sa.String(length=255), nullable=True),
            sa.Column("operation_type", sa.String(length=32), nullable=False),
            sa.Column("remark", sa.Text(), nullable=True),
            sa.Column("request_key", sa.String(length=128), nullable=True),
            _timestamp("created_at"),
            sa.UniqueConstraint("request_key", name="uq_customer_assignment_history_request_key"),
        )
        op.create_index(
            "idx_assignment_history_customer_id", "customer_assignment_history", ["customer_id", "created_at"]
        )
        op.create_index("idx_assignment_history_operation_type", "customer_assignment_history", ["operation_type"])

    if "customer_progress_history" not in existing_tables:
        op.create_table(
            "customer_progress_history",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("customer_name", sa.String(length=255), nullable=False),
            sa.Column("from_progress", sa.String(length=32), nullable=False),
            sa.Column("to_progress", sa.String(length=32), nullable=False),
            sa.Column("operator_id", sa.Integer(), nullable=True),
            sa.Column("operator_name", sa.String(length=255), nullable=True),
            sa.Column("remark", sa.Text(), nullable=True),
            _timestamp("created_at"),
        )
        op.create_index("idx_progress_history_customer_id", "customer_progress_history", ["customer_id", "created_at"])


def downgrade() -> None:
    op.drop_table("customer_progress_history")
    op.drop_table("customer_assignment_history")
    op.drop_table("customers")
    op.drop_table("audit_events")
    op.drop_table("users")
