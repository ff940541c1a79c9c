"""initial schema: auth, audit, customers, scheduled lists

Revision ID: a3c1e5f7b9d2
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a3c1e5f7b9d2"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)

    # Auth / RBAC
    if not insp.has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
    if not insp.has_table("roles"):
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
    if not insp.has_table("permissions"):
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
    if not insp.has_table("user_roles"):
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )
    if not insp.has_table("role_permissions"):
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )

    # Audit trail
    if not insp.has_table("audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("actor_customer_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(45), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )

    # Customers
    if not insp.has_table("customers"):
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("company_name", sa.Text(), nullable=False),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_customers_company_name", "customers", ["company_name"])

    # Scheduled lists
    if not insp.has_table("order_lists"):
        op.create_table(
            "order_lists",
            sa.Column("id", sa.String(32), primary_key=True, nullable=False),
            sa.Column("list_number", sa.String(64), nullable=True, unique=True),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="active"),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
            sa.Column("creator_kind", sa.String(16), nullable=False, server_default="staff"),
            sa.Column("creator_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_order_lists_customer_id", "order_lists", ["customer_id"])
        op.create_index("idx_order_lists_status", "order_lists", ["status"])

    if not insp.has_table("list_items"):
        op.create_table(
            "list_items",
            sa.Column("id", sa.String(32), primary_key=True, nullable=False),
            sa.Column("list_id", sa.String(32), sa.ForeignKey("order_lists.id", ondelete="CASCADE"), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("item_key", sa.String(64), nullable=False),
            sa.Column("article_name", sa.Text(), nullable=True),
            sa.Column("article_number", sa.Text(), nullable=True),
            sa.Column("item_no_de", sa.Text(), nullable=True),
            sa.Column("image_url", sa.Text(), nullable=True),
            sa.Column("quantity", sa.Numeric(precision=14, scale=3), nullable=True),
            sa.Column("interval", sa.String(16), nullable=False, server_default="monthly"),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("marked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("deliveries", _json(), nullable=False),
            sa.Column("creator_kind", sa.String(16), nullable=False, server_default="staff"),
            sa.Column("creator_id", sa.Integer(), nullable=True),
            sa.Column("last_refreshed_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_list_items_list_id", "list_items", ["list_id"])
        op.create_index("idx_list_items_item_key", "list_items", ["item_key"])

    if not insp.has_table("list_activity_logs"):
        op.create_table(
            "list_activity_logs",
            sa.Column("id", sa.String(32), primary_key=True, nullable=False),
            sa.Column("seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("list_id", sa.String(32), sa.ForeignKey("order_lists.id", ondelete="CASCADE"), nullable=False),
            sa.Column("item_id", sa.String(32), nullable=True),
            sa.Column("field", sa.String(128), nullable=False),
            sa.Column("old_value", _json(), nullable=True),
            sa.Column("new_value", _json(), nullable=True),
            sa.Column("action", sa.String(160), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("actor_role", sa.String(16), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("approval_state", sa.String(16), nullable=False, server_default="approved"),
            sa.Column("acknowledged_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("acknowledged_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
        )
        op.create_index("idx_list_activity_logs_list_id", "list_activity_logs", ["list_id"])
        op.create_index(
            "idx_list_activity_logs_approval",
            "list_activity_logs",
            ["list_id", "actor_role", "approval_state"],
        )

    if not insp.has_table("list_refresh_runs"):
        op.create_table(
            "list_refresh_runs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("ran_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("trigger", sa.String(32), nullable=False, server_default="scheduled"),
            sa.Column("total_lists", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("total_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("refreshed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("failed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("duration_seconds", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("message", sa.Text(), nullable=True),
        )


def downgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)

    for table in (
        "list_refresh_runs",
        "list_activity_logs",
        "list_items",
        "order_lists",
        "customers",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        if insp.has_table(table):
            op.drop_table(table)
