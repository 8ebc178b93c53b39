"""Commission engine schema

Revision ID: 001_commission_engine_schema
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_commission_engine_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create override, membership, audit and bulk run tables."""

    # Commission overrides
    op.create_table(
        "commission_overrides",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "variant",
            sa.Enum("product", "vendor", "category", "global", name="overridevariant"),
            nullable=False,
        ),
        sa.Column("scope_id", sa.String(64), nullable=True),
        sa.Column("percentage", sa.Numeric(7, 4), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_commission_overrides_percentage"),
        sa.CheckConstraint(
            "valid_from IS NULL OR valid_to IS NULL OR valid_from < valid_to",
            name="ck_commission_overrides_window",
        ),
    )
    op.create_index(
        "ix_commission_overrides_scope",
        "commission_overrides",
        ["variant", "scope_id", "valid_from"],
    )

    # Membership discounts
    op.create_table(
        "membership_discounts",
        sa.Column("tier", sa.String(50), primary_key=True),
        sa.Column("discount_percentage", sa.Numeric(7, 4), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # Commission audit records (append-only)
    op.create_table(
        "commission_audit_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("line_item_ref", sa.String(128), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "corrects_record_id",
            sa.Integer(),
            sa.ForeignKey("commission_audit_records.id"),
            nullable=True,
        ),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("category_id", sa.String(64), nullable=False),
        sa.Column("vendor_tier", sa.String(50), nullable=True),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount", sa.Numeric(24, 6), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("selected_tier", sa.String(20), nullable=False),
        sa.Column("used_system_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("override_id", sa.Integer(), nullable=True),
        sa.Column("base_rate", sa.Numeric(9, 4), nullable=False),
        sa.Column("discount_applied", sa.Numeric(9, 4), nullable=False),
        sa.Column("final_rate", sa.Numeric(9, 4), nullable=False),
        sa.Column("commission_amount", sa.Numeric(24, 6), nullable=False),
        sa.Column("trail", sa.JSON(), nullable=False),
        sa.Column("warnings", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=False),
        sa.UniqueConstraint(
            "line_item_ref", "evaluated_at", "revision",
            name="uq_commission_audit_line_item_revision",
        ),
    )
    op.create_index("ix_commission_audit_records_line_item_ref", "commission_audit_records", ["line_item_ref"])
    op.create_index("ix_commission_audit_records_product_id", "commission_audit_records", ["product_id"])
    op.create_index("ix_commission_audit_records_category_id", "commission_audit_records", ["category_id"])
    op.create_index("ix_commission_audit_records_evaluated_at", "commission_audit_records", ["evaluated_at"])
    op.create_index("ix_commission_audit_records_actor", "commission_audit_records", ["actor"])
    op.create_index("ix_commission_audit_records_recorded_at", "commission_audit_records", ["recorded_at"])
    op.create_index(
        "ix_commission_audit_vendor_evaluated",
        "commission_audit_records",
        ["vendor_id", "evaluated_at"],
    )

    # Reject UPDATE and DELETE at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION commission_audit_records_append_only()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'commission_audit_records is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER trg_commission_audit_records_append_only
        BEFORE UPDATE OR DELETE ON commission_audit_records
        FOR EACH ROW EXECUTE FUNCTION commission_audit_records_append_only()
    """)

    # Administrative audit log
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column(
            "actor_type",
            sa.Enum("admin", "service", "system", name="actortype"),
            nullable=False,
        ),
        sa.Column(
            "action",
            sa.Enum(
                "create_override",
                "update_override",
                "expire_override",
                "delete_override",
                "set_membership_discount",
                "trigger_bulk_recompute",
                "cancel_bulk_recompute",
                name="auditaction",
            ),
            nullable=False,
        ),
        sa.Column("target_type", sa.String(50), nullable=True),
        sa.Column("target_id", sa.String(64), nullable=True),
        sa.Column("action_metadata", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    # Bulk recomputation runs
    op.create_table(
        "bulk_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "status",
            sa.Enum("pending", "running", "completed", "cancelled", "failed", name="bulkrunstatus"),
            nullable=False,
        ),
        sa.Column("filters", sa.JSON(), nullable=False),
        sa.Column("requested_by", sa.Integer(), nullable=False),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("succeeded_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deduplicated_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("corrected_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("checkpoint_token", sa.String(255), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_bulk_runs_status", "bulk_runs", ["status"])

    op.create_table(
        "bulk_item_failures",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "run_id",
            sa.Integer(),
            sa.ForeignKey("bulk_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("line_item_ref", sa.String(128), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("error_code", sa.String(50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("run_id", "position", name="uq_bulk_item_failures_run_position"),
    )
    op.create_index("ix_bulk_item_failures_run_id", "bulk_item_failures", ["run_id"])


def downgrade() -> None:
    """Drop all tables in reverse order."""
    op.drop_table("bulk_item_failures")
    op.drop_table("bulk_runs")
    op.drop_table("audit_logs")
    op.execute("DROP TRIGGER IF EXISTS trg_commission_audit_records_append_only ON commission_audit_records")
    op.execute("DROP FUNCTION IF EXISTS commission_audit_records_append_only()")
    op.drop_table("commission_audit_records")
    op.drop_table("membership_discounts")
    op.drop_table("commission_overrides")

    # Drop enums
    op.execute("DROP TYPE IF EXISTS bulkrunstatus")
    op.execute("DROP TYPE IF EXISTS auditaction")
    op.execute("DROP TYPE IF EXISTS actortype")
    op.execute("DROP TYPE IF EXISTS overridevariant")
