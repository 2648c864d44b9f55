"""create enforcement tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_APPEND_ONLY_TABLES = ("enforcement_decision", "enforcement_health_score")


def upgrade() -> None:
    op.create_table(
        "enforcement_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("owner_user_id", sa.String(length=255), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("enforcement_state", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("frozen_reason_code", sa.String(length=64), nullable=True),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=False, server_default="USD"),
        sa.Column("approved_discount_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("approved_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "(enforcement_state = 'FROZEN') = (frozen_reason_code IS NOT NULL)",
            name="ck_enforcement_deal_frozen_reason",
        ),
    )
    op.create_index("ix_enforcement_deal_owner", "enforcement_deal", ["owner_user_id"])

    op.create_table(
        "enforcement_evidence_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("evidence_refs", sa.JSON(), nullable=False),
        sa.Column("last_updated_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["enforcement_deal.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deal_id", "category", name="uq_enforcement_evidence_deal_category"),
    )

    op.create_table(
        "enforcement_health_score",
        sa.Column("seq", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("component_breakdown", sa.JSON(), nullable=False),
        sa.Column("blockers", sa.JSON(), nullable=False),
        sa.Column("recorded_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["enforcement_deal.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("id"),
        sa.CheckConstraint("total >= 0 AND total <= 100", name="ck_enforcement_health_total_range"),
    )
    op.create_index("ix_enforcement_health_deal_seq", "enforcement_health_score", ["deal_id", "seq"])

    op.create_table(
        "enforcement_actor_profile",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("authority_level", sa.Integer(), nullable=False),
        sa.Column("certification_status", sa.String(length=16), nullable=False),
        sa.Column("certification_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("authority_level >= 0 AND authority_level <= 5", name="ck_enforcement_actor_authority_range"),
    )

    op.create_table(
        "enforcement_override_token",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("action_params", sa.JSON(), nullable=False),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("justification", sa.Text(), nullable=False),
        sa.Column("reason_code", sa.String(length=64), nullable=False),
        sa.Column("required_authority_level", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("decided_by", sa.String(length=255), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decision_note", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed_decision_id", sa.Uuid(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["enforcement_deal.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_enforcement_override_deal", "enforcement_override_token", ["deal_id", "created_at"])
    op.create_index("ix_enforcement_override_status", "enforcement_override_token", ["status"])

    op.create_table(
        "enforcement_decision",
        sa.Column("seq", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=False),
        sa.Column("reason_code", sa.String(length=64), nullable=False),
        sa.Column("signal_snapshot", sa.JSON(), nullable=False),
        sa.Column("override_token_id", sa.Uuid(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["enforcement_deal.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["override_token_id"], ["enforcement_override_token.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("id"),
    )
    op.create_index("ix_enforcement_decision_deal_seq", "enforcement_decision", ["deal_id", "seq"])

    if op.get_bind().dialect.name == "postgresql":
        op.execute(
            """
            CREATE FUNCTION enforcement_reject_mutation() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION '% is append-only; % rejected', TG_TABLE_NAME, TG_OP;
            END;
            $$ LANGUAGE plpgsql
            """
        )
        for table in _APPEND_ONLY_TABLES:
            op.execute(
                f"CREATE TRIGGER {table}_append_only BEFORE UPDATE OR DELETE ON {table} "
                "FOR EACH ROW EXECUTE FUNCTION enforcement_reject_mutation()"
            )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in _APPEND_ONLY_TABLES:
            op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
        op.execute("DROP FUNCTION IF EXISTS enforcement_reject_mutation()")

    op.drop_index("ix_enforcement_decision_deal_seq", table_name="enforcement_decision")
    op.drop_table("enforcement_decision")
    op.drop_index("ix_enforcement_override_status", table_name="enforcement_override_token")
    op.drop_index("ix_enforcement_override_deal", table_name="enforcement_override_token")
    op.drop_table("enforcement_override_token")
    op.drop_table("enforcement_actor_profile")
    op.drop_index("ix_enforcement_health_deal_seq", table_name="enforcement_health_score")
    op.drop_table("enforcement_health_score")
    op.drop_table("enforcement_evidence_item")
    op.drop_index("ix_enforcement_deal_owner", table_name="enforcement_deal")
    op.drop_table("enforcement_deal")
