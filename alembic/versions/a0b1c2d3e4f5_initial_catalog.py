"""Initial catalog: listings + vetting_submissions.

The partial unique index on in-flight submissions is what makes the
dispatch claim atomic; the check constraint keeps risk_score in step with
vetting_state.

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op

revision = "a0b1c2d3e4f5"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "listings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("contract_address", sa.String(64), nullable=False),
        sa.Column("chain", sa.String(20), nullable=False),
        sa.Column("symbol", sa.String(50), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("decimals", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(20), nullable=True),
        sa.Column("creation_timestamp", sa.DateTime(), nullable=True),
        sa.Column("liquidity_usd", sa.Numeric(), nullable=True),
        sa.Column("top10_holder_pct", sa.Numeric(), nullable=True),
        sa.Column("mint_authority_enabled", sa.Boolean(), nullable=True),
        sa.Column("freeze_authority_enabled", sa.Boolean(), nullable=True),
        sa.Column("lp_burn_pct", sa.Numeric(), nullable=True),
        sa.Column("pair_address", sa.String(64), nullable=True),
        sa.Column("quote_address", sa.String(64), nullable=True),
        sa.Column("risk_score", sa.Numeric(), nullable=True),
        sa.Column("risk_tier", sa.String(30), nullable=True),
        sa.Column("listing_tier", sa.String(20), nullable=True),
        sa.Column(
            "vetting_state", sa.String(20), nullable=False, server_default="not_eligible"
        ),
        sa.Column("last_evaluated_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("contract_address", "chain", name="uq_listing_address_chain"),
        sa.CheckConstraint(
            "(vetting_state = 'vetted' AND risk_score IS NOT NULL)"
            " OR (vetting_state <> 'vetted' AND risk_score IS NULL)",
            name="ck_listing_score_matches_state",
        ),
    )
    op.create_index(
        "idx_listings_state_evaluated", "listings", ["vetting_state", "last_evaluated_at"]
    )

    op.create_table(
        "vetting_submissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("submission_id", sa.String(32), nullable=False, unique=True),
        sa.Column("external_id", sa.String(128), nullable=True),
        sa.Column(
            "listing_id",
            sa.Integer(),
            sa.ForeignKey("listings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("contract_address", sa.String(64), nullable=False),
        sa.Column("chain", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="in_flight"),
        sa.Column("submitted_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("score", sa.Numeric(), nullable=True),
        sa.Column("result_payload", sa.JSON(), nullable=True),
    )
    op.create_index(
        "uq_submission_in_flight",
        "vetting_submissions",
        ["contract_address", "chain"],
        unique=True,
        postgresql_where=sa.text("state = 'in_flight'"),
    )
    op.create_index("idx_submissions_external_id", "vetting_submissions", ["external_id"])
    op.create_index(
        "idx_submissions_state_submitted", "vetting_submissions", ["state", "submitted_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_submissions_state_submitted", table_name="vetting_submissions")
    op.drop_index("idx_submissions_external_id", table_name="vetting_submissions")
    op.drop_index("uq_submission_in_flight", table_name="vetting_submissions")
    op.drop_table("vetting_submissions")
    op.drop_index("idx_listings_state_evaluated", table_name="listings")
    op.drop_table("listings")
