"""Agency invites

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 15:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agency_invites",
        sa.Column("invite_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("invite_id"),
        sa.UniqueConstraint("token_hash"),
    )
    op.create_index("ix_agency_invites_tenant_id", "agency_invites", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_agency_invites_tenant_id", table_name="agency_invites")
    op.drop_table("agency_invites")
