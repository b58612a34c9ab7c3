"""Add intended_url to rank_outcomes and rank_tasks.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17

The page a client wants ranking for a keyword, carried from preflight job
lists. Nullable; CSV job lists usually leave it out.
"""

from alembic import op

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("ALTER TABLE rank_outcomes ADD COLUMN intended_url TEXT")
    op.execute("ALTER TABLE rank_tasks ADD COLUMN intended_url TEXT")


def downgrade() -> None:
    op.execute("ALTER TABLE rank_tasks DROP COLUMN IF EXISTS intended_url")
    op.execute("ALTER TABLE rank_outcomes DROP COLUMN IF EXISTS intended_url")
