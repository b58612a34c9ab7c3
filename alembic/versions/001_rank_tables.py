"""Create rank_outcomes, rank_tasks and rank_cursors.

Revision ID: 001
Create Date: 2026-10-17

rank_outcomes holds one row per job row id; a row leaves 'pending' at most
once (the sink's upsert only updates pending rows). rank_tasks is the ledger
of submitted provider tasks used by the two-phase mode, rank_cursors the
named submit cursors.
"""

from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # -- rank_outcomes --------------------------------------------------------
    op.execute(
        """
        CREATE TABLE rank_outcomes (
            row_id TEXT PRIMARY KEY,
            keyword TEXT NOT NULL,
            status TEXT NOT NULL
                CHECK (status IN ('pending', 'completed', 'failed')),
            rank INT CHECK (rank IS NULL OR rank >= 1),
            url TEXT,
            reason TEXT,
            ranking_position TEXT,
            ranking_url TEXT,
            raw JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),

            -- completed rows carry a match; failed rows carry a reason
            CHECK (status <> 'completed' OR (rank IS NOT NULL AND url IS NOT NULL)),
            CHECK (status <> 'failed' OR reason IS NOT NULL)
        )
        """
    )
    op.execute("CREATE INDEX idx_rank_outcomes_status ON rank_outcomes (status)")

    # -- rank_tasks -----------------------------------------------------------
    op.execute(
        """
        CREATE TABLE rank_tasks (
            task_id TEXT PRIMARY KEY,
            row_id TEXT NOT NULL,
            keyword TEXT NOT NULL,
            latitude DOUBLE PRECISION NOT NULL,
            longitude DOUBLE PRECISION NOT NULL,
            submitted_at TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'submitted'
                CHECK (status IN ('submitted', 'pending', 'fetched', 'failed')),
            attempts INT NOT NULL DEFAULT 0,
            completed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
        """
    )
    op.execute("CREATE INDEX idx_rank_tasks_row_id ON rank_tasks (row_id)")
    op.execute(
        """
        CREATE INDEX idx_rank_tasks_open ON rank_tasks (submitted_at)
        WHERE status IN ('submitted', 'pending')
        """
    )

    # -- rank_cursors ---------------------------------------------------------
    op.execute(
        """
        CREATE TABLE rank_cursors (
            name TEXT PRIMARY KEY,
            position INT NOT NULL CHECK (position >= 0),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS rank_cursors")
    op.execute("DROP TABLE IF EXISTS rank_tasks")
    op.execute("DROP TABLE IF EXISTS rank_outcomes")
