"""Add question skip conditions; one open pending request per rule and stage.

Adds a nullable ``skip_conditions`` JSONB column to ``stage_questions``.

Re-keys ``uq_open_pending_transition`` from the triggering response to the
departure stage, so resubmitting the same answer no longer queues another
approval request.  Surplus open requests are closed as rejected (oldest
kept) before the new index is built.

Revision ID: 20261015_skip_pending
Revises: 20261001_stage_workflow
Create Date: 2026-10-15
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = "20261015_skip_pending"
down_revision = "20261001_stage_workflow"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- Conditional question skipping ---
    op.add_column(
        "stage_questions",
        sa.Column("skip_conditions", JSONB, nullable=True),
    )

    # --- Collapse duplicate open requests before re-keying the index ---
    op.execute(
        """
        UPDATE pending_transitions p
        SET status = 'rejected', resolved_by = 'system', resolved_at = now()
        WHERE p.status = 'pending'
          AND EXISTS (
            SELECT 1 FROM pending_transitions o
            WHERE o.status = 'pending'
              AND o.job_id = p.job_id
              AND o.rule_id = p.rule_id
              AND o.from_stage_id = p.from_stage_id
              AND (o.created_at, o.id) < (p.created_at, p.id)
          )
        """
    )
    op.drop_index("uq_open_pending_transition", table_name="pending_transitions")
    op.create_index(
        "uq_open_pending_transition",
        "pending_transitions",
        ["job_id", "rule_id", "from_stage_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("uq_open_pending_transition", table_name="pending_transitions")
    op.create_index(
        "uq_open_pending_transition",
        "pending_transitions",
        ["job_id", "rule_id", "triggering_response_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.drop_column("stage_questions", "skip_conditions")
