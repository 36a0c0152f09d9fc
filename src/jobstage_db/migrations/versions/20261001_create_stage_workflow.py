"""Create the stage graph and job-side tables.

Stages, questions and transition rules form each company's graph; the
job tables hold the stage pointer, responses, the append-only audit log
and transitions waiting for admin approval.

Revision ID: 20261001_stage_workflow
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

# revision identifiers, used by Alembic.
revision = "20261001_stage_workflow"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- Stage graph ---
    op.create_table(
        "job_stages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("color", sa.String(16), nullable=True),
        sa.Column("sequence_order", sa.Integer, nullable=False),
        sa.Column("stage_type", sa.String(20), nullable=False),
        sa.Column("maps_to_status", sa.String(20), nullable=False),
        sa.Column("min_duration_hours", sa.Integer, nullable=True),
        sa.Column("max_duration_hours", sa.Integer, nullable=True),
        sa.Column("requires_approval", sa.Boolean, nullable=False),
        sa.Column(
            "archived", sa.Boolean, nullable=False, server_default=sa.text("false"),
        ),
        sa.Column("provisioning_run_id", sa.Text, nullable=True),
        sa.Column("created_by", sa.Text, nullable=True),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint("sequence_order >= 1", name="ck_stage_order_positive"),
        sa.CheckConstraint(
            "min_duration_hours IS NULL OR max_duration_hours IS NULL "
            "OR min_duration_hours <= max_duration_hours",
            name="ck_stage_duration_range",
        ),
    )
    op.create_index("ix_job_stages_company_id", "job_stages", ["company_id"])
    op.create_index(
        "uq_active_stage_order",
        "job_stages",
        ["company_id", "sequence_order"],
        unique=True,
        postgresql_where=sa.text("archived = false AND sequence_order < 10000"),
    )

    op.create_table(
        "stage_questions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"), nullable=False,
        ),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column("question_text", sa.Text, nullable=False),
        sa.Column("help_text", sa.Text, nullable=True),
        sa.Column("response_type", sa.String(20), nullable=False),
        sa.Column("is_required", sa.Boolean, nullable=False),
        sa.Column("response_options", JSONB, nullable=True),
        sa.Column("sequence_order", sa.SmallInteger, nullable=False),
        sa.Column("provisioning_run_id", sa.Text, nullable=True),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(response_type = 'multiple_choice') = "
            "(response_options IS NOT NULL AND jsonb_array_length(response_options) > 0)",
            name="ck_question_options_iff_choice",
        ),
    )
    op.create_index("ix_stage_questions_stage_id", "stage_questions", ["stage_id"])
    op.create_index("ix_stage_questions_company_id", "stage_questions", ["company_id"])

    op.create_table(
        "stage_transitions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "from_stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"),
            nullable=False,
        ),
        sa.Column(
            "to_stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"),
            nullable=False,
        ),
        sa.Column(
            "question_id", UUID(as_uuid=True), sa.ForeignKey("stage_questions.id"),
            nullable=False,
        ),
        sa.Column("trigger_response", sa.Text, nullable=True),
        sa.Column("numeric_operator", sa.String(20), nullable=True),
        sa.Column("numeric_value", sa.Numeric(18, 6), nullable=True),
        sa.Column("numeric_value_max", sa.Numeric(18, 6), nullable=True),
        sa.Column("is_automatic", sa.Boolean, nullable=False),
        sa.Column("requires_admin_override", sa.Boolean, nullable=False),
        sa.Column("provisioning_run_id", sa.Text, nullable=True),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint("from_stage_id <> to_stage_id", name="ck_no_self_transition"),
        sa.CheckConstraint(
            "(trigger_response IS NULL) <> (numeric_operator IS NULL)",
            name="ck_exactly_one_predicate",
        ),
        sa.CheckConstraint(
            "numeric_operator IS NULL OR numeric_value IS NOT NULL",
            name="ck_numeric_has_value",
        ),
    )
    op.create_index(
        "ix_stage_transitions_company_id", "stage_transitions", ["company_id"],
    )
    op.create_index(
        "ix_stage_transitions_from_stage_id", "stage_transitions", ["from_stage_id"],
    )
    op.create_index(
        "ix_transition_from_question",
        "stage_transitions",
        ["from_stage_id", "question_id"],
    )

    # --- Job side ---
    op.create_table(
        "job_stage_states",
        sa.Column("job_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "current_stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"),
            nullable=False,
        ),
        sa.Column("stage_entered_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_job_stage_states_company_id", "job_stage_states", ["company_id"])
    op.create_index(
        "ix_job_stage_states_current_stage_id", "job_stage_states", ["current_stage_id"],
    )

    op.create_table(
        "stage_responses",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "question_id", UUID(as_uuid=True), sa.ForeignKey("stage_questions.id"),
            nullable=False,
        ),
        sa.Column("raw_value", sa.Text, nullable=False),
        sa.Column("normalized_value", sa.Text, nullable=False),
        sa.Column("is_current", sa.Boolean, nullable=False),
        sa.Column("submitted_by", sa.Text, nullable=False),
        sa.Column("submitted_at", TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_response_job_question", "stage_responses", ["job_id", "question_id"],
    )
    op.create_index(
        "uq_current_response",
        "stage_responses",
        ["job_id", "question_id"],
        unique=True,
        postgresql_where=sa.text("is_current"),
    )

    op.create_table(
        "stage_audit_log",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "from_stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"),
            nullable=True,
        ),
        sa.Column(
            "to_stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"),
            nullable=False,
        ),
        sa.Column(
            "triggering_response_id", UUID(as_uuid=True),
            sa.ForeignKey("stage_responses.id"), nullable=True,
        ),
        sa.Column("rule_id", UUID(as_uuid=True), nullable=True),
        sa.Column("trigger_source", sa.String(30), nullable=False),
        sa.Column("applied_automatically", sa.Boolean, nullable=False),
        sa.Column("applied_by", sa.Text, nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("duration_in_previous_stage_hours", sa.Float, nullable=True),
        sa.Column("applied_at", TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_stage_audit_log_job_id", "stage_audit_log", ["job_id"])

    op.create_table(
        "pending_transitions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", UUID(as_uuid=True), nullable=False),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False),
        sa.Column("rule_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "from_stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"),
            nullable=False,
        ),
        sa.Column(
            "to_stage_id", UUID(as_uuid=True), sa.ForeignKey("job_stages.id"),
            nullable=False,
        ),
        sa.Column(
            "triggering_response_id", UUID(as_uuid=True),
            sa.ForeignKey("stage_responses.id"), nullable=True,
        ),
        sa.Column("requested_by", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("resolved_by", sa.Text, nullable=True),
        sa.Column("resolved_at", TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("ix_pending_transitions_job_id", "pending_transitions", ["job_id"])
    op.create_index(
        "ix_pending_transitions_company_id", "pending_transitions", ["company_id"],
    )
    op.create_index("ix_pending_transitions_status", "pending_transitions", ["status"])
    op.create_index(
        "uq_open_pending_transition",
        "pending_transitions",
        ["job_id", "rule_id", "triggering_response_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_table("pending_transitions")
    op.drop_table("stage_audit_log")
    op.drop_table("stage_responses")
    op.drop_table("job_stage_states")
    op.drop_table("stage_transitions")
    op.drop_table("stage_questions")
    op.drop_table("job_stages")
