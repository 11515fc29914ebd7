"""
Initial schema - cultivation core (11 tables)

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _audit_columns(with_updates: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", UUID(as_uuid=True), nullable=False),
    ]
    if with_updates:
        columns += [
            sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
            sa.Column("updated_by", UUID(as_uuid=True), nullable=False),
        ]
    return columns


def upgrade() -> None:
    # 1. Sites
    op.create_table(
        "sites",
        sa.Column("site_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("timezone", sa.String(50), server_default="UTC"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 2. Stages
    op.create_table(
        "stages",
        sa.Column("stage_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("stage_key", sa.String(50), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("sequence_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_terminal", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("requires_harvest_metrics", sa.Boolean, nullable=False, server_default=sa.false()),
        *_audit_columns(),
        sa.UniqueConstraint("site_id", "stage_key", name="uq_stage_key_per_site"),
    )
    op.create_index("ix_stages_site_order", "stages", ["site_id", "sequence_order"])

    # 3. Stage transitions
    op.create_table(
        "stage_transitions",
        sa.Column("transition_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("from_stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id"), nullable=False),
        sa.Column("to_stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id"), nullable=False),
        sa.Column("auto_advance", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("requires_approval", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("approval_role", sa.String(100)),
        *_audit_columns(),
        sa.UniqueConstraint("site_id", "from_stage_id", "to_stage_id", name="uq_transition_edge_per_site"),
        sa.CheckConstraint("from_stage_id != to_stage_id", name="ck_transition_no_self_loop"),
        sa.CheckConstraint(
            "requires_approval = false OR approval_role IS NOT NULL", name="ck_transition_approval_role"
        ),
    )
    op.create_index("ix_transitions_from", "stage_transitions", ["site_id", "from_stage_id"])

    # 4. Batches
    op.create_table(
        "batches",
        sa.Column("batch_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("strain_id", UUID(as_uuid=True), nullable=False),
        sa.Column("batch_code", sa.String(100), nullable=False),
        sa.Column("batch_name", sa.String(200), nullable=False),
        sa.Column("batch_type", sa.String(30), nullable=False),
        sa.Column("source_type", sa.String(30), nullable=False),
        sa.Column("parent_batch_id", UUID(as_uuid=True), sa.ForeignKey("batches.batch_id")),
        sa.Column("generation", sa.Integer, nullable=False, server_default="0"),
        sa.Column("plant_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("target_plant_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("current_stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id"), nullable=False),
        sa.Column("stage_started_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("expected_harvest_date", sa.Date),
        sa.Column("actual_harvest_date", sa.Date),
        sa.Column("harvest_metrics", sa.JSON),
        sa.Column("location_id", UUID(as_uuid=True)),
        sa.Column("room_id", UUID(as_uuid=True)),
        sa.Column("zone_id", UUID(as_uuid=True)),
        sa.Column("status", sa.String(30), nullable=False, server_default="active"),
        sa.Column("notes", sa.Text),
        sa.Column("metadata", sa.JSON),
        *_audit_columns(),
        sa.UniqueConstraint("site_id", "batch_code", name="uq_batch_code_per_site"),
        sa.CheckConstraint("plant_count >= 0", name="ck_batch_plant_count_non_negative"),
        sa.CheckConstraint("target_plant_count >= 0", name="ck_batch_target_non_negative"),
        sa.CheckConstraint("generation >= 0", name="ck_batch_generation_non_negative"),
        sa.CheckConstraint(
            "status IN ('active', 'quarantine', 'hold', 'completed', 'destroyed')", name="ck_batch_status"
        ),
    )
    op.create_index("ix_batches_site_stage", "batches", ["site_id", "current_stage_id"])
    op.create_index("ix_batches_parent", "batches", ["parent_batch_id"])

    # 5. Stage history (append-only)
    op.create_table(
        "stage_history",
        sa.Column("history_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("batch_id", UUID(as_uuid=True), sa.ForeignKey("batches.batch_id"), nullable=False),
        sa.Column("from_stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id")),
        sa.Column("to_stage_id", UUID(as_uuid=True), sa.ForeignKey("stages.stage_id"), nullable=False),
        sa.Column("changed_by", UUID(as_uuid=True), nullable=False),
        sa.Column("changed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("auto_advanced", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text),
    )
    op.create_index("ix_stage_history_batch_time", "stage_history", ["batch_id", "changed_at"])
    # History is an audit log: refuse UPDATE/DELETE at the database level too.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_append_only_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        "CREATE TRIGGER trg_stage_history_append_only BEFORE UPDATE OR DELETE ON stage_history "
        "FOR EACH ROW EXECUTE FUNCTION reject_append_only_change()"
    )

    # 6. Batch relationships
    op.create_table(
        "batch_relationships",
        sa.Column(
            "relationship_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("parent_batch_id", UUID(as_uuid=True), sa.ForeignKey("batches.batch_id"), nullable=False),
        sa.Column("child_batch_id", UUID(as_uuid=True), sa.ForeignKey("batches.batch_id"), nullable=False),
        sa.Column("relationship_type", sa.String(30), nullable=False),
        sa.Column("plant_count_transferred", sa.Integer),
        sa.Column("transfer_date", sa.Date, nullable=False),
        sa.Column("notes", sa.Text),
        *_audit_columns(with_updates=False),
        sa.UniqueConstraint(
            "parent_batch_id", "child_batch_id", "relationship_type", name="uq_batch_relationship_link"
        ),
        sa.CheckConstraint("parent_batch_id != child_batch_id", name="ck_batch_relationship_no_self_link"),
        sa.CheckConstraint(
            "plant_count_transferred IS NULL OR plant_count_transferred >= 0",
            name="ck_batch_relationship_transfer_non_negative",
        ),
        sa.CheckConstraint(
            "relationship_type IN ('split', 'merge', 'clone', 'propagation')", name="ck_batch_relationship_type"
        ),
    )
    op.create_index("ix_batch_relationships_site_parent", "batch_relationships", ["site_id", "parent_batch_id"])
    op.create_index("ix_batch_relationships_site_child", "batch_relationships", ["site_id", "child_batch_id"])

    # 7. Batch events (outbox)
    op.create_table(
        "batch_events",
        sa.Column("event_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("batch_id", UUID(as_uuid=True), sa.ForeignKey("batches.batch_id"), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("payload", sa.JSON),
        sa.Column("performed_by", UUID(as_uuid=True), nullable=False),
        sa.Column("performed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("published_at", sa.DateTime),
    )
    op.create_index("ix_batch_events_unpublished", "batch_events", ["published_at", "performed_at"])
    op.create_index("ix_batch_events_batch", "batch_events", ["batch_id", "performed_at"])

    # 8. Mother plants
    op.create_table(
        "mother_plants",
        sa.Column(
            "mother_plant_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("batch_id", UUID(as_uuid=True), sa.ForeignKey("batches.batch_id"), nullable=False),
        sa.Column("strain_id", UUID(as_uuid=True), nullable=False),
        sa.Column("plant_tag", sa.String(100), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="active"),
        sa.Column("status_reason", sa.Text),
        sa.Column("date_established", sa.Date, nullable=False),
        sa.Column("propagation_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_propagation_count", sa.Integer),
        sa.Column("last_propagation_date", sa.Date),
        *_audit_columns(),
        sa.UniqueConstraint("site_id", "plant_tag", name="uq_mother_plant_tag_per_site"),
        sa.CheckConstraint("propagation_count >= 0", name="ck_mother_propagation_count_non_negative"),
        sa.CheckConstraint(
            "max_propagation_count IS NULL OR max_propagation_count >= 1", name="ck_mother_max_propagation_positive"
        ),
        sa.CheckConstraint(
            "status IN ('active', 'quarantine', 'retired', 'culled')", name="ck_mother_plant_status"
        ),
    )
    op.create_index("ix_mother_plants_site_status", "mother_plants", ["site_id", "status"])

    # 9. Propagation settings
    op.create_table(
        "propagation_settings",
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), primary_key=True),
        sa.Column("daily_limit", sa.Integer),
        sa.Column("weekly_limit", sa.Integer),
        sa.Column("mother_propagation_limit", sa.Integer),
        sa.Column("requires_override_approval", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("approver_role", sa.String(100)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_by", UUID(as_uuid=True)),
        sa.CheckConstraint("daily_limit IS NULL OR daily_limit >= 1", name="ck_settings_daily_positive"),
        sa.CheckConstraint("weekly_limit IS NULL OR weekly_limit >= 1", name="ck_settings_weekly_positive"),
        sa.CheckConstraint(
            "mother_propagation_limit IS NULL OR mother_propagation_limit >= 1", name="ck_settings_mother_positive"
        ),
    )

    # 10. Override requests
    op.create_table(
        "propagation_override_requests",
        sa.Column("override_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("requested_by", UUID(as_uuid=True), nullable=False),
        sa.Column("mother_plant_id", UUID(as_uuid=True), sa.ForeignKey("mother_plants.mother_plant_id")),
        sa.Column("batch_id", UUID(as_uuid=True), sa.ForeignKey("batches.batch_id")),
        sa.Column("requested_quantity", sa.Integer, nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("requested_on", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("approved_by", UUID(as_uuid=True)),
        sa.Column("resolved_on", sa.DateTime),
        sa.Column("decision_notes", sa.Text),
        sa.Column("executed_at", sa.DateTime),
        sa.Column("executed_event_id", UUID(as_uuid=True)),
        sa.CheckConstraint("requested_quantity > 0", name="ck_override_quantity_positive"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'expired')", name="ck_override_status"
        ),
    )
    op.create_index("ix_override_requests_site_status", "propagation_override_requests", ["site_id", "status"])

    # 11. Propagation events (append-only ledger)
    op.create_table(
        "propagation_events",
        sa.Column("event_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column(
            "mother_plant_id", UUID(as_uuid=True), sa.ForeignKey("mother_plants.mother_plant_id"), nullable=False
        ),
        sa.Column("propagated_count", sa.Integer, nullable=False),
        sa.Column("recorded_on", sa.Date, nullable=False),
        sa.Column("override_id", UUID(as_uuid=True), sa.ForeignKey("propagation_override_requests.override_id")),
        sa.Column("bypassed_limits", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text),
        *_audit_columns(with_updates=False),
        sa.CheckConstraint("propagated_count > 0", name="ck_propagation_event_count_positive"),
    )
    op.create_index("ix_propagation_events_site_day", "propagation_events", ["site_id", "recorded_on"])
    op.create_index("ix_propagation_events_mother", "propagation_events", ["mother_plant_id", "recorded_on"])
    op.execute(
        "CREATE TRIGGER trg_propagation_events_append_only BEFORE UPDATE OR DELETE ON propagation_events "
        "FOR EACH ROW EXECUTE FUNCTION reject_append_only_change()"
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_propagation_events_append_only ON propagation_events")
    op.execute("DROP TRIGGER IF EXISTS trg_stage_history_append_only ON stage_history")
    op.execute("DROP FUNCTION IF EXISTS reject_append_only_change()")
    tables = [
        "propagation_events",
        "propagation_override_requests",
        "propagation_settings",
        "mother_plants",
        "batch_events",
        "batch_relationships",
        "stage_history",
        "batches",
        "stage_transitions",
        "stages",
        "sites",
    ]
    for table in tables:
        op.drop_table(table)
