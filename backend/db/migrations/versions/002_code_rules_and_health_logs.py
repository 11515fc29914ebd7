"""code_rules_and_health_logs: per-site batch code formats, mother health logs

New tables:
  - batch_code_rules
  - mother_health_logs (append-only)

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 12. Batch code rules
    op.create_table(
        "batch_code_rules",
        sa.Column("rule_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("rule_definition", sa.JSON, nullable=False),
        sa.Column("reset_policy", sa.String(30), nullable=False, server_default="never"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", UUID(as_uuid=True), nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_by", UUID(as_uuid=True), nullable=False),
        sa.UniqueConstraint("site_id", "name", name="uq_batch_code_rule_name_per_site"),
        sa.CheckConstraint(
            "reset_policy IN ('never', 'daily', 'monthly', 'yearly')", name="ck_batch_code_rule_reset_policy"
        ),
    )
    op.create_index("ix_batch_code_rules_site_active", "batch_code_rules", ["site_id", "is_active"])

    # 13. Mother health logs
    op.create_table(
        "mother_health_logs",
        sa.Column("log_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("site_id", UUID(as_uuid=True), sa.ForeignKey("sites.site_id"), nullable=False),
        sa.Column(
            "mother_plant_id", UUID(as_uuid=True), sa.ForeignKey("mother_plants.mother_plant_id"), nullable=False
        ),
        sa.Column("log_date", sa.Date, nullable=False),
        sa.Column("health_status", sa.String(30), nullable=False),
        sa.Column("pest_pressure", sa.String(30), nullable=False, server_default="none"),
        sa.Column("disease_pressure", sa.String(30), nullable=False, server_default="none"),
        sa.Column("nutrient_deficiencies", sa.JSON),
        sa.Column("observations", sa.Text),
        sa.Column("treatments_applied", sa.Text),
        sa.Column("environmental_notes", sa.Text),
        sa.Column("photo_urls", sa.JSON),
        sa.Column("logged_by", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "health_status IN ('excellent', 'good', 'fair', 'poor', 'critical')", name="ck_mother_health_status"
        ),
        sa.CheckConstraint(
            "pest_pressure IN ('none', 'low', 'medium', 'high')", name="ck_mother_health_pest_pressure"
        ),
        sa.CheckConstraint(
            "disease_pressure IN ('none', 'low', 'medium', 'high')", name="ck_mother_health_disease_pressure"
        ),
    )
    op.create_index("ix_mother_health_logs_mother_date", "mother_health_logs", ["mother_plant_id", "log_date"])
    op.execute(
        "CREATE TRIGGER trg_mother_health_logs_append_only BEFORE UPDATE OR DELETE ON mother_health_logs "
        "FOR EACH ROW EXECUTE FUNCTION reject_append_only_change()"
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_mother_health_logs_append_only ON mother_health_logs")
    op.drop_table("mother_health_logs")
    op.drop_table("batch_code_rules")
