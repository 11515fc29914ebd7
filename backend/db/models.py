"""
Canopy Database Models

13 tables for the cultivation core. Every table carries site_id so each
query can be scoped to the caller's site.

Tables:
  Configuration:
  1. sites                         - Cultivation facilities (tenancy anchor)
  2. stages                        - Per-site lifecycle stages (graph nodes)
  3. stage_transitions             - Allowed directed edges between stages

  Batches & Lineage:
  4. batches                       - Tracked groups of plants
  5. stage_history                 - Append-only log of stage changes
  6. batch_relationships           - Explicit split/merge/clone links (DAG)
  7. batch_events                  - Transactional outbox of lifecycle events

  Propagation:
  8. mother_plants                 - Plants kept as clone sources
  9. propagation_events            - Append-only propagation ledger
  10. propagation_settings         - Per-site daily/weekly/per-mother caps
  11. propagation_override_requests - Approval workflow for exceeding caps

  Site Rules & Care:
  12. batch_code_rules              - Per-site batch code formats
  13. mother_health_logs            - Dated health assessments of mother plants
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from core.errors import IntegrityViolation


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def decode_enum(enum_cls: type[Enum], raw, column: str | None = None):
    """Parse a stored value into its enum member; unknown values are corruption."""
    if raw is None or isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(raw)
    except ValueError as exc:
        raise IntegrityViolation(
            f"Unknown {enum_cls.__name__} value {raw!r} in storage",
            column=column,
            value=raw,
        ) from exc


class StrictEnum(TypeDecorator):
    """Closed enum stored as its string value.

    Reads of a value outside the enum raise IntegrityViolation instead of
    falling back to a default member.
    """

    impl = types.String(30)
    cache_ok = True

    def __init__(self, enum_cls: type[Enum], length: int = 30):
        super().__init__(length)
        self.enum_cls = enum_cls

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return decode_enum(self.enum_cls, value).value

    def process_result_value(self, value, dialect):
        return decode_enum(self.enum_cls, value, column=self.enum_cls.__name__)


def _values(enum_cls: type[Enum]) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ─── Enumerations ──────────────────────────────────────────────────────────


class BatchType(str, Enum):
    SEED = "seed"
    CLONE = "clone"
    TISSUE_CULTURE = "tissue_culture"
    MOTHER_PLANT = "mother_plant"


class BatchSourceType(str, Enum):
    SEED = "seed"
    CLONE = "clone"
    TISSUE_CULTURE = "tissue_culture"
    PURCHASE = "purchase"
    PROPAGATION = "propagation"
    SPLIT = "split"
    MERGE = "merge"


class BatchStatus(str, Enum):
    ACTIVE = "active"
    QUARANTINE = "quarantine"
    HOLD = "hold"
    COMPLETED = "completed"
    DESTROYED = "destroyed"


class RelationshipType(str, Enum):
    SPLIT = "split"
    MERGE = "merge"
    CLONE = "clone"
    PROPAGATION = "propagation"


class MotherPlantStatus(str, Enum):
    ACTIVE = "active"
    QUARANTINE = "quarantine"
    RETIRED = "retired"
    CULLED = "culled"


class OverrideStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class HealthStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


class PressureLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CodeResetPolicy(str, Enum):
    NEVER = "never"
    DAILY = "daily"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Alias so Column(UUID(as_uuid=True)) calls read like the migrations
def UUID(as_uuid=True):
    return GUID()


from db.session import Base

# ─── 1. Sites ──────────────────────────────────────────────────────────────


class Site(Base):
    __tablename__ = "sites"

    site_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    timezone = Column(String(50), default="UTC")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 2. Stages ─────────────────────────────────────────────────────────────


class Stage(Base):
    __tablename__ = "stages"

    stage_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    stage_key = Column(String(50), nullable=False)  # case-sensitive, e.g. "veg"
    display_name = Column(String(100), nullable=False)
    description = Column(Text)
    sequence_order = Column(Integer, nullable=False, default=0)  # advisory, UI ordering only
    is_terminal = Column(Boolean, nullable=False, default=False)
    requires_harvest_metrics = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = Column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("site_id", "stage_key", name="uq_stage_key_per_site"),
        Index("ix_stages_site_order", "site_id", "sequence_order"),
    )


# ─── 3. Stage Transitions ──────────────────────────────────────────────────


class StageTransition(Base):
    __tablename__ = "stage_transitions"

    transition_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    from_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.stage_id"), nullable=False)
    to_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.stage_id"), nullable=False)
    auto_advance = Column(Boolean, nullable=False, default=False)
    requires_approval = Column(Boolean, nullable=False, default=False)
    approval_role = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = Column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("site_id", "from_stage_id", "to_stage_id", name="uq_transition_edge_per_site"),
        Index("ix_transitions_from", "site_id", "from_stage_id"),
        CheckConstraint("from_stage_id != to_stage_id", name="ck_transition_no_self_loop"),
        CheckConstraint(
            "requires_approval = false OR approval_role IS NOT NULL",
            name="ck_transition_approval_role",
        ),
    )


# ─── 4. Batches ────────────────────────────────────────────────────────────


class Batch(Base):
    __tablename__ = "batches"

    batch_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    strain_id = Column(UUID(as_uuid=True), nullable=False)
    batch_code = Column(String(100), nullable=False)
    batch_name = Column(String(200), nullable=False)
    batch_type = Column(StrictEnum(BatchType), nullable=False)
    source_type = Column(StrictEnum(BatchSourceType), nullable=False)
    parent_batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.batch_id"), nullable=True)
    generation = Column(Integer, nullable=False, default=0)
    plant_count = Column(Integer, nullable=False, default=0)
    target_plant_count = Column(Integer, nullable=False, default=0)
    current_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.stage_id"), nullable=False)
    stage_started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expected_harvest_date = Column(Date)
    actual_harvest_date = Column(Date)
    harvest_metrics = Column(JSON, default=dict)
    location_id = Column(UUID(as_uuid=True))
    room_id = Column(UUID(as_uuid=True))
    zone_id = Column(UUID(as_uuid=True))
    status = Column(StrictEnum(BatchStatus), nullable=False, default=BatchStatus.ACTIVE)
    notes = Column(Text)
    metadata_ = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = Column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("site_id", "batch_code", name="uq_batch_code_per_site"),
        Index("ix_batches_site_stage", "site_id", "current_stage_id"),
        Index("ix_batches_parent", "parent_batch_id"),
        CheckConstraint("plant_count >= 0", name="ck_batch_plant_count_non_negative"),
        CheckConstraint("target_plant_count >= 0", name="ck_batch_target_non_negative"),
        CheckConstraint("generation >= 0", name="ck_batch_generation_non_negative"),
        CheckConstraint(f"status IN ({_values(BatchStatus)})", name="ck_batch_status"),
    )


# ─── 5. Stage History (append-only) ────────────────────────────────────────


class StageHistory(Base):
    __tablename__ = "stage_history"

    history_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.batch_id"), nullable=False)
    from_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.stage_id"), nullable=True)  # NULL on placement
    to_stage_id = Column(UUID(as_uuid=True), ForeignKey("stages.stage_id"), nullable=False)
    changed_by = Column(UUID(as_uuid=True), nullable=False)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    auto_advanced = Column(Boolean, nullable=False, default=False)
    notes = Column(Text)

    __table_args__ = (Index("ix_stage_history_batch_time", "batch_id", "changed_at"),)


# ─── 6. Batch Relationships ────────────────────────────────────────────────


class BatchRelationship(Base):
    __tablename__ = "batch_relationships"

    relationship_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    parent_batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.batch_id"), nullable=False)
    child_batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.batch_id"), nullable=False)
    relationship_type = Column(StrictEnum(RelationshipType), nullable=False)
    plant_count_transferred = Column(Integer)
    transfer_date = Column(Date, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "parent_batch_id", "child_batch_id", "relationship_type", name="uq_batch_relationship_link"
        ),
        Index("ix_batch_relationships_site_parent", "site_id", "parent_batch_id"),
        Index("ix_batch_relationships_site_child", "site_id", "child_batch_id"),
        CheckConstraint("parent_batch_id != child_batch_id", name="ck_batch_relationship_no_self_link"),
        CheckConstraint(
            "plant_count_transferred IS NULL OR plant_count_transferred >= 0",
            name="ck_batch_relationship_transfer_non_negative",
        ),
        CheckConstraint(f"relationship_type IN ({_values(RelationshipType)})", name="ck_batch_relationship_type"),
    )


# ─── 7. Batch Events (outbox) ──────────────────────────────────────────────


class BatchEvent(Base):
    __tablename__ = "batch_events"

    event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.batch_id"), nullable=False)
    event_type = Column(String(50), nullable=False)  # batch.created, batch.stage_changed, ...
    payload = Column(JSON, default=dict)
    performed_by = Column(UUID(as_uuid=True), nullable=False)
    performed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    published_at = Column(DateTime)  # NULL until relayed to subscribers

    __table_args__ = (
        Index("ix_batch_events_unpublished", "published_at", "performed_at"),
        Index("ix_batch_events_batch", "batch_id", "performed_at"),
    )


# ─── 8. Mother Plants ──────────────────────────────────────────────────────


class MotherPlant(Base):
    __tablename__ = "mother_plants"

    mother_plant_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.batch_id"), nullable=False)
    strain_id = Column(UUID(as_uuid=True), nullable=False)
    plant_tag = Column(String(100), nullable=False)
    status = Column(StrictEnum(MotherPlantStatus), nullable=False, default=MotherPlantStatus.ACTIVE)
    status_reason = Column(Text)
    date_established = Column(Date, nullable=False)
    propagation_count = Column(Integer, nullable=False, default=0)  # never decreases
    max_propagation_count = Column(Integer)  # per-plant cap, NULL = site policy only
    last_propagation_date = Column(Date)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = Column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("site_id", "plant_tag", name="uq_mother_plant_tag_per_site"),
        Index("ix_mother_plants_site_status", "site_id", "status"),
        CheckConstraint("propagation_count >= 0", name="ck_mother_propagation_count_non_negative"),
        CheckConstraint(
            "max_propagation_count IS NULL OR max_propagation_count >= 1",
            name="ck_mother_max_propagation_positive",
        ),
        CheckConstraint(f"status IN ({_values(MotherPlantStatus)})", name="ck_mother_plant_status"),
    )


# ─── 9. Propagation Events (ledger) ────────────────────────────────────────


class PropagationEvent(Base):
    __tablename__ = "propagation_events"

    event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    mother_plant_id = Column(UUID(as_uuid=True), ForeignKey("mother_plants.mother_plant_id"), nullable=False)
    propagated_count = Column(Integer, nullable=False)
    recorded_on = Column(Date, nullable=False)
    override_id = Column(
        UUID(as_uuid=True), ForeignKey("propagation_override_requests.override_id"), nullable=True
    )
    bypassed_limits = Column(Boolean, nullable=False, default=False)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        Index("ix_propagation_events_site_day", "site_id", "recorded_on"),
        Index("ix_propagation_events_mother", "mother_plant_id", "recorded_on"),
        CheckConstraint("propagated_count > 0", name="ck_propagation_event_count_positive"),
    )


# ─── 10. Propagation Settings ──────────────────────────────────────────────


class PropagationSettings(Base):
    __tablename__ = "propagation_settings"

    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), primary_key=True)
    daily_limit = Column(Integer)  # NULL = unlimited
    weekly_limit = Column(Integer)
    mother_propagation_limit = Column(Integer)
    requires_override_approval = Column(Boolean, nullable=False, default=True)
    approver_role = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = Column(UUID(as_uuid=True))

    __table_args__ = (
        CheckConstraint("daily_limit IS NULL OR daily_limit >= 1", name="ck_settings_daily_positive"),
        CheckConstraint("weekly_limit IS NULL OR weekly_limit >= 1", name="ck_settings_weekly_positive"),
        CheckConstraint(
            "mother_propagation_limit IS NULL OR mother_propagation_limit >= 1",
            name="ck_settings_mother_positive",
        ),
    )


# ─── 11. Propagation Override Requests ─────────────────────────────────────


class PropagationOverrideRequest(Base):
    __tablename__ = "propagation_override_requests"

    override_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    requested_by = Column(UUID(as_uuid=True), nullable=False)
    mother_plant_id = Column(UUID(as_uuid=True), ForeignKey("mother_plants.mother_plant_id"), nullable=True)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("batches.batch_id"), nullable=True)
    requested_quantity = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(StrictEnum(OverrideStatus), nullable=False, default=OverrideStatus.PENDING)
    requested_on = Column(DateTime, nullable=False, default=datetime.utcnow)
    approved_by = Column(UUID(as_uuid=True))
    resolved_on = Column(DateTime)
    decision_notes = Column(Text)
    executed_at = Column(DateTime)  # set once the approved quantity has been propagated
    executed_event_id = Column(UUID(as_uuid=True))

    __table_args__ = (
        Index("ix_override_requests_site_status", "site_id", "status"),
        CheckConstraint("requested_quantity > 0", name="ck_override_quantity_positive"),
        CheckConstraint(f"status IN ({_values(OverrideStatus)})", name="ck_override_status"),
    )


# ─── 12. Batch Code Rules ──────────────────────────────────────────────────


class BatchCodeRule(Base):
    __tablename__ = "batch_code_rules"

    rule_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    name = Column(String(100), nullable=False)
    rule_definition = Column(JSON, nullable=False, default=dict)  # {"format": "{SitePrefix}-{YYMMDD}-{Seq}"}
    reset_policy = Column(StrictEnum(CodeResetPolicy), nullable=False, default=CodeResetPolicy.NEVER)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(UUID(as_uuid=True), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = Column(UUID(as_uuid=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("site_id", "name", name="uq_batch_code_rule_name_per_site"),
        Index("ix_batch_code_rules_site_active", "site_id", "is_active"),
        CheckConstraint(f"reset_policy IN ({_values(CodeResetPolicy)})", name="ck_batch_code_rule_reset_policy"),
    )


# ─── 13. Mother Health Logs (append-only) ──────────────────────────────────


class MotherHealthLog(Base):
    __tablename__ = "mother_health_logs"

    log_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.site_id"), nullable=False)
    mother_plant_id = Column(UUID(as_uuid=True), ForeignKey("mother_plants.mother_plant_id"), nullable=False)
    log_date = Column(Date, nullable=False)
    health_status = Column(StrictEnum(HealthStatus), nullable=False)
    pest_pressure = Column(StrictEnum(PressureLevel), nullable=False, default=PressureLevel.NONE)
    disease_pressure = Column(StrictEnum(PressureLevel), nullable=False, default=PressureLevel.NONE)
    nutrient_deficiencies = Column(JSON, default=list)
    observations = Column(Text)
    treatments_applied = Column(Text)
    environmental_notes = Column(Text)
    photo_urls = Column(JSON, default=list)
    logged_by = Column(UUID(as_uuid=True), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_mother_health_logs_mother_date", "mother_plant_id", "log_date"),
        CheckConstraint(f"health_status IN ({_values(HealthStatus)})", name="ck_mother_health_status"),
        CheckConstraint(f"pest_pressure IN ({_values(PressureLevel)})", name="ck_mother_health_pest_pressure"),
        CheckConstraint(
            f"disease_pressure IN ({_values(PressureLevel)})", name="ck_mother_health_disease_pressure"
        ),
    )
