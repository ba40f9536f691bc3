"""
Gate Discovery Database Models

8 tables: 3 owned by collaborators (read by discovery), 4 owned by the
gate catalog, plus the pipeline audit trail.

Tables:
  Collaborators (read, gate_id/metadata on check-ins written):
  1. events                  - Events that receive check-ins
  2. wristbands              - Attendee wristbands with category label
  3. checkin_logs            - Raw check-in stream (GPS optional)

  Gate Catalog (4-6 written by discovery):
  4. gates                   - Discovered physical/virtual gates
  5. gate_bindings           - Gate ↔ category confidence ladder
  6. gate_merge_suggestions  - Probable duplicate physical gates
  7. adaptive_thresholds     - Per-event discovery tuning (read-only)

  Audit:
  8. gate_pipeline_runs      - One row per discovery / assignment run
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
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
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def UUID(as_uuid=True):
    return GUID()


from sqlalchemy.orm import relationship

from db.session import Base


# ─── 1. Events ─────────────────────────────────────────────────────────────


class Event(Base):
    __tablename__ = "events"

    event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="live")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'live', 'completed', 'cancelled')", name="ck_event_status"),
    )

    gates = relationship("Gate", back_populates="event", cascade="all, delete-orphan")


# ─── 2. Wristbands ─────────────────────────────────────────────────────────


class Wristband(Base):
    __tablename__ = "wristbands"

    wristband_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.event_id"), nullable=False)
    category = Column(String(100), nullable=False, default="General")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_wristbands_event", "event_id"),)


# ─── 3. Check-in Logs ──────────────────────────────────────────────────────


class CheckinLog(Base):
    __tablename__ = "checkin_logs"

    checkin_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.event_id"), nullable=False)
    wristband_id = Column(UUID(as_uuid=True), ForeignKey("wristbands.wristband_id"), nullable=True)
    staff_id = Column(String(100), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    app_lat = Column(Float, nullable=True)
    app_lon = Column(Float, nullable=True)
    app_accuracy = Column(Float, nullable=True)  # meters
    processing_time_ms = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="success")
    gate_id = Column(UUID(as_uuid=True), ForeignKey("gates.gate_id"), nullable=True)
    checkin_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        CheckConstraint("status IN ('success', 'denied', 'error')", name="ck_checkin_status"),
        Index("ix_checkin_event_time", "event_id", "timestamp"),
        Index("ix_checkin_event_gate", "event_id", "gate_id"),
    )


# ─── 4. Gates ──────────────────────────────────────────────────────────────


class Gate(Base):
    __tablename__ = "gates"

    gate_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.event_id"), nullable=False)
    name = Column(String(255), nullable=False)
    latitude = Column(Float, nullable=True)  # NULL for virtual gates
    longitude = Column(Float, nullable=True)
    gate_type = Column(String(20), nullable=False, default="physical")
    status = Column(String(20), nullable=False, default="probation")
    derivation_method = Column(String(50), nullable=True)
    confidence_score = Column(Float, nullable=False, default=0.0)
    purity_score = Column(Float, nullable=True)
    spatial_variance = Column(Float, nullable=True)
    temporal_consistency = Column(Float, nullable=True)
    category_entropy = Column(Float, nullable=True)
    sample_count = Column(Integer, nullable=False, default=0)
    auto_created = Column(Boolean, nullable=False, default=False)
    derivation = Column(JSON, default=dict)  # GateDerivation.to_dict()
    extra_metadata = Column(JSON, default=dict)  # Owned by other collaborators
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('probation', 'approved', 'rejected', 'active', 'inactive')",
            name="ck_gate_status",
        ),
        CheckConstraint("gate_type IN ('physical', 'virtual')", name="ck_gate_type"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_gate_confidence"),
        Index("ix_gates_event", "event_id"),
    )

    event = relationship("Event", back_populates="gates")
    bindings = relationship("GateBinding", back_populates="gate", cascade="all, delete-orphan")

    @property
    def is_virtual(self) -> bool:
        return self.latitude is None or self.longitude is None


# ─── 5. Gate Bindings ──────────────────────────────────────────────────────


class GateBinding(Base):
    __tablename__ = "gate_bindings"

    binding_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gate_id = Column(UUID(as_uuid=True), ForeignKey("gates.gate_id"), nullable=False)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.event_id"), nullable=False)
    category = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="unbound")
    confidence = Column(Float, nullable=False, default=0.0)
    sample_count = Column(Integer, nullable=False, default=0)
    violation_count = Column(Integer, nullable=False, default=0)
    last_violation_at = Column(DateTime, nullable=True)
    bound_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("gate_id", "category", name="uq_gate_binding_category"),
        CheckConstraint(
            "status IN ('unbound', 'probation', 'enforced', 'rejected')",
            name="ck_binding_status",
        ),
        Index("ix_gate_bindings_event_category", "event_id", "category"),
    )

    gate = relationship("Gate", back_populates="bindings")


# ─── 6. Gate Merge Suggestions ─────────────────────────────────────────────


class GateMergeSuggestion(Base):
    __tablename__ = "gate_merge_suggestions"

    suggestion_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.event_id"), nullable=False)
    primary_gate_id = Column(UUID(as_uuid=True), ForeignKey("gates.gate_id"), nullable=False)
    secondary_gate_id = Column(UUID(as_uuid=True), ForeignKey("gates.gate_id"), nullable=False)
    distance_meters = Column(Float, nullable=False)
    confidence_score = Column(Float, nullable=False)
    reasoning = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", "primary_gate_id", "secondary_gate_id", name="uq_gate_merge_pair"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'applied')",
            name="ck_merge_status",
        ),
    )


# ─── 7. Adaptive Thresholds ────────────────────────────────────────────────


class AdaptiveThreshold(Base):
    __tablename__ = "adaptive_thresholds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(UUID(as_uuid=True), ForeignKey("events.event_id"), nullable=False, unique=True)
    duplicate_distance_meters = Column(Float, nullable=True)
    promotion_sample_size = Column(Integer, nullable=True)
    confidence_threshold = Column(Float, nullable=True)
    min_checkins_for_gate = Column(Integer, nullable=True)
    max_location_variance = Column(Float, nullable=True)
    overrides = Column(JSON, default=dict)  # Any other DiscoveryThresholds field
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


# ─── 8. Pipeline Runs (audit trail) ────────────────────────────────────────


class GatePipelineRun(Base):
    __tablename__ = "gate_pipeline_runs"

    run_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), nullable=False)
    run_type = Column(String(30), nullable=False)
    trigger = Column(String(30), nullable=False, default="manual")
    dry_run = Column(Boolean, nullable=False, default=False)
    outcome = Column(String(30), nullable=False)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    report = Column(JSON, default=dict)

    __table_args__ = (
        CheckConstraint("run_type IN ('discovery', 'orphan_assignment')", name="ck_pipeline_run_type"),
        CheckConstraint(
            "outcome IN ('completed', 'insufficient_data', 'failed')",
            name="ck_pipeline_run_outcome",
        ),
        Index("ix_pipeline_runs_event_started", "event_id", "started_at"),
    )
