from sqlalchemy import Column, Integer, Boolean, DateTime, ForeignKey, Text, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from core.database import Base, JSONType
import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands datetimes back naive; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _prefixed_id(prefix: str):
    return lambda: f"{prefix}_{uuid.uuid4()}"


# Lifecycle states
APP_STATES = ("draft", "ready")
SOURCE_STATES = ("draft", "ready", "deleted")
PROPERTY_STATES = ("draft", "ready", "deleted")
PROFILE_STATES = ("draft", "pending", "ready")
PROFILE_PROPERTY_STATES = ("pending", "ready")
GROUP_STATES = ("draft", "ready", "updating", "deleted")
DESTINATION_STATES = ("draft", "ready", "deleted")
EXPORT_STATES = ("pending", "processing", "complete", "failed")
EXPORT_PROCESSOR_STATES = ("pending", "processing", "complete", "failed")
IMPORT_STATES = ("pending", "imported", "failed")
RUN_STATES = ("running", "complete", "stopped")

PROPERTY_TYPES = ("string", "email", "integer", "float", "boolean", "date", "url", "phoneNumber")


class App(Base):
    """A configured external system (database, CRM, ...) shared by Sources and Destinations."""
    __tablename__ = "apps"

    id = Column(Text, primary_key=True, default=_prefixed_id("app"))
    name = Column(Text, nullable=False, default="")
    type = Column(Text, nullable=False)  # connector app type name in the registry
    options = Column(JSONType, nullable=False, default=dict)
    state = Column(Text, nullable=False, default="draft")
    # Set by configuration-as-code ownership; blocks mutation through the engine
    locked = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    sources = relationship("Source", back_populates="app")
    destinations = relationship("Destination", back_populates="app")


class Source(Base):
    __tablename__ = "sources"

    id = Column(Text, primary_key=True, default=_prefixed_id("src"))
    app_id = Column(Text, ForeignKey("apps.id"), nullable=False, index=True)
    name = Column(Text, nullable=False, default="")
    type = Column(Text, nullable=False)  # connection name in the registry
    options = Column(JSONType, nullable=False, default=dict)
    # {source column: property key}
    mapping = Column(JSONType, nullable=False, default=dict)
    state = Column(Text, nullable=False, default="draft")
    locked = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    app = relationship("App", back_populates="sources")
    properties = relationship("Property", back_populates="source")
    schedule = relationship("Schedule", back_populates="source", uselist=False)


class Schedule(Base):
    """Incremental import configuration for a Source (at most one per Source)."""
    __tablename__ = "schedules"

    id = Column(Text, primary_key=True, default=_prefixed_id("sch"))
    source_id = Column(Text, ForeignKey("sources.id"), nullable=False, unique=True)
    name = Column(Text, nullable=False, default="")
    options = Column(JSONType, nullable=False, default=dict)
    recurring = Column(Boolean, nullable=False, default=False)
    recurring_frequency_s = Column(Integer, nullable=True)
    state = Column(Text, nullable=False, default="draft")
    locked = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    source = relationship("Source", back_populates="schedule")
    runs = relationship("Run", back_populates="schedule")


class Run(Base):
    """One pass of a Schedule; carries the connector's high-water mark between pages."""
    __tablename__ = "runs"

    id = Column(Text, primary_key=True, default=_prefixed_id("run"))
    schedule_id = Column(Text, ForeignKey("schedules.id"), nullable=False, index=True)
    state = Column(Text, nullable=False, default="running")
    high_water_mark = Column(JSONType, nullable=False, default=dict)
    imports_created = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    schedule = relationship("Schedule", back_populates="runs")


class Property(Base):
    __tablename__ = "properties"

    id = Column(Text, primary_key=True, default=_prefixed_id("prp"))
    source_id = Column(Text, ForeignKey("sources.id"), nullable=False, index=True)
    key = Column(Text, nullable=False, unique=True)
    type = Column(Text, nullable=False, default="string")
    is_array = Column(Boolean, nullable=False, default=False)
    unique = Column(Boolean, nullable=False, default=False)
    # Connector-specific options; string values may reference other properties as {{ key }}
    options = Column(JSONType, nullable=False, default=dict)
    filters = Column(JSONType, nullable=False, default=list)
    # True when the property is the column named in its Source's mapping
    directly_mapped = Column(Boolean, nullable=False, default=False)
    state = Column(Text, nullable=False, default="draft")
    locked = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    source = relationship("Source", back_populates="properties")


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Text, primary_key=True, default=_prefixed_id("pro"))
    state = Column(Text, nullable=False, default="pending")
    # Destroy requested: waiting for the final to_delete exports before the row goes away
    destroyed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    profile_properties = relationship(
        "ProfileProperty", back_populates="profile", cascade="all, delete-orphan"
    )
    group_members = relationship(
        "GroupMember", back_populates="profile", cascade="all, delete-orphan"
    )


class ProfileProperty(Base):
    """One value (one array position) of a Property for a Profile."""
    __tablename__ = "profile_properties"
    __table_args__ = (
        UniqueConstraint("profile_id", "property_id", "position", name="uq_profile_property_position"),
        Index("ix_profile_properties_state_started_at", "state", "started_at"),
        Index("ix_profile_properties_property_raw_value", "property_id", "raw_value"),
    )

    id = Column(Text, primary_key=True, default=_prefixed_id("ppr"))
    profile_id = Column(Text, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    property_id = Column(Text, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    raw_value = Column(Text, nullable=True)
    unique = Column(Boolean, nullable=False, default=False)
    state = Column(Text, nullable=False, default="pending")
    state_changed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    value_changed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    # Retry-eligibility watermark: NULL = eligible now; see services.property_resolver
    started_at = Column(DateTime(timezone=True), nullable=True)
    # Permanent failure (retries exhausted); cleared when the row is marked pending again
    failed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    profile = relationship("Profile", back_populates="profile_properties")
    property = relationship("Property")


class Import(Base):
    """One mapped row from a Source, waiting to be applied to a Profile."""
    __tablename__ = "imports"

    id = Column(Text, primary_key=True, default=_prefixed_id("imp"))
    source_id = Column(Text, ForeignKey("sources.id"), nullable=True, index=True)
    run_id = Column(Text, ForeignKey("runs.id"), nullable=True, index=True)
    profile_id = Column(Text, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    # {property key: value | [values]}
    data = Column(JSONType, nullable=False, default=dict)
    state = Column(Text, nullable=False, default="pending")
    created_profile = Column(Boolean, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    imported_at = Column(DateTime(timezone=True), nullable=True)


class Group(Base):
    __tablename__ = "groups"

    id = Column(Text, primary_key=True, default=_prefixed_id("grp"))
    name = Column(Text, nullable=False, unique=True)
    type = Column(Text, nullable=False)  # 'manual' | 'calculated'
    match_type = Column(Text, nullable=False, default="all")  # 'all' | 'any'
    # Ordered, flat list of {key, op, match, relative_match_*}
    rules = Column(JSONType, nullable=False, default=list)
    state = Column(Text, nullable=False, default="draft")
    locked = Column(Text, nullable=True)
    calculated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    members = relationship("GroupMember", back_populates="group", cascade="all, delete-orphan")


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("profile_id", "group_id", name="uq_group_member"),
    )

    id = Column(Text, primary_key=True, default=_prefixed_id("mem"))
    profile_id = Column(Text, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Text, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    profile = relationship("Profile", back_populates="group_members")
    group = relationship("Group", back_populates="members")


class Destination(Base):
    __tablename__ = "destinations"

    id = Column(Text, primary_key=True, default=_prefixed_id("dst"))
    app_id = Column(Text, ForeignKey("apps.id"), nullable=False, index=True)
    name = Column(Text, nullable=False, default="")
    type = Column(Text, nullable=False)  # connection name in the registry
    options = Column(JSONType, nullable=False, default=dict)
    # {remote field: property key}
    mapping = Column(JSONType, nullable=False, default=dict)
    # The group whose members this destination receives
    group_id = Column(Text, ForeignKey("groups.id"), nullable=True, index=True)
    # {group id: remote group name}
    group_mappings = Column(JSONType, nullable=False, default=dict)
    sync_mode = Column(Text, nullable=False, default="sync")
    state = Column(Text, nullable=False, default="draft")
    locked = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    app = relationship("App", back_populates="destinations")
    group = relationship("Group")


class ExportProcessor(Base):
    """A persisted `processExports` token: remote batch being completed asynchronously."""
    __tablename__ = "export_processors"

    id = Column(Text, primary_key=True, default=_prefixed_id("epr"))
    destination_id = Column(Text, ForeignKey("destinations.id"), nullable=False, index=True)
    remote_key = Column(Text, nullable=False)
    profile_ids = Column(JSONType, nullable=False, default=list)
    process_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    state = Column(Text, nullable=False, default="pending")
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    exports = relationship("Export", back_populates="export_processor")


class Export(Base):
    __tablename__ = "exports"
    __table_args__ = (
        Index("ix_exports_destination_state_send_at", "destination_id", "state", "send_at"),
        Index("ix_exports_profile_destination", "profile_id", "destination_id"),
    )

    id = Column(Text, primary_key=True, default=_prefixed_id("exp"))
    profile_id = Column(Text, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    destination_id = Column(Text, ForeignKey("destinations.id"), nullable=False)
    # Property maps use the destination's remote keys; group lists use remote group names
    old_profile_properties = Column(JSONType, nullable=False, default=dict)
    new_profile_properties = Column(JSONType, nullable=False, default=dict)
    old_groups = Column(JSONType, nullable=False, default=list)
    new_groups = Column(JSONType, nullable=False, default=list)
    to_delete = Column(Boolean, nullable=False, default=False)
    has_changes = Column(Boolean, nullable=False, default=True)
    state = Column(Text, nullable=False, default="pending")
    send_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    error_level = Column(Text, nullable=True)  # 'error' | 'info'
    export_processor_id = Column(Text, ForeignKey("export_processors.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    destination = relationship("Destination")
    export_processor = relationship("ExportProcessor", back_populates="exports")


class TaskFailure(Base):
    """Operator-visible ledger of tasks that exhausted their retries (or failed permanently)."""
    __tablename__ = "task_failures"

    id = Column(Text, primary_key=True, default=_prefixed_id("tfl"))
    task_name = Column(Text, nullable=False, index=True)
    task_id = Column(Text, nullable=True)
    args = Column(JSONType, nullable=False, default=list)
    kwargs = Column(JSONType, nullable=False, default=dict)
    error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    failed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
