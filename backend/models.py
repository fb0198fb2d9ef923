# models.py — Database models for the Rocks tracker
# - String UUID primary keys everywhere
# - Every tenant-owned table carries organization_id (partition key)
# - Domain entities carry a nullable team_id (visibility key, NULL = org-wide legacy row)
# - Two membership tables coexist: memberships (current) and organization_members (legacy)
# - Audit logs are append-only; only the retention sweep deletes them

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Date,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from roles import Role

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class MemberStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class RockStatus(str, PyEnum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    AT_RISK = "AT_RISK"
    DONE = "DONE"


class SprintStatus(str, PyEnum):
    PLANNED = "PLANNED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class WorkStatus(str, PyEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    DONE = "DONE"


class Severity(str, PyEnum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================================
# ORGANIZATIONS
# ============================================================

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    logo_url = Column(String, nullable=True)
    settings = Column(JSON, nullable=False, default=dict)  # includes current_sprint_id
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    memberships = relationship("Membership", back_populates="organization")
    teams = relationship("Team", back_populates="organization")


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    avatar_url = Column(String, nullable=True)
    password_hash = Column(String, nullable=True)
    # Legacy global role, used only as a fallback when no membership exists
    role = Column(SQLEnum(Role), default=Role.VIEWER, nullable=False)
    is_super_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    memberships = relationship("Membership", back_populates="user")


class SuperAdminEmail(Base):
    __tablename__ = "super_admin_emails"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AllowedEmail(Base):
    """Invitation allow-list; a row with organization_id grants legacy access to that org."""
    __tablename__ = "allowed_emails"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, nullable=False, index=True)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=True, index=True)
    role = Column(SQLEnum(Role), default=Role.VIEWER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("email", "organization_id", name="uq_allowed_email_org"),
    )


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ============================================================
# MEMBERSHIP (current + legacy)
# ============================================================

class Membership(Base):
    __tablename__ = "memberships"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    role = Column(SQLEnum(Role), default=Role.VIEWER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="memberships")
    user = relationship("User", back_populates="memberships")
    team_links = relationship("TeamMembership", back_populates="membership")

    __table_args__ = (
        UniqueConstraint("email", "organization_id", name="uq_membership_email_org"),
        UniqueConstraint("user_id", "organization_id", name="uq_membership_user_org"),
        Index("idx_membership_org_active", "organization_id", "is_active"),
    )


class OrganizationMember(Base):
    """Legacy per-organization member row, kept readable until every tenant is migrated."""
    __tablename__ = "organization_members"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(SQLEnum(Role), default=Role.VIEWER, nullable=False)
    status = Column(SQLEnum(MemberStatus), default=MemberStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_org_member_user_org"),
    )


# ============================================================
# TEAMS
# ============================================================

class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="teams")
    members = relationship("TeamMembership", back_populates="team")

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_team_org_name"),
    )


class TeamMembership(Base):
    __tablename__ = "team_memberships"

    id = Column(String, primary_key=True, default=new_uuid)
    team_id = Column(String, ForeignKey("teams.id"), nullable=False, index=True)
    membership_id = Column(String, ForeignKey("memberships.id"), nullable=False, index=True)
    role_code = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    team = relationship("Team", back_populates="members")
    membership = relationship("Membership", back_populates="team_links")

    __table_args__ = (
        UniqueConstraint("team_id", "membership_id", name="uq_team_membership"),
    )


# ============================================================
# FEATURE FLAGS
# ============================================================

class FeatureFlag(Base):
    __tablename__ = "feature_flags"

    id = Column(String, primary_key=True, default=new_uuid)
    key = Column(String, nullable=False, index=True)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=True, index=True)  # NULL = global
    is_enabled = Column(Boolean, default=False, nullable=False)
    description = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("key", "organization_id", name="uq_flag_key_org"),
    )


# ============================================================
# DOMAIN ENTITIES
# ============================================================

class Objective(Base):
    __tablename__ = "objectives"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    code = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    year = Column(Integer, nullable=False)
    owner_id = Column(String, ForeignKey("memberships.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_objective_org_code"),
    )


class Rock(Base):
    __tablename__ = "rocks"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    objective_id = Column(String, ForeignKey("objectives.id"), nullable=True, index=True)
    code = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    year = Column(Integer, nullable=False)
    quarter = Column(Integer, nullable=False)
    status = Column(SQLEnum(RockStatus), default=RockStatus.PLANNED, nullable=False)
    owner_id = Column(String, ForeignKey("memberships.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_rock_org_code"),
        Index("idx_rock_org_period", "organization_id", "year", "quarter"),
    )


class Sprint(Base):
    __tablename__ = "sprints"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    main_rock_id = Column(String, ForeignKey("rocks.id"), nullable=True)
    code = Column(String, nullable=False)
    name = Column(String, nullable=False)
    goal = Column(Text, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(SQLEnum(SprintStatus), default=SprintStatus.PLANNED, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_sprint_org_code"),
    )


class Story(Base):
    __tablename__ = "stories"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    sprint_id = Column(String, ForeignKey("sprints.id"), nullable=True, index=True)
    rock_id = Column(String, ForeignKey("rocks.id"), nullable=True, index=True)
    owner_id = Column(String, ForeignKey("memberships.id"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(WorkStatus), default=WorkStatus.TODO, nullable=False)
    progress = Column(Integer, default=0, nullable=False)
    is_blocked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    story_id = Column(String, ForeignKey("stories.id"), nullable=True, index=True)
    assignee_id = Column(String, ForeignKey("memberships.id"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(WorkStatus), default=WorkStatus.TODO, nullable=False)
    due_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Label(Base):
    __tablename__ = "labels"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_label_org_name"),
    )


# ============================================================
# AUDIT LOGS (append-only)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    action = Column(String, nullable=False, index=True)
    category = Column(String, nullable=False, index=True)
    severity = Column(SQLEnum(Severity), default=Severity.INFO, nullable=False)
    entity_type = Column(String, nullable=True, index=True)
    entity_id = Column(String, nullable=True, index=True)
    entity_name = Column(String, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    changed_fields = Column(JSON, nullable=True)
    changes_summary = Column(Text, nullable=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    user_email = Column(String, nullable=True)
    user_name = Column(String, nullable=True)
    user_role = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_id = Column(String, nullable=True, index=True)
    request_path = Column(String, nullable=True)
    request_method = Column(String, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_org_created", "organization_id", "created_at"),
        Index("idx_audit_entity", "organization_id", "entity_type", "entity_id"),
    )


class AuditAlertConfig(Base):
    __tablename__ = "audit_alert_configs"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    trigger_actions = Column(JSON, nullable=False, default=list)
    trigger_entities = Column(JSON, nullable=False, default=lambda: ["*"])
    notify_user_ids = Column(JSON, nullable=False, default=list)
    notify_roles = Column(JSON, nullable=False, default=lambda: ["ADMIN"])
    channel_in_app = Column(Boolean, default=True, nullable=False)
    channel_email = Column(Boolean, default=False, nullable=False)
    channel_webhook = Column(Boolean, default=False, nullable=False)
    webhook_url = Column(String, nullable=True)
    webhook_secret = Column(String, nullable=True)
    cooldown_minutes = Column(Integer, default=5, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class AuditRetentionConfig(Base):
    __tablename__ = "audit_retention_configs"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), unique=True, nullable=False)
    retention_days = Column(Integer, default=1095, nullable=False)
    last_cleanup_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# NOTIFICATIONS (in-app alert deliveries)
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    alert_config_id = Column(String, ForeignKey("audit_alert_configs.id", ondelete="SET NULL"), nullable=True)
    audit_log_id = Column(String, ForeignKey("audit_logs.id", ondelete="SET NULL"), nullable=True)
    title = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    severity = Column(SQLEnum(Severity), default=Severity.INFO, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_notification_user_org", "user_id", "organization_id", "read_at"),
    )
