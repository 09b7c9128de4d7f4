"""
Adpulse: Database Models
Synced ad-platform entities, daily insights, change ledger, recommendations,
sync runs and the durable job queue. Every synced entity is keyed by the
natural key (account_id, provider, external_id).
"""

import uuid
import enum
import datetime as dt
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from adpulse.database import Base


def _utcnow() -> datetime:
    """Naive UTC now, matching DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class Provider(str, enum.Enum):
    META = "meta"
    GOOGLE = "google"


class EntityLevel(str, enum.Enum):
    ACCOUNT = "account"
    CAMPAIGN = "campaign"
    AD_GROUP = "ad_group"
    AD = "ad"


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"
    INACTIVE = "inactive"


class AdAccountStatus(str, enum.Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    UNSETTLED = "unsettled"
    PENDING = "pending"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class ChangeType(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGE = "status_change"


class RecommendationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class SyncRunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  ACCOUNTS: Workspace that owns connections and synced data
# ══════════════════════════════════════════════════════════════════════

class Account(Base):
    """Workspace owning provider connections; holds the reporting currency."""
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    connections: Mapped[list["ProviderConnection"]] = relationship("ProviderConnection", back_populates="account", cascade="all, delete-orphan")
    ad_accounts: Mapped[list["AdAccount"]] = relationship("AdAccount", back_populates="account", cascade="all, delete-orphan")


# ══════════════════════════════════════════════════════════════════════
#  PROVIDER CONNECTIONS: Tokens and sync bookkeeping per provider
# ══════════════════════════════════════════════════════════════════════

class ProviderConnection(Base):
    """Credentials for one provider. Tokens are Fernet-encrypted at rest."""
    __tablename__ = "provider_connections"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(20), default=ConnectionStatus.ACTIVE.value)
    selected_account_ids: Mapped[list] = mapped_column(JSON, nullable=True)  # empty = discover all
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str] = mapped_column(Text, nullable=True)
    last_sync_result: Mapped[dict] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    account: Mapped["Account"] = relationship("Account", back_populates="connections")

    __table_args__ = (
        Index("ix_provider_connections_account_id", "account_id"),
        Index("ix_provider_connections_provider_active", "provider", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AD ACCOUNTS: Upstream advertiser accounts
# ══════════════════════════════════════════════════════════════════════

class AdAccount(Base):
    """Upstream advertiser account. Never deleted, only status-transitioned."""
    __tablename__ = "ad_accounts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("provider_connections.id", ondelete="SET NULL"), nullable=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=True)
    timezone: Mapped[str] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=AdAccountStatus.UNKNOWN.value)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    account: Mapped["Account"] = relationship("Account", back_populates="ad_accounts")
    campaigns: Mapped[list["Campaign"]] = relationship("Campaign", back_populates="ad_account", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_account_natural_key"),
        Index("ix_ad_accounts_account_id", "account_id"),
        Index("ix_ad_accounts_connection_id", "connection_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    """Campaign. Budget is stored in the reporting currency; originals live in metadata."""
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    ad_account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=True)
    objective: Mapped[str] = mapped_column(String(100), nullable=True)
    channel: Mapped[str] = mapped_column(String(50), nullable=True)
    budget_amount: Mapped[float] = mapped_column(Float, nullable=True)
    budget_currency: Mapped[str] = mapped_column(String(3), nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ad_account: Mapped["AdAccount"] = relationship("AdAccount", back_populates="campaigns")
    ad_groups: Mapped[list["AdGroup"]] = relationship("AdGroup", back_populates="campaign", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_campaign_natural_key"),
        Index("ix_campaigns_account_id", "account_id"),
        Index("ix_campaigns_ad_account_id", "ad_account_id"),
        Index("ix_campaigns_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AD GROUPS: Ad sets on Meta
# ══════════════════════════════════════════════════════════════════════

class AdGroup(Base):
    """Ad group / ad set with targeting metadata."""
    __tablename__ = "ad_groups"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    campaign_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=True)
    channel: Mapped[str] = mapped_column(String(50), nullable=True)
    budget_amount: Mapped[float] = mapped_column(Float, nullable=True)
    budget_currency: Mapped[str] = mapped_column(String(3), nullable=True)
    targeting: Mapped[dict] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="ad_groups")
    ads: Mapped[list["Ad"]] = relationship("Ad", back_populates="ad_group", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_group_natural_key"),
        Index("ix_ad_groups_account_id", "account_id"),
        Index("ix_ad_groups_campaign_id", "campaign_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ADS
# ══════════════════════════════════════════════════════════════════════

class Ad(Base):
    """Ad with its structured creative."""
    __tablename__ = "ads"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    ad_group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("ad_groups.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(512), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=True)
    channel: Mapped[str] = mapped_column(String(50), nullable=True)
    creative: Mapped[dict] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    ad_group: Mapped["AdGroup"] = relationship("AdGroup", back_populates="ads")

    __table_args__ = (
        UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_natural_key"),
        Index("ix_ads_account_id", "account_id"),
        Index("ix_ads_ad_group_id", "ad_group_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  INSIGHTS: One metrics snapshot per entity per date per window
# ══════════════════════════════════════════════════════════════════════

class Insight(Base):
    """
    Daily (or windowed) metrics for one entity. Upserted, never deleted.
    entity_id is the internal id of the AdAccount / Campaign / AdGroup / Ad row.
    """
    __tablename__ = "insights"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)  # account, campaign, ad_group, ad
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    window: Mapped[str] = mapped_column(String(10), nullable=False, default="1d")
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False)
    ad_account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    campaign_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    ad_group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    ad_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "account_id", "provider", "entity_type", "entity_id", "date", "window",
            name="uq_insight_entity_date_window",
        ),
        Index("ix_insights_entity", "entity_type", "entity_id", "date"),
        Index("ix_insights_account_date", "account_id", "date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SYNC RUNS: Outcome record of each sync pass
# ══════════════════════════════════════════════════════════════════════

class SyncRun(Base):
    """Persisted sync run: counts per entity type plus the error list."""
    __tablename__ = "sync_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("provider_connections.id", ondelete="SET NULL"), nullable=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(20), default="full")  # full, delta, insights
    status: Mapped[str] = mapped_column(String(20), default=SyncRunStatus.RUNNING.value)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=True)
    ad_accounts_synced: Mapped[int] = mapped_column(Integer, default=0)
    campaigns_synced: Mapped[int] = mapped_column(Integer, default=0)
    ad_groups_synced: Mapped[int] = mapped_column(Integer, default=0)
    ads_synced: Mapped[int] = mapped_column(Integer, default=0)
    insights_synced: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    error_category: Mapped[str] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_sync_runs_account_id", "account_id"),
        Index("ix_sync_runs_connection_id", "connection_id"),
        Index("ix_sync_runs_started_at", "started_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CHANGE HISTORY: Append-only field-level ledger
# ══════════════════════════════════════════════════════════════════════

class ChangeHistory(Base):
    """One row per detected field delta. Never updated after insert."""
    __tablename__ = "change_history"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=True)
    change_type: Mapped[str] = mapped_column(String(20), nullable=False)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[dict] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict] = mapped_column(JSON, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    sync_run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        Index("ix_change_history_entity", "entity_type", "entity_id", "detected_at"),
        Index("ix_change_history_account_detected", "account_id", "detected_at"),
        Index("ix_change_history_sync_run_id", "sync_run_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RECOMMENDATIONS: Playbook output
# ══════════════════════════════════════════════════════════════════════

class Recommendation(Base):
    """Rule-based optimization proposal. At most one pending row per (account, entity, type)."""
    __tablename__ = "recommendations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_type: Mapped[str] = mapped_column(String(20), nullable=False)  # campaign, ad_group, ad
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    playbook_key: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    category: Mapped[str] = mapped_column(String(50), default="performance")
    status: Mapped[str] = mapped_column(String(20), default=RecommendationStatus.PENDING.value)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=True)
    estimated_impact: Mapped[dict] = mapped_column(JSON, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)
    decided_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_recommendations_dedup", "account_id", "entity_id", "type", "status"),
        Index("ix_recommendations_status", "status"),
        Index("ix_recommendations_created_at", "created_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  QUEUE JOBS: Durable job queue
# ══════════════════════════════════════════════════════════════════════

class QueueJob(Base):
    """Background job row. job_key is the idempotency key for deduplication."""
    __tablename__ = "queue_jobs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    queue: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    job_key: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    stalled_count: Mapped[int] = mapped_column(Integer, default=0)
    run_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    locked_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str] = mapped_column(Text, nullable=True)
    result: Mapped[dict] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("job_key", name="uq_queue_jobs_job_key"),
        Index("ix_queue_jobs_claim", "queue", "status", "run_at"),
        Index("ix_queue_jobs_locked_at", "locked_at"),
    )
