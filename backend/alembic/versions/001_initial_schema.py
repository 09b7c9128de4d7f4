"""Initial schema: accounts, connections, entity tree, insights, sync runs,
change history, recommendations and the job queue.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)


def _id():
    return sa.Column("id", UUID, primary_key=True)


def _account_fk():
    return sa.Column("account_id", UUID, sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    if "accounts" in sa.inspect(conn).get_table_names():
        return

    op.create_table(
        "accounts",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("currency", sa.String(3), nullable=True, server_default="USD"),
        *_timestamps(),
    )

    op.create_table(
        "provider_connections",
        _id(),
        _account_fk(),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("status", sa.String(20), nullable=True, server_default="active"),
        sa.Column("selected_account_ids", sa.JSON(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_sync_result", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_provider_connections_account_id", "provider_connections", ["account_id"])
    op.create_index("ix_provider_connections_provider_active", "provider_connections", ["provider", "is_active"])

    op.create_table(
        "ad_accounts",
        _id(),
        _account_fk(),
        sa.Column("connection_id", UUID, sa.ForeignKey("provider_connections.id", ondelete="SET NULL"), nullable=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("timezone", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=True, server_default="unknown"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_account_natural_key"),
    )
    op.create_index("ix_ad_accounts_account_id", "ad_accounts", ["account_id"])
    op.create_index("ix_ad_accounts_connection_id", "ad_accounts", ["connection_id"])

    op.create_table(
        "campaigns",
        _id(),
        _account_fk(),
        sa.Column("ad_account_id", UUID, sa.ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("objective", sa.String(100), nullable=True),
        sa.Column("channel", sa.String(50), nullable=True),
        sa.Column("budget_amount", sa.Float(), nullable=True),
        sa.Column("budget_currency", sa.String(3), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "provider", "external_id", name="uq_campaign_natural_key"),
    )
    op.create_index("ix_campaigns_account_id", "campaigns", ["account_id"])
    op.create_index("ix_campaigns_ad_account_id", "campaigns", ["ad_account_id"])
    op.create_index("ix_campaigns_status", "campaigns", ["status"])

    op.create_table(
        "ad_groups",
        _id(),
        _account_fk(),
        sa.Column("campaign_id", UUID, sa.ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("channel", sa.String(50), nullable=True),
        sa.Column("budget_amount", sa.Float(), nullable=True),
        sa.Column("budget_currency", sa.String(3), nullable=True),
        sa.Column("targeting", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_group_natural_key"),
    )
    op.create_index("ix_ad_groups_account_id", "ad_groups", ["account_id"])
    op.create_index("ix_ad_groups_campaign_id", "ad_groups", ["campaign_id"])

    op.create_table(
        "ads",
        _id(),
        _account_fk(),
        sa.Column("ad_group_id", UUID, sa.ForeignKey("ad_groups.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(512), nullable=True),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("channel", sa.String(50), nullable=True),
        sa.Column("creative", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("account_id", "provider", "external_id", name="uq_ad_natural_key"),
    )
    op.create_index("ix_ads_account_id", "ads", ["account_id"])
    op.create_index("ix_ads_ad_group_id", "ads", ["ad_group_id"])

    op.create_table(
        "insights",
        _id(),
        _account_fk(),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", UUID, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("window", sa.String(10), nullable=False, server_default="1d"),
        sa.Column("metrics", sa.JSON(), nullable=False),
        sa.Column("ad_account_id", UUID, nullable=True),
        sa.Column("campaign_id", UUID, nullable=True),
        sa.Column("ad_group_id", UUID, nullable=True),
        sa.Column("ad_id", UUID, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "account_id", "provider", "entity_type", "entity_id", "date", "window",
            name="uq_insight_entity_date_window",
        ),
    )
    op.create_index("ix_insights_entity", "insights", ["entity_type", "entity_id", "date"])
    op.create_index("ix_insights_account_date", "insights", ["account_id", "date"])

    op.create_table(
        "sync_runs",
        _id(),
        _account_fk(),
        sa.Column("connection_id", UUID, sa.ForeignKey("provider_connections.id", ondelete="SET NULL"), nullable=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("sync_type", sa.String(20), nullable=True, server_default="full"),
        sa.Column("status", sa.String(20), nullable=True, server_default="running"),
        sa.Column("started_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("ad_accounts_synced", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("campaigns_synced", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("ad_groups_synced", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("ads_synced", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("insights_synced", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(50), nullable=True),
    )
    op.create_index("ix_sync_runs_account_id", "sync_runs", ["account_id"])
    op.create_index("ix_sync_runs_connection_id", "sync_runs", ["connection_id"])
    op.create_index("ix_sync_runs_started_at", "sync_runs", ["started_at"])

    op.create_table(
        "change_history",
        _id(),
        _account_fk(),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", UUID, nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("change_type", sa.String(20), nullable=False),
        sa.Column("field_name", sa.String(100), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("detected_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("sync_run_id", UUID, sa.ForeignKey("sync_runs.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_index("ix_change_history_entity", "change_history", ["entity_type", "entity_id", "detected_at"])
    op.create_index("ix_change_history_account_detected", "change_history", ["account_id", "detected_at"])
    op.create_index("ix_change_history_sync_run_id", "change_history", ["sync_run_id"])

    op.create_table(
        "recommendations",
        _id(),
        _account_fk(),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("scope_type", sa.String(20), nullable=False),
        sa.Column("entity_id", UUID, nullable=False),
        sa.Column("playbook_key", sa.String(100), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("priority", sa.String(20), nullable=True, server_default="medium"),
        sa.Column("category", sa.String(50), nullable=True, server_default="performance"),
        sa.Column("status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("estimated_impact", sa.JSON(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True, server_default="0.5"),
        *_timestamps(),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_recommendations_dedup", "recommendations", ["account_id", "entity_id", "type", "status"])
    op.create_index("ix_recommendations_status", "recommendations", ["status"])
    op.create_index("ix_recommendations_created_at", "recommendations", ["created_at"])

    op.create_table(
        "queue_jobs",
        _id(),
        sa.Column("queue", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("job_key", sa.String(255), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=True, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=True, server_default="3"),
        sa.Column("stalled_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("run_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("job_key", name="uq_queue_jobs_job_key"),
    )
    op.create_index("ix_queue_jobs_claim", "queue_jobs", ["queue", "status", "run_at"])
    op.create_index("ix_queue_jobs_locked_at", "queue_jobs", ["locked_at"])


def downgrade() -> None:
    for table in (
        "queue_jobs", "recommendations", "change_history", "sync_runs", "insights",
        "ads", "ad_groups", "campaigns", "ad_accounts", "provider_connections", "accounts",
    ):
        op.drop_table(table)
