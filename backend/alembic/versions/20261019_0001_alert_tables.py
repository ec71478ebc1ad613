"""Create alert, catalog state, review job, and dispatch run tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "alerts",
        sa.Column("alert_id", sa.String(length=64), nullable=False),
        sa.Column("subject_type", sa.String(length=16), nullable=False),
        sa.Column("product_id", sa.String(length=128), nullable=False),
        sa.Column("variant_id", sa.String(length=128), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("threshold", sa.Float(), nullable=True),
        sa.Column("unsub_token", sa.String(length=128), nullable=False),
        sa.Column("unsub_token_hash", sa.String(length=64), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("alert_id"),
        sa.UniqueConstraint("unsub_token_hash"),
    )
    op.create_index("ix_alerts_product_id", "alerts", ["product_id"], unique=False)
    op.create_index("ix_alerts_notified_at", "alerts", ["notified_at"], unique=False)

    op.create_table(
        "catalog_states",
        sa.Column("product_id", sa.String(length=128), nullable=False),
        sa.Column("variant_key", sa.String(length=128), nullable=False),
        sa.Column("product_name", sa.String(length=256), nullable=True),
        sa.Column("product_slug", sa.String(length=256), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("stock", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("product_id", "variant_key"),
    )

    op.create_table(
        "review_jobs",
        sa.Column("order_id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("customer_name", sa.String(length=256), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("review_request_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_index("ix_review_jobs_delivered_at", "review_jobs", ["delivered_at"], unique=False)
    op.create_index(
        "ix_review_jobs_review_request_sent_at",
        "review_jobs",
        ["review_request_sent_at"],
        unique=False,
    )

    op.create_table(
        "dispatch_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("trigger_kind", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("evaluated_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_raced_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_stale_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_transport_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_validation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_storage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancelled_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_dispatch_runs_trigger_kind", "dispatch_runs", ["trigger_kind"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_dispatch_runs_trigger_kind", table_name="dispatch_runs")
    op.drop_table("dispatch_runs")
    op.drop_index("ix_review_jobs_review_request_sent_at", table_name="review_jobs")
    op.drop_index("ix_review_jobs_delivered_at", table_name="review_jobs")
    op.drop_table("review_jobs")
    op.drop_table("catalog_states")
    op.drop_index("ix_alerts_notified_at", table_name="alerts")
    op.drop_index("ix_alerts_product_id", table_name="alerts")
    op.drop_table("alerts")
