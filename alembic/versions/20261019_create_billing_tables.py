# alembic/versions/20261019_create_billing_tables.py
import sqlalchemy as sa

from alembic import op

revision = "20261019_create_billing_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user_accounts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("balance", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk__user_accounts"),
        sa.CheckConstraint("balance >= 0", name="ck__user_accounts__balance_non_negative"),
    )
    op.create_index("ix__user_accounts__email", "user_accounts", ["email"])
    op.create_index("ix__user_accounts__created_at", "user_accounts", ["created_at"])

    op.create_table(
        "billing_records",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("invoice_id", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(128), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_method", sa.String(8), nullable=False),
        sa.Column("bank", sa.String(16)),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("gateway_request", sa.JSON, nullable=False),
        sa.Column("gateway_resource_id", sa.String(128)),
        sa.Column("gateway_status", sa.String(32)),
        sa.Column("qr_string", sa.Text),
        sa.Column("account_number", sa.String(64)),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("gateway_callback_payload", sa.JSON),
        sa.Column("payment_time", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk__billing_records"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["user_accounts.id"],
            name="fk__billing_records__user_id__user_accounts",
            ondelete="RESTRICT",
        ),
        sa.CheckConstraint("amount > 0", name="ck__billing_records__amount_positive"),
        sa.CheckConstraint(
            "status IN ('waiting_payment', 'paid', 'cancelled')", name="ck__billing_records__status_known"
        ),
        sa.CheckConstraint("payment_method IN ('qris', 'va')", name="ck__billing_records__method_known"),
        sa.CheckConstraint(
            "(payment_method = 'va' AND bank IS NOT NULL) OR (payment_method = 'qris' AND bank IS NULL)",
            name="ck__billing_records__bank_iff_va",
        ),
    )
    op.create_index("ix__billing_records__invoice_id", "billing_records", ["invoice_id"], unique=True)
    op.create_index("ix__billing_records__external_id", "billing_records", ["external_id"], unique=True)
    op.create_index(
        "ix__billing_records__gateway_resource_id", "billing_records", ["gateway_resource_id"], unique=True
    )
    op.create_index("ix__billing_records__user_id", "billing_records", ["user_id"])
    op.create_index("ix__billing_records__status", "billing_records", ["status"])
    op.create_index("ix__billing_records__created_at", "billing_records", ["created_at"])
    op.create_index("ix_billing_records_user_created", "billing_records", ["user_id", "created_at"])

    op.create_table(
        "payment_notifications",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("invoice_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("amount", sa.BigInteger, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("id", name="pk__payment_notifications"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["user_accounts.id"],
            name="fk__payment_notifications__user_id__user_accounts",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["invoice_id"],
            ["billing_records.invoice_id"],
            name="fk__payment_notifications__invoice_id__billing_records",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("invoice_id", name="uq__payment_notifications__invoice_id"),
    )
    op.create_index("ix__payment_notifications__user_id", "payment_notifications", ["user_id"])
    op.create_index(
        "ix_payment_notifications_user_pending", "payment_notifications", ["user_id", "consumed_at"]
    )


def downgrade():
    op.drop_table("payment_notifications")
    op.drop_table("billing_records")
    op.drop_table("user_accounts")
