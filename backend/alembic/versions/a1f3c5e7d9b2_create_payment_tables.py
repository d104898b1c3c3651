"""create payment tables

Revision ID: a1f3c5e7d9b2
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from typing import Iterable

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1f3c5e7d9b2"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


SEED_DISCOUNT_CODES = (
    ("WELCOME10", 0.10),
    ("NEWUSER20", 0.20),
    ("VIP15", 0.15),
)


def _get_index_names(insp: sa.Inspector, table_name: str) -> set[str]:
    try:
        indexes = insp.get_indexes(table_name)
    except Exception:
        return set()
    return {str(ix.get("name") or "") for ix in indexes if ix.get("name")}


def _ensure_indexes(table_name: str, index_specs: Iterable[tuple[str, list[str], bool]]) -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing = _get_index_names(insp, table_name)

    for name, cols, unique in index_specs:
        if name in existing:
            continue
        op.create_index(name, table_name, cols, unique=bool(unique))


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("username", sa.String(length=50), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("quota", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        )
    _ensure_indexes("users", [("ix_users_username", ["username"], True)])

    if not insp.has_table("payment_orders"):
        op.create_table(
            "payment_orders",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("order_id", sa.String(length=100), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("quota_amount", sa.BigInteger(), nullable=False),
            sa.Column("pay_amount", sa.Numeric(precision=12, scale=2), nullable=False),
            sa.Column("gateway", sa.String(length=20), nullable=False),
            sa.Column("discount_code", sa.String(length=100), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )
    _ensure_indexes(
        "payment_orders",
        [
            ("ix_payment_orders_order_id", ["order_id"], True),
            ("ix_payment_orders_user_id", ["user_id"], False),
            ("ix_payment_orders_status", ["status"], False),
            ("ix_payment_orders_created_at", ["created_at"], False),
        ],
    )

    if not insp.has_table("discount_codes"):
        discount_codes = op.create_table(
            "discount_codes",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("code", sa.String(length=100), nullable=False),
            sa.Column("discount_ratio", sa.Float(), nullable=False, server_default="0"),
            sa.Column("enabled", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        )
        op.bulk_insert(
            discount_codes,
            [{"code": code, "discount_ratio": ratio, "enabled": True} for code, ratio in SEED_DISCOUNT_CODES],
        )
    _ensure_indexes(
        "discount_codes",
        [
            ("ix_discount_codes_code", ["code"], True),
            ("ix_discount_codes_enabled", ["enabled"], False),
        ],
    )

    if not insp.has_table("topup_logs"):
        op.create_table(
            "topup_logs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.String(length=100), nullable=False),
            sa.Column("kind", sa.String(length=20), nullable=False),
            sa.Column("quota", sa.BigInteger(), nullable=True),
            sa.Column("content", sa.String(length=500), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        )
    _ensure_indexes(
        "topup_logs",
        [
            ("ix_topup_logs_user_id", ["user_id"], False),
            ("ix_topup_logs_order_id", ["order_id"], False),
        ],
    )

    if not insp.has_table("payment_callback_events"):
        op.create_table(
            "payment_callback_events",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("provider", sa.String(length=20), nullable=False),
            sa.Column("order_id", sa.String(length=100), nullable=True),
            sa.Column("verified", sa.Boolean(), nullable=True),
            sa.Column("outcome", sa.String(length=40), nullable=True),
            sa.Column("error_message", sa.String(length=200), nullable=True),
            sa.Column("raw_payload", sa.Text(), nullable=True),
            sa.Column("raw_payload_hash", sa.String(length=64), nullable=True),
            sa.Column("source_ip", sa.String(length=45), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        )
    _ensure_indexes(
        "payment_callback_events",
        [
            ("ix_payment_callback_events_provider", ["provider"], False),
            ("ix_payment_callback_events_order_id", ["order_id"], False),
        ],
    )


def downgrade() -> None:
    op.drop_table("payment_callback_events")
    op.drop_table("topup_logs")
    op.drop_table("discount_codes")
    op.drop_table("payment_orders")
    op.drop_table("users")
