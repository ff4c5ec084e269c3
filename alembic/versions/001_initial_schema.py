"""Initial schema.

Creates users, sessions, order lines, rankings, product metadata,
achievements, streaks, activity logs and the engagement tables.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users & sessions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            shopify_customer_id VARCHAR(64) UNIQUE,
            email VARCHAR(320) UNIQUE NOT NULL,
            first_name VARCHAR(128),
            last_name VARCHAR(128),
            display_name VARCHAR(256),
            role VARCHAR(32) NOT NULL DEFAULT 'user',
            active BOOLEAN NOT NULL DEFAULT true,
            shopify_created_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id VARCHAR(128) PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)")

    # --- Order lines ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS customer_order_items (
            id BIGSERIAL PRIMARY KEY,
            order_number VARCHAR(64) NOT NULL,
            order_date TIMESTAMPTZ NOT NULL,
            shopify_product_id VARCHAR(64) NOT NULL,
            sku VARCHAR(128) NOT NULL DEFAULT '',
            quantity INTEGER NOT NULL,
            fulfillment_status VARCHAR(32),
            user_id BIGINT REFERENCES users(id) ON DELETE SET NULL,
            customer_email VARCHAR(320),
            line_item_data JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_order_items_order_product_sku UNIQUE (order_number, shopify_product_id, sku)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_customer_order_items_order_number ON customer_order_items(order_number)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_order_items_user_id ON customer_order_items(user_id)")

    # --- Rankings ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS product_rankings (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            shopify_product_id VARCHAR(64) NOT NULL,
            product_data JSONB NOT NULL DEFAULT '{}',
            ranking INTEGER NOT NULL,
            ranking_list_id VARCHAR(64) NOT NULL DEFAULT 'default',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_rankings_user_product_list UNIQUE (user_id, shopify_product_id, ranking_list_id)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_rankings_product ON product_rankings(shopify_product_id)")

    # --- Products ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS products_metadata (
            id BIGSERIAL PRIMARY KEY,
            shopify_product_id VARCHAR(64) UNIQUE NOT NULL,
            title TEXT,
            vendor VARCHAR(256),
            tags TEXT,
            animal_type VARCHAR(32),
            animal_display VARCHAR(64),
            animal_icon VARCHAR(16),
            primary_flavor VARCHAR(32),
            secondary_flavors JSONB,
            flavor_display VARCHAR(256),
            flavor_icon VARCHAR(16),
            force_rankable BOOLEAN NOT NULL DEFAULT false,
            shopify_created_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS product_views (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT REFERENCES users(id) ON DELETE SET NULL,
            shopify_product_id VARCHAR(64) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Gamification ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievements (
            id BIGSERIAL PRIMARY KEY,
            code VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT,
            tier VARCHAR(32),
            icon VARCHAR(256),
            category VARCHAR(64),
            points INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            achievement_id BIGINT NOT NULL REFERENCES achievements(id) ON DELETE CASCADE,
            tier VARCHAR(32),
            earned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_user_achievements_user_achievement UNIQUE (user_id, achievement_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS streaks (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            streak_type VARCHAR(32) NOT NULL,
            current_streak INTEGER NOT NULL DEFAULT 1,
            longest_streak INTEGER NOT NULL DEFAULT 1,
            last_activity_date DATE NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_streaks_user_type UNIQUE (user_id, streak_type)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS activity_logs (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            activity_type VARCHAR(64) NOT NULL,
            activity_data JSONB NOT NULL DEFAULT '{}',
            is_public BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_activity_logs_user_created
        ON activity_logs(user_id, created_at)
    """)

    # --- Engagement ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS page_views (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT REFERENCES users(id) ON DELETE SET NULL,
            page_type VARCHAR(64) NOT NULL,
            page_identifier VARCHAR(256),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_product_searches (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT REFERENCES users(id) ON DELETE SET NULL,
            search_term VARCHAR(256) NOT NULL,
            result_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)


def downgrade() -> None:
    for table in (
        "user_product_searches",
        "page_views",
        "activity_logs",
        "streaks",
        "user_achievements",
        "achievements",
        "product_views",
        "products_metadata",
        "product_rankings",
        "customer_order_items",
        "sessions",
        "users",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
