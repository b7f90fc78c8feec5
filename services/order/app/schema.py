"""
Order Service — テーブル定義

PostgreSQL と SQLite（テスト用）の両方で動く DDL のみを使う。
金額はセントの整数、時刻はエポックミリ秒で保存する。

カタログ系テーブル (food_trucks, menu_*, addresses, users) は
メニュー管理側が所有しており、このサービスは読み取りとロックのみ行う。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        uid TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        phone_number TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS food_trucks (
        uid TEXT PRIMARY KEY,
        operator_user_uid TEXT NOT NULL REFERENCES users (uid),
        name TEXT NOT NULL,
        current_status TEXT NOT NULL DEFAULT 'offline',
        location_latitude DOUBLE PRECISION,
        location_longitude DOUBLE PRECISION,
        current_location_address TEXT,
        delivery_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        delivery_fee_cents INTEGER NOT NULL DEFAULT 0,
        delivery_minimum_order_cents INTEGER NOT NULL DEFAULT 0,
        delivery_radius_km DOUBLE PRECISION,
        average_preparation_minutes INTEGER,
        customer_support_phone_number TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS menu_categories (
        uid TEXT PRIMARY KEY,
        food_truck_uid TEXT NOT NULL REFERENCES food_trucks (uid),
        name TEXT NOT NULL,
        is_available BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS menu_items (
        uid TEXT PRIMARY KEY,
        food_truck_uid TEXT NOT NULL REFERENCES food_trucks (uid),
        menu_category_uid TEXT NOT NULL REFERENCES menu_categories (uid),
        name TEXT NOT NULL,
        base_price_cents INTEGER NOT NULL,
        is_available BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS modifier_groups (
        uid TEXT PRIMARY KEY,
        menu_item_uid TEXT NOT NULL REFERENCES menu_items (uid),
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS modifier_options (
        uid TEXT PRIMARY KEY,
        modifier_group_uid TEXT NOT NULL REFERENCES modifier_groups (uid),
        name TEXT NOT NULL,
        price_adjustment_cents INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS addresses (
        uid TEXT PRIMARY KEY,
        customer_user_uid TEXT NOT NULL REFERENCES users (uid),
        street_address TEXT NOT NULL,
        apt_suite TEXT,
        city TEXT NOT NULL,
        state TEXT NOT NULL,
        zip_code TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_methods (
        uid TEXT PRIMARY KEY,
        customer_user_uid TEXT NOT NULL REFERENCES users (uid),
        payment_gateway_customer_id TEXT NOT NULL,
        payment_gateway_method_id TEXT NOT NULL UNIQUE,
        card_type TEXT,
        last_4_digits TEXT,
        expiry_month INTEGER,
        expiry_year INTEGER,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        uid TEXT PRIMARY KEY,
        order_number TEXT NOT NULL UNIQUE,
        customer_user_uid TEXT NOT NULL REFERENCES users (uid),
        food_truck_uid TEXT NOT NULL REFERENCES food_trucks (uid),
        status TEXT NOT NULL,
        fulfillment_type TEXT NOT NULL,
        delivery_address_snapshot TEXT,
        pickup_location_address_snapshot TEXT,
        special_instructions TEXT,
        subtotal_cents INTEGER NOT NULL,
        tax_cents INTEGER NOT NULL,
        delivery_fee_cents INTEGER NOT NULL,
        total_cents INTEGER NOT NULL,
        payment_charge_id TEXT NOT NULL,
        payment_intent_id TEXT,
        idempotency_key TEXT NOT NULL UNIQUE,
        refunded BOOLEAN NOT NULL DEFAULT FALSE,
        refund_id TEXT,
        rejection_reason TEXT,
        cancellation_reason TEXT,
        order_time BIGINT NOT NULL,
        accepted_at BIGINT,
        preparation_started_at BIGINT,
        ready_at BIGINT,
        finalized_at BIGINT,
        estimated_ready_time BIGINT,
        estimated_delivery_time BIGINT,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL,
        CHECK (total_cents = subtotal_cents + tax_cents + delivery_fee_cents)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        uid TEXT PRIMARY KEY,
        order_uid TEXT NOT NULL REFERENCES orders (uid),
        position INTEGER NOT NULL,
        menu_item_uid TEXT NOT NULL,
        item_name_snapshot TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        base_price_cents INTEGER NOT NULL,
        total_item_price_cents INTEGER NOT NULL,
        special_instructions TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_item_options (
        uid TEXT PRIMARY KEY,
        order_item_uid TEXT NOT NULL REFERENCES order_items (uid),
        position INTEGER NOT NULL,
        modifier_option_uid TEXT NOT NULL,
        modifier_group_name_snapshot TEXT NOT NULL,
        option_name_snapshot TEXT NOT NULL,
        price_adjustment_cents INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_events (
        order_uid TEXT NOT NULL REFERENCES orders (uid),
        version INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        event_data TEXT NOT NULL,
        created_at BIGINT NOT NULL,
        PRIMARY KEY (order_uid, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_reconciliation (
        uid TEXT PRIMARY KEY,
        charge_id TEXT UNIQUE,
        payment_intent_id TEXT,
        amount_cents INTEGER NOT NULL,
        customer_user_uid TEXT NOT NULL,
        food_truck_uid TEXT NOT NULL,
        checkout_key TEXT NOT NULL,
        idempotency_key TEXT NOT NULL,
        reason TEXT NOT NULL,
        state TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        refund_id TEXT,
        last_error TEXT,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    )
    """,
]


async def create_schema(conn: AsyncConnection) -> None:
    """全テーブルを作成する（存在するものはスキップ）。"""
    for statement in STATEMENTS:
        await conn.execute(text(statement))
