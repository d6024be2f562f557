"""
Database Module - The Black Box
================================
Unified persistence layer with centralized event logging.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Schema migrations for invoices, quotes, payments and notifications
- The Black Box (system_events) for unified audit logging

pip install asyncpg
"""

import json
from uuid import uuid4
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Literal
from contextlib import asynccontextmanager

import structlog
import asyncpg

from config import settings

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# EVENT TYPES (The Black Box)
# =============================================================================

Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                settings.DATABASE_URL,
                min_size=settings.DB_MIN_POOL_SIZE,
                max_size=settings.DB_MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            # Run migrations on startup
            await cls._run_migrations()

        except (asyncpg.PostgresError, OSError) as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        """Execute a query"""
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        """Fetch all rows"""
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            # Documents
            """
            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                invoice_number TEXT NOT NULL,
                to_client TEXT NOT NULL DEFAULT '',
                discount_amount NUMERIC NOT NULL DEFAULT 0,
                tax_amount NUMERIC NOT NULL DEFAULT 0,
                status VARCHAR(20) NOT NULL DEFAULT 'Unpaid',
                due_date TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS invoice_items (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                invoice_id TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                quantity NUMERIC NOT NULL DEFAULT 0,
                unit TEXT,
                unit_price NUMERIC NOT NULL DEFAULT 0
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS quotes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                quote_number TEXT NOT NULL,
                to_client TEXT NOT NULL DEFAULT '',
                discount_amount NUMERIC NOT NULL DEFAULT 0,
                tax_amount NUMERIC NOT NULL DEFAULT 0,
                status VARCHAR(20) NOT NULL DEFAULT 'Pending',
                valid_until TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS quote_items (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                quote_id TEXT NOT NULL REFERENCES quotes(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                quantity NUMERIC NOT NULL DEFAULT 0,
                unit TEXT,
                unit_price NUMERIC NOT NULL DEFAULT 0
            )
            """,

            # Reconciliation records
            """
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                invoice_id TEXT NOT NULL REFERENCES invoices(id),
                user_id TEXT NOT NULL,
                amount NUMERIC NOT NULL,
                payment_date TIMESTAMPTZ NOT NULL,
                notes TEXT,
                status VARCHAR(20) NOT NULL,
                gateway VARCHAR(20) NOT NULL,
                gateway_reference TEXT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE (gateway, gateway_reference)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                message TEXT NOT NULL,
                link TEXT,
                is_read BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                trigger_type VARCHAR(50) NOT NULL,
                action_type VARCHAR(50) NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            )
            """,

            # THE BLACK BOX: Unified event log
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                correlation_id TEXT,
                timestamp TIMESTAMPTZ DEFAULT NOW(),
                event_type VARCHAR(50) NOT NULL,
                agent VARCHAR(50),
                payload JSONB NOT NULL DEFAULT '{}',
                severity VARCHAR(10) DEFAULT 'INFO'
            )
            """,

            # Create indexes
            "CREATE INDEX IF NOT EXISTS idx_invoice_items_invoice ON invoice_items(invoice_id)",
            "CREATE INDEX IF NOT EXISTS idx_quote_items_quote ON quote_items(quote_id)",
            "CREATE INDEX IF NOT EXISTS idx_invoices_user_status ON invoices(user_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_quotes_user_status ON quotes(user_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_payments_invoice ON payments(invoice_id)",
            "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_correlation ON system_events(correlation_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON system_events(timestamp DESC)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    # Index might already exist, that's fine
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# THE BLACK BOX: Event Logging
# =============================================================================

async def log_event(
    correlation_id: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
    agent: Optional[str] = None,
    severity: Severity = "INFO",
) -> str:
    """
    Unified event logging for all pipeline components.

    This is "The Black Box" - every reconciliation decision flows through
    here, creating a complete audit trail.

    Args:
        correlation_id: Inbound call this event belongs to (optional)
        event_type: Audit event type, e.g. "payment.reconciled"
        payload: Event-specific data
        agent: Which component generated this event
        severity: DEBUG, INFO, WARN, ERROR, CRITICAL

    Returns:
        Event ID
    """
    event_id = str(uuid4())
    timestamp = datetime.now(timezone.utc)
    query = """
        INSERT INTO system_events
        (id, correlation_id, timestamp, event_type, agent, payload, severity)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
    """
    args = (
        event_id,
        correlation_id,
        timestamp,
        event_type,
        agent,
        json.dumps(payload, default=str),
        severity,
    )

    try:
        await Database.execute(query, *args)
    except (asyncpg.PostgresError, OSError) as e:
        # The black box must never take the request down with it
        logger.error("event_log_failed", event_type=event_type, error=str(e))

    return event_id


async def get_correlation_events(
    correlation_id: str,
    limit: int = 100
) -> List[Dict[str, Any]]:
    """Get all events for one inbound call"""

    query = """
        SELECT * FROM system_events
        WHERE correlation_id = $1
        ORDER BY timestamp ASC
        LIMIT $2
    """
    rows = await Database.fetch_all(query, correlation_id, limit)

    results = []
    for row in rows:
        result = dict(row)
        if isinstance(result.get("payload"), str):
            result["payload"] = json.loads(result["payload"])
        results.append(result)
    return results


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database():
    """Initialize database on app startup"""
    await Database.initialize()


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
