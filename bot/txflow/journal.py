from __future__ import annotations

import logging
import ssl
from decimal import Decimal

import asyncpg

from txflow.models import ExecutionReport, FinalityEvent, PendingTransaction

logger = logging.getLogger(__name__)


class TransactionJournal:
    """
    Optional Postgres record of submitted transactions and their outcome.

    Journal writes are best-effort: a failing database never blocks or fails
    a user's transaction, it only logs.
    """

    def __init__(self, database_url: str | None) -> None:
        self.database_url = database_url
        self._pool = None
        self._disabled_notice_logged = False

    @property
    def enabled(self) -> bool:
        return bool(self.database_url)

    async def get_pool(self):
        """Get or create the connection pool; None when DATABASE_URL is unset."""
        if self._pool is None:
            if not self.database_url:
                if not self._disabled_notice_logged:
                    logger.info("[JOURNAL] disabled: DATABASE_URL is not set")
                    self._disabled_notice_logged = True
                return None
            try:
                self._pool = await asyncpg.create_pool(self.database_url, ssl=ssl.create_default_context())
            except Exception as e:
                # Local Postgres without TLS.
                logger.warning("[JOURNAL] TLS connection failed (%s); retrying without TLS", e)
                self._pool = await asyncpg.create_pool(self.database_url)
        return self._pool

    async def init(self) -> bool:
        pool = await self.get_pool()
        if pool is None:
            return False
        async with pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger_transactions (
                    id SERIAL PRIMARY KEY,
                    transaction_id VARCHAR(130) UNIQUE NOT NULL,
                    telegram_id VARCHAR(64) NOT NULL,
                    flow_kind VARCHAR(16) NOT NULL,
                    asset_id BIGINT NOT NULL,
                    counter_asset_id BIGINT NULL,
                    recipient VARCHAR(64) NULL,
                    amount NUMERIC(40, 0) NOT NULL,
                    fee NUMERIC(40, 0) NOT NULL,
                    status VARCHAR(20) NOT NULL,
                    block_hash VARCHAR(130) NULL,
                    detail TEXT NULL,
                    created_at TIMESTAMPTZ DEFAULT now(),
                    updated_at TIMESTAMPTZ DEFAULT now()
                )
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_ledger_transactions_telegram_id
                ON ledger_transactions(telegram_id, created_at DESC)
            """)
        logger.info("[JOURNAL] ledger_transactions table created/verified")
        return True

    async def record_submission(self, pending: PendingTransaction, report: ExecutionReport) -> None:
        try:
            pool = await self.get_pool()
            if pool is None:
                return
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO ledger_transactions (
                        transaction_id, telegram_id, flow_kind, asset_id, counter_asset_id,
                        recipient, amount, fee, status, block_hash, detail
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    ON CONFLICT (transaction_id) DO UPDATE SET
                        status = EXCLUDED.status,
                        block_hash = EXCLUDED.block_hash,
                        detail = EXCLUDED.detail,
                        updated_at = now()
                    """,
                    report.transaction_id,
                    pending.user_id,
                    pending.flow_kind.value,
                    pending.asset_id,
                    pending.counter_asset_id,
                    pending.recipient,
                    Decimal(pending.amount),
                    Decimal(pending.fee),
                    report.status.value,
                    report.block_hash,
                    report.failure.describe() if report.failure else None,
                )
        except Exception as e:
            logger.warning("[JOURNAL] could not record submission tx=%s: %s", report.transaction_id, e)

    async def record_finality(self, event: FinalityEvent) -> None:
        try:
            pool = await self.get_pool()
            if pool is None:
                return
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE ledger_transactions
                    SET status = $2, block_hash = COALESCE($3, block_hash), updated_at = now()
                    WHERE transaction_id = $1
                    """,
                    event.transaction_id,
                    event.status.value,
                    event.block_hash,
                )
        except Exception as e:
            logger.warning("[JOURNAL] could not record finality tx=%s: %s", event.transaction_id, e)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
