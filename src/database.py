"""SQLite ledger for escrow records.

Stores escrows, payee settings, funding receipts and the contract event log.
Status changes are conditional updates (``WHERE status = ...``) so that racing
writers, such as a payee's manual release and the auto-release timer, resolve
to exactly one winner and the loser becomes a no-op.
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Iterable, Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import (
    EscrowEvent,
    EscrowRecord,
    EscrowStatus,
    PayeeSettings,
    Receipt,
    ReleaseRule,
    TokenRef,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Escrow records (never deleted)
CREATE TABLE IF NOT EXISTS escrows (
    id TEXT PRIMARY KEY,
    chain_id INTEGER NOT NULL,
    token_addr TEXT NOT NULL,
    token_symbol TEXT NOT NULL,
    token_decimals INTEGER NOT NULL,
    amount TEXT NOT NULL,
    payee TEXT NOT NULL,
    payer TEXT,
    escrow_address TEXT,
    status TEXT NOT NULL CHECK(status IN ('created', 'funded', 'released', 'disputed')),
    rule TEXT,
    auto_release_hours INTEGER,
    tx_funded TEXT,
    tx_release TEXT,
    dispute_reason TEXT,
    created_at TEXT NOT NULL,
    funded_at TEXT,
    released_at TEXT
);

-- Per-payee policy
CREATE TABLE IF NOT EXISTS payee_settings (
    payee TEXT PRIMARY KEY,
    auto_release_hours INTEGER,
    updated_at TEXT NOT NULL
);

-- Funding receipts
CREATE TABLE IF NOT EXISTS receipts (
    id TEXT PRIMARY KEY,
    payer TEXT NOT NULL,
    payee TEXT NOT NULL,
    token_addr TEXT NOT NULL,
    token_symbol TEXT NOT NULL,
    token_decimals INTEGER NOT NULL,
    amount TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    tx_hash TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    block INTEGER NOT NULL,
    FOREIGN KEY (id) REFERENCES escrows(id)
);

-- Contract events seen per escrow
CREATE TABLE IF NOT EXISTS escrow_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    escrow_id TEXT NOT NULL,
    escrow_address TEXT,
    type TEXT NOT NULL,
    block INTEGER,
    tx_hash TEXT,
    raw TEXT NOT NULL,
    seen_at TEXT NOT NULL,
    FOREIGN KEY (escrow_id) REFERENCES escrows(id)
);

CREATE INDEX IF NOT EXISTS idx_escrows_status ON escrows(status);
CREATE INDEX IF NOT EXISTS idx_escrows_payee ON escrows(lower(payee));
CREATE INDEX IF NOT EXISTS idx_escrow_events_escrow_id ON escrow_events(escrow_id);
"""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_escrow(row: aiosqlite.Row) -> EscrowRecord:
    return EscrowRecord(
        id=row["id"],
        chain_id=row["chain_id"],
        token=TokenRef(
            address=row["token_addr"],
            symbol=row["token_symbol"],
            decimals=row["token_decimals"],
        ),
        amount=row["amount"],
        payee=row["payee"],
        payer=row["payer"],
        escrow_address=row["escrow_address"],
        status=EscrowStatus(row["status"]),
        rule=ReleaseRule(**json.loads(row["rule"])) if row["rule"] else None,
        auto_release_hours=row["auto_release_hours"],
        tx_funded=row["tx_funded"],
        tx_release=row["tx_release"],
        created_at=datetime.fromisoformat(row["created_at"]),
        funded_at=_parse_dt(row["funded_at"]),
        released_at=_parse_dt(row["released_at"]),
    )


async def _insert_receipt(conn: aiosqlite.Connection, receipt: Receipt) -> None:
    await conn.execute(
        """
        INSERT OR IGNORE INTO receipts
        (id, payer, payee, token_addr, token_symbol, token_decimals, amount,
         chain_id, tx_hash, timestamp, block)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            receipt.id,
            receipt.payer,
            receipt.payee,
            receipt.token.address,
            receipt.token.symbol,
            receipt.token.decimals,
            receipt.amount,
            receipt.chain_id,
            receipt.tx_hash,
            receipt.timestamp.isoformat(),
            receipt.block,
        ),
    )


async def _insert_event(conn: aiosqlite.Connection, event: EscrowEvent) -> None:
    await conn.execute(
        """
        INSERT INTO escrow_events
        (escrow_id, escrow_address, type, block, tx_hash, raw, seen_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event.escrow_id,
            event.escrow_address,
            event.type,
            event.block,
            event.tx_hash,
            json.dumps(event.raw),
            event.seen_at.isoformat(),
        ),
    )


class Database:
    """Async database interface for the escrow ledger."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Escrow operations
    async def create_escrow(self, escrow: EscrowRecord) -> None:
        """Insert a new escrow record.

        Args:
            escrow: Escrow to create.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO escrows
                (id, chain_id, token_addr, token_symbol, token_decimals, amount, payee, payer,
                 escrow_address, status, rule, auto_release_hours, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    escrow.id,
                    escrow.chain_id,
                    escrow.token.address,
                    escrow.token.symbol,
                    escrow.token.decimals,
                    escrow.amount,
                    escrow.payee,
                    escrow.payer,
                    escrow.escrow_address,
                    escrow.status.value,
                    escrow.rule.model_dump_json() if escrow.rule else None,
                    escrow.auto_release_hours,
                    escrow.created_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Created escrow: {escrow.id}")

    async def get_escrow(self, escrow_id: str) -> Optional[EscrowRecord]:
        """Get an escrow by ID.

        Args:
            escrow_id: Escrow identifier.

        Returns:
            EscrowRecord if found, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM escrows WHERE id = ?", (escrow_id,))
            row = await cursor.fetchone()

        return _row_to_escrow(row) if row else None

    async def list_escrows(self, payee: Optional[str] = None) -> list[EscrowRecord]:
        """List escrows, newest first.

        Args:
            payee: Only escrows owed to this payee (case-insensitive).

        Returns:
            Matching escrow records.
        """
        query = "SELECT * FROM escrows"
        params: tuple = ()
        if payee:
            query += " WHERE lower(payee) = lower(?)"
            params = (payee,)
        query += " ORDER BY created_at DESC, id"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        return [_row_to_escrow(row) for row in rows]

    async def record_funding(
        self,
        receipt: Receipt,
        escrow_address: Optional[str],
        event: EscrowEvent,
    ) -> bool:
        """Mark an escrow funded and store its receipt and event in one transaction.

        Either all three writes land or none does, so a failed write leaves
        the escrow in ``created`` and the confirmation can simply be retried.

        Args:
            receipt: Funding receipt; its id, payer, tx hash and timestamp
                drive the status update.
            escrow_address: Deployed escrow address (kept if already set).
            event: Contract event that evidenced the funding.

        Returns:
            True if this call performed the transition, False if the escrow
            was not in the created state.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                try:
                    cursor = await db.execute(
                        """
                        UPDATE escrows
                        SET status = 'funded', payer = ?, tx_funded = ?,
                            escrow_address = COALESCE(escrow_address, ?), funded_at = ?
                        WHERE id = ? AND status = 'created'
                        """,
                        (
                            receipt.payer,
                            receipt.tx_hash,
                            escrow_address,
                            receipt.timestamp.isoformat(),
                            receipt.id,
                        ),
                    )
                    changed = cursor.rowcount == 1
                    if changed:
                        await _insert_receipt(db, receipt)
                        await _insert_event(db, event)
                        await db.commit()
                    else:
                        await db.rollback()
                except Exception:
                    await db.rollback()
                    raise

        if changed:
            logger.info(f"Escrow {receipt.id} funded by {receipt.payer} in {receipt.tx_hash}")
        else:
            logger.warning(f"Escrow {receipt.id} not in created state, funding not recorded")
        return changed

    async def mark_released(
        self,
        escrow_id: str,
        tx_hash: Optional[str],
        from_statuses: Iterable[EscrowStatus] = (EscrowStatus.FUNDED,),
    ) -> bool:
        """Move an escrow to released if it is in one of ``from_statuses``.

        Returns:
            True if this call released the escrow, False if it was a no-op.
        """
        statuses = [status.value for status in from_statuses]
        placeholders = ", ".join("?" for _ in statuses)
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    f"""
                    UPDATE escrows
                    SET status = 'released', tx_release = ?, released_at = ?
                    WHERE id = ? AND status IN ({placeholders})
                    """,
                    (tx_hash, datetime.utcnow().isoformat(), escrow_id, *statuses),
                )
                await db.commit()
                changed = cursor.rowcount == 1

        if changed:
            logger.info(f"Escrow {escrow_id} released (tx: {tx_hash})")
        return changed

    async def mark_disputed(self, escrow_id: str, reason: str) -> bool:
        """Move a funded escrow to disputed.

        Returns:
            True if the dispute was recorded.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE escrows SET status = 'disputed', dispute_reason = ?
                    WHERE id = ? AND status = 'funded'
                    """,
                    (reason, escrow_id),
                )
                await db.commit()
                changed = cursor.rowcount == 1

        if changed:
            logger.info(f"Escrow {escrow_id} disputed: {reason}")
        return changed

    async def get_due_auto_releases(self, now: Optional[datetime] = None) -> list[EscrowRecord]:
        """Funded escrows whose auto-release deadline has passed.

        Args:
            now: Reference time, defaults to now.

        Returns:
            Escrows due for release, oldest funding first.
        """
        now = now or datetime.utcnow()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM escrows
                WHERE status = 'funded' AND auto_release_hours IS NOT NULL
                  AND funded_at IS NOT NULL
                ORDER BY funded_at
                """
            )
            rows = await cursor.fetchall()

        due = []
        for row in rows:
            escrow = _row_to_escrow(row)
            if escrow.funded_at + timedelta(hours=escrow.auto_release_hours) <= now:
                due.append(escrow)
        return due

    # Payee settings
    async def upsert_payee_settings(self, settings: PayeeSettings) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO payee_settings (payee, auto_release_hours, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(payee) DO UPDATE SET
                    auto_release_hours = excluded.auto_release_hours,
                    updated_at = excluded.updated_at
                """,
                (settings.payee, settings.auto_release_hours, datetime.utcnow().isoformat()),
            )
            await db.commit()
        logger.info(f"Updated settings for payee {settings.payee}")

    async def get_payee_settings(self, payee: str) -> Optional[PayeeSettings]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payee_settings WHERE payee = ?",
                (payee,),
            )
            row = await cursor.fetchone()

        if row:
            return PayeeSettings(payee=row["payee"], auto_release_hours=row["auto_release_hours"])
        return None

    # Receipt operations
    async def get_receipt(self, escrow_id: str) -> Optional[Receipt]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM receipts WHERE id = ?", (escrow_id,))
            row = await cursor.fetchone()

        if row:
            return Receipt(
                id=row["id"],
                payer=row["payer"],
                payee=row["payee"],
                token=TokenRef(
                    address=row["token_addr"],
                    symbol=row["token_symbol"],
                    decimals=row["token_decimals"],
                ),
                amount=row["amount"],
                chain_id=row["chain_id"],
                tx_hash=row["tx_hash"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                block=row["block"],
            )
        return None

    # Event log
    async def get_events(self, escrow_id: str) -> list[EscrowEvent]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM escrow_events WHERE escrow_id = ? ORDER BY id",
                (escrow_id,),
            )
            rows = await cursor.fetchall()

        return [
            EscrowEvent(
                escrow_id=row["escrow_id"],
                escrow_address=row["escrow_address"],
                type=row["type"],
                block=row["block"],
                tx_hash=row["tx_hash"],
                raw=json.loads(row["raw"]),
                seen_at=datetime.fromisoformat(row["seen_at"]),
            )
            for row in rows
        ]


# Global database instance
db = Database()
