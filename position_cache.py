#!/usr/bin/env python3
"""
Position Cache — SQLite persistence for mint snapshots and events
==================================================================

Two tables:
  position_snapshots  one row per token id: mint data, entry price, opening
                      USD value, last scanned block (the scan checkpoint)
  position_events     one row per decoded log, unique on
                      (token_id, tx_hash, log_index) so rescans are harmless

A snapshot is written once; afterwards only its checkpoint moves, and only
forward. Raw token amounts and Decimals are stored as TEXT (they overflow
SQLite INTEGER / lose precision as REAL).
"""

import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional

from event_scanner import PositionEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionSnapshot:
    """What a position looked like when it was minted."""

    token_id: int
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    amount0: int                    # raw units deposited at mint
    amount1: int
    mint_block: int
    mint_timestamp: int
    mint_tx_hash: str
    quote_side: int                 # 0 or 1
    entry_price: Decimal            # quote per base at mint
    opening_usd: Optional[Decimal]
    last_scanned_block: Optional[int] = None


def _opt_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value not in (None, "") else None


def _opt_str(value) -> Optional[str]:
    return str(value) if value is not None else None


class PositionCache:
    """Manages the local position store."""

    def __init__(self, db_path: str = "lp_positions.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self.create_tables()

    def create_tables(self):
        self.conn.execute('''
            CREATE TABLE IF NOT EXISTS position_snapshots (
                token_id INTEGER PRIMARY KEY,
                token0 TEXT NOT NULL,
                token1 TEXT NOT NULL,
                fee INTEGER NOT NULL,
                tick_lower INTEGER NOT NULL,
                tick_upper INTEGER NOT NULL,
                amount0 TEXT NOT NULL,
                amount1 TEXT NOT NULL,
                mint_block INTEGER NOT NULL,
                mint_timestamp INTEGER NOT NULL,
                mint_tx_hash TEXT NOT NULL,
                quote_side INTEGER NOT NULL,
                entry_price TEXT NOT NULL,
                opening_usd TEXT,
                last_scanned_block INTEGER,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        self.conn.execute('''
            CREATE TABLE IF NOT EXISTS position_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token_id INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                timestamp INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                details TEXT NOT NULL,
                amount0 TEXT,
                amount1 TEXT,
                reward_amount TEXT,
                liquidity TEXT,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                UNIQUE(token_id, tx_hash, log_index)
            )
        ''')
        self.conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_events_token ON position_events(token_id, timestamp)'
        )
        self.conn.commit()

    # ── Snapshots ────────────────────────────────────────────────────

    def get_snapshot(self, token_id: int) -> Optional[PositionSnapshot]:
        row = self.conn.execute(
            'SELECT * FROM position_snapshots WHERE token_id = ?', (token_id,)
        ).fetchone()
        if row is None:
            return None
        return PositionSnapshot(
            token_id=row["token_id"],
            token0=row["token0"],
            token1=row["token1"],
            fee=row["fee"],
            tick_lower=row["tick_lower"],
            tick_upper=row["tick_upper"],
            amount0=int(row["amount0"]),
            amount1=int(row["amount1"]),
            mint_block=row["mint_block"],
            mint_timestamp=row["mint_timestamp"],
            mint_tx_hash=row["mint_tx_hash"],
            quote_side=row["quote_side"],
            entry_price=Decimal(row["entry_price"]),
            opening_usd=_opt_decimal(row["opening_usd"]),
            last_scanned_block=row["last_scanned_block"],
        )

    def save_snapshot(self, snapshot: PositionSnapshot) -> PositionSnapshot:
        """Insert if absent; an existing snapshot is never overwritten. Returns the stored row."""
        self.conn.execute(
            '''
            INSERT OR IGNORE INTO position_snapshots (
                token_id, token0, token1, fee, tick_lower, tick_upper,
                amount0, amount1, mint_block, mint_timestamp, mint_tx_hash,
                quote_side, entry_price, opening_usd, last_scanned_block
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (
                snapshot.token_id, snapshot.token0, snapshot.token1, snapshot.fee,
                snapshot.tick_lower, snapshot.tick_upper,
                str(snapshot.amount0), str(snapshot.amount1),
                snapshot.mint_block, snapshot.mint_timestamp, snapshot.mint_tx_hash,
                snapshot.quote_side, str(snapshot.entry_price), _opt_str(snapshot.opening_usd),
                snapshot.last_scanned_block,
            ),
        )
        self.conn.commit()
        stored = self.get_snapshot(snapshot.token_id)
        return stored if stored is not None else snapshot

    # ── Checkpoint ───────────────────────────────────────────────────

    def get_last_scanned_block(self, token_id: int) -> Optional[int]:
        row = self.conn.execute(
            'SELECT last_scanned_block FROM position_snapshots WHERE token_id = ?', (token_id,)
        ).fetchone()
        return row["last_scanned_block"] if row else None

    def advance_checkpoint(self, token_id: int, block: int) -> bool:
        """Move the checkpoint to ``block`` unless it is already at or past it."""
        cur = self.conn.execute(
            '''
            UPDATE position_snapshots SET last_scanned_block = ?
            WHERE token_id = ? AND (last_scanned_block IS NULL OR last_scanned_block < ?)
            ''',
            (block, token_id, block),
        )
        self.conn.commit()
        moved = cur.rowcount > 0
        if not moved:
            logger.debug("Checkpoint for token %s not moved to %s", token_id, block)
        return moved

    # ── Events ───────────────────────────────────────────────────────

    def add_events(self, events: Iterable[PositionEvent]) -> int:
        """Store events, ignoring ones already recorded. Returns the number inserted."""
        inserted = 0
        for ev in events:
            cur = self.conn.execute(
                '''
                INSERT OR IGNORE INTO position_events (
                    token_id, block_number, timestamp, event_type, details,
                    amount0, amount1, reward_amount, liquidity, tx_hash, log_index
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    ev.token_id, ev.block, ev.timestamp, ev.event_type, ev.details,
                    _opt_str(ev.amount0), _opt_str(ev.amount1), _opt_str(ev.reward_amount),
                    _opt_str(ev.liquidity), ev.tx_hash, ev.log_index,
                ),
            )
            inserted += cur.rowcount
        self.conn.commit()
        return inserted

    def get_events(self, token_id: int) -> List[PositionEvent]:
        """Stored events, timestamp ascending, insertion order for ties."""
        rows = self.conn.execute(
            'SELECT * FROM position_events WHERE token_id = ? ORDER BY timestamp ASC, id ASC',
            (token_id,),
        ).fetchall()
        return [
            PositionEvent(
                token_id=row["token_id"],
                event_type=row["event_type"],
                timestamp=row["timestamp"],
                details=row["details"],
                block=row["block_number"],
                tx_hash=row["tx_hash"],
                log_index=row["log_index"],
                amount0=_opt_decimal(row["amount0"]),
                amount1=_opt_decimal(row["amount1"]),
                reward_amount=_opt_decimal(row["reward_amount"]),
                liquidity=int(row["liquidity"]) if row["liquidity"] is not None else None,
            )
            for row in rows
        ]

    # ── Lifecycle ────────────────────────────────────────────────────

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
