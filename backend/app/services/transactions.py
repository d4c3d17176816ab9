"""Transaction store and the feed-side contract of the ledger.

The ledger engine assumes at-most-once delivery per (exchange, external_id) and
serialized calls per user. Both guarantees live here, on the caller side.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Transaction, TransactionType, TransactionSide, to_naive_utc
from .ledger_engine import LedgerEngine

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """One asyncio.Lock per user for serializing ledger mutations.

    Lifecycle is explicit: locks are created on first use by ``lock_for`` and
    dropped by ``reset``/``clear``.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def reset(self, user_id: str) -> None:
        """Forget a user's lock. Must not be called while it is held."""
        lock = self._locks.get(user_id)
        if lock is not None and lock.locked():
            raise RuntimeError(f"Cannot reset ledger lock for user {user_id} while held")
        self._locks.pop(user_id, None)

    def clear(self) -> None:
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._locks)


ledger_locks = UserLockRegistry()


@dataclass
class RecordResult:
    """Outcome of recording one feed transaction."""
    transaction: Transaction
    created: bool


class TransactionService:
    """Records normalized transactions and hands new ones to the ledger."""

    def __init__(
        self,
        session: AsyncSession,
        engine: LedgerEngine,
        locks: Optional[UserLockRegistry] = None,
    ):
        """Initialize the transaction service.

        Args:
            session: Database session (shared with the engine)
            engine: Ledger engine applying new transactions
            locks: Per-user lock registry (defaults to the process registry)
        """
        self.session = session
        self.engine = engine
        self.locks = locks if locks is not None else ledger_locks

    async def record_transaction(
        self,
        user_id: str,
        exchange: str,
        external_id: str,
        tx_type: TransactionType,
        asset: str,
        amount: float,
        timestamp: datetime,
        side: Optional[TransactionSide] = None,
        price: Optional[float] = None,
        fee: Optional[float] = None,
        fee_asset: Optional[str] = None,
    ) -> RecordResult:
        """Store a transaction and apply it to the ledger if it is new.

        The transaction row and its ledger effects are committed together. If the
        engine fails, everything is rolled back and the error propagates so the
        feed can retry delivery.
        """
        async with self.locks.lock_for(user_id):
            existing = await self.session.execute(
                select(Transaction).where(
                    Transaction.exchange == exchange,
                    Transaction.external_id == external_id,
                )
            )
            duplicate = existing.scalar_one_or_none()
            if duplicate is not None:
                logger.debug(f"Skipping duplicate transaction {exchange}:{external_id}")
                return RecordResult(transaction=duplicate, created=False)

            tx = Transaction(
                user_id=user_id,
                exchange=exchange,
                external_id=external_id,
                type=tx_type,
                side=side,
                asset=asset,
                amount=amount,
                price=price,
                fee=fee,
                fee_asset=fee_asset,
                timestamp=to_naive_utc(timestamp),
            )

            try:
                self.session.add(tx)
                await self.session.flush()
                await self.engine.process_transaction(tx)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

            logger.info(f"Recorded transaction {tx.id}: {tx_type.value} {amount:.8f} {asset} ({exchange})")
            return RecordResult(transaction=tx, created=True)

    async def find_all_by_user_sorted(self, user_id: str) -> List[Transaction]:
        """All of a user's transactions in replay order."""
        result = await self.session.execute(Transaction.history_for(user_id))
        return list(result.scalars().all())
