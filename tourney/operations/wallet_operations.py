"""
Wallet Operations Module

Settlement entry points over the append-only wallet ledger:

- deposit(): credit a player's wallet (top-up)
- debit_entry_fee(): charge a tournament entry fee
- credit_prize(): pay out a prize for a final position
- refund_entry_fee(): compensating credit when a tournament is cancelled

A ledger row is never updated or deleted. Calls for the same player are
serialized by a per-player lock; a conflicting append from another process
fails on the per-player sequence constraint and is retried with backoff.
Callers that already own a transaction pass their session, in which case the
entry becomes part of that transaction: a failed append fails the whole
transaction, and the caller reports it (lifecycle transitions surface it as
StorageUnavailable with nothing written). Without a session, storage failures
left after the retries surface as StorageUnavailable.
"""

from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config import Config
from tourney.database.models import LedgerEntryKind, WalletEntry
from tourney.services.base import BaseService, storage_errors
from tourney.services.locks import KeyedLockRegistry
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)


class WalletOperations(BaseService):
    """Append-only wallet settlement for players."""

    def __init__(self, database, locks: Optional[KeyedLockRegistry] = None):
        super().__init__(database.session_factory)
        self.db = database
        self.locks = locks or database.lock_registry('wallet')
        self.logger = logger

    async def _append(self, player_id: int, amount: int, kind: LedgerEntryKind, reason: str,
                      tournament_id: Optional[int] = None,
                      session: Optional[AsyncSession] = None) -> WalletEntry:
        if session is not None:
            async with self.locks.hold(player_id):
                return await self.db.add_wallet_entry_atomic(
                    session, player_id, amount, kind, reason, tournament_id
                )

        async def append_once():
            async with self.locks.hold(player_id):
                async with self.db.transaction() as s:
                    return await self.db.add_wallet_entry_atomic(
                        s, player_id, amount, kind, reason, tournament_id
                    )

        async with storage_errors(f"wallet {kind.value}", self.logger):
            return await self.execute_with_retry(append_once, max_retries=Config.WALLET_MAX_RETRIES)

    async def deposit(self, player_id: int, amount: int, reason: str = "Deposit") -> WalletEntry:
        """Credit ``amount`` to a player's wallet."""
        if amount <= 0:
            raise ValueError(f"Deposit amount must be positive, got {amount}")
        entry = await self._append(player_id, amount, LedgerEntryKind.DEPOSIT, reason)
        self.logger.info(f"Deposited {amount} for player {player_id} (balance {entry.balance_after})")
        return entry

    async def debit_entry_fee(self, player_id: int, tournament_id: int, amount: int,
                              session: Optional[AsyncSession] = None) -> WalletEntry:
        """
        Charge a tournament entry fee.

        Raises:
            InsufficientBalance: If the ledger sum is lower than ``amount``.
                Nothing is written in that case.
        """
        if amount <= 0:
            raise ValueError(f"Entry fee must be positive, got {amount}")
        entry = await self._append(
            player_id, -amount, LedgerEntryKind.ENTRY_FEE,
            f"Entry fee for tournament {tournament_id}", tournament_id, session
        )
        self.logger.info(f"Charged entry fee {amount} to player {player_id} for tournament {tournament_id}")
        return entry

    async def credit_prize(self, player_id: int, tournament_id: int, amount: int, position: int,
                           session: Optional[AsyncSession] = None) -> WalletEntry:
        """Credit the prize for ``position`` in a tournament."""
        if amount <= 0:
            raise ValueError(f"Prize amount must be positive, got {amount}")
        entry = await self._append(
            player_id, amount, LedgerEntryKind.PRIZE,
            f"Prize for position {position} in tournament {tournament_id}", tournament_id, session
        )
        self.logger.info(f"Credited prize {amount} to player {player_id} (position {position}, tournament {tournament_id})")
        return entry

    async def refund_entry_fee(self, player_id: int, tournament_id: int, amount: int,
                               session: Optional[AsyncSession] = None) -> WalletEntry:
        """Compensating credit for an entry fee charged earlier."""
        if amount <= 0:
            raise ValueError(f"Refund amount must be positive, got {amount}")
        entry = await self._append(
            player_id, amount, LedgerEntryKind.REFUND,
            f"Refund of entry fee for tournament {tournament_id}", tournament_id, session
        )
        self.logger.info(f"Refunded {amount} to player {player_id} for tournament {tournament_id}")
        return entry

    async def get_balance(self, player_id: int) -> int:
        """Ledger sum for a player."""
        async with storage_errors("read wallet balance", self.logger):
            return await self.db.get_wallet_balance(player_id)

    async def get_history(self, player_id: int, limit: int = 20) -> List[WalletEntry]:
        async with storage_errors("read wallet history", self.logger):
            return await self.db.get_wallet_history(player_id, limit)

    async def verify_balance_integrity(self, player_id: int) -> dict:
        async with storage_errors("verify wallet", self.logger):
            result = await self.db.verify_wallet_balance_integrity(player_id)
        if not result['integrity_check']:
            self.logger.warning(f"Wallet integrity check failed for player {player_id}: {result}")
        return result
