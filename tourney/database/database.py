from typing import Optional, List
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select, update, func
from contextlib import asynccontextmanager

from tourney.config import Config
from tourney.database.models import (
    Base, User, Player, Tournament, TournamentStatus, WalletEntry, LedgerEntryKind
)
from tourney.services.locks import KeyedLockRegistry
from tourney.utils.exceptions import InsufficientBalance, PlayerNotFound, TournamentNotFound
from tourney.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None
        self._lock_registries = {}

    @property
    def session_factory(self):
        return self.async_session

    def lock_registry(self, name: str) -> KeyedLockRegistry:
        """
        The per-key lock registry called ``name`` for this database.

        Every operations object built on the same Database shares it, so a
        deposit and a start-of-tournament debit for one player never interleave.
        """
        if name not in self._lock_registries:
            self._lock_registries[name] = KeyedLockRegistry(name)
        return self._lock_registries[name]

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure. A lifecycle transition performs
        every one of its writes (status flip, teams, ledger entries) inside a
        single ``transaction()`` so a failure leaves no partial state.

        Usage:
            async with db.transaction() as session:
                await db.add_wallet_entry_atomic(session, ...)
                session.add(team)
                # All operations commit together here

        Exceptions must be allowed to propagate out of the context for
        rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # Player and tournament lookups
    async def get_player(self, player_id: int, session: Optional[AsyncSession] = None) -> Optional[Player]:
        """Get a player by id, optionally inside a caller's session"""
        if session is not None:
            return await session.get(Player, player_id)
        async with self.get_session() as s:
            return await s.get(Player, player_id)

    async def get_tournament(self, tournament_id: int, session: Optional[AsyncSession] = None) -> Tournament:
        """Get a tournament by id or raise TournamentNotFound"""
        if session is not None:
            tournament = await session.get(Tournament, tournament_id, populate_existing=True)
        else:
            async with self.get_session() as s:
                tournament = await s.get(Tournament, tournament_id)
        if tournament is None:
            raise TournamentNotFound(tournament_id)
        return tournament

    async def compare_and_set_status(self, session: AsyncSession, tournament_id: int,
                                     expected: TournamentStatus, new_status: TournamentStatus,
                                     **values) -> bool:
        """
        Move a tournament from ``expected`` to ``new_status`` (session-aware).

        The status check happens inside the UPDATE itself, so of two callers
        racing on the same transition exactly one sees a row count of 1.
        Extra column values (transition timestamps) are written in the same
        statement.
        """
        result = await session.execute(
            update(Tournament)
            .where(Tournament.id == tournament_id, Tournament.status == expected)
            .values(status=new_status, **values)
        )
        return result.rowcount == 1

    # ============================================================================
    # Wallet ledger operations
    # ============================================================================

    async def add_wallet_entry_atomic(self, session: AsyncSession, player_id: int, amount: int,
                                      kind: LedgerEntryKind, reason: str,
                                      tournament_id: Optional[int] = None) -> WalletEntry:
        """
        Append a wallet ledger entry with atomic balance tracking (session-aware).

        The balance is always the ledger sum; it is read under the player row
        lock, checked, and the new entry is appended with the next per-player
        sequence number. A concurrent append that picked the same sequence
        fails on the (player_id, sequence) unique constraint and can be retried.
        The owning user's cached balance is then rewritten from the ledger.
        """
        # NOTE: On SQLite, with_for_update() relies on the database-level write lock,
        # not true row-level locking.
        player_result = await session.execute(
            select(Player).where(Player.id == player_id).with_for_update()
        )
        player = player_result.scalar_one_or_none()
        if player is None:
            raise PlayerNotFound(player_id)

        totals = await session.execute(
            select(
                func.coalesce(func.sum(WalletEntry.amount), 0),
                func.coalesce(func.max(WalletEntry.sequence), 0)
            ).where(WalletEntry.player_id == player_id)
        )
        balance, last_sequence = totals.one()

        new_balance = balance + amount

        # Prevent negative balances for spending transactions
        if amount < 0 and new_balance < 0:
            raise InsufficientBalance(player_id, balance, -amount)

        entry = WalletEntry(
            player_id=player_id,
            user_id=player.user_id,
            sequence=last_sequence + 1,
            amount=amount,
            kind=kind,
            balance_after=new_balance,
            reason=reason,
            tournament_id=tournament_id
        )
        session.add(entry)
        await session.flush()  # Use flush to get ID, let caller handle commit

        # Refresh the cached projection from the ledger
        await session.execute(
            update(User).where(User.id == player.user_id).values(balance=new_balance)
        )

        return entry

    async def get_wallet_balance(self, player_id: int, session: Optional[AsyncSession] = None) -> int:
        """Get the current wallet balance for a player (sum of ledger entries)"""
        query = select(func.coalesce(func.sum(WalletEntry.amount), 0)).where(WalletEntry.player_id == player_id)
        if session is not None:
            return (await session.execute(query)).scalar_one()
        async with self.get_session() as s:
            return (await s.execute(query)).scalar_one()

    async def get_wallet_history(self, player_id: int, limit: int = 20) -> List[WalletEntry]:
        """Get wallet ledger history for a player, newest first"""
        async with self.get_session() as session:
            result = await session.execute(
                select(WalletEntry)
                .where(WalletEntry.player_id == player_id)
                .order_by(WalletEntry.sequence.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def verify_wallet_balance_integrity(self, player_id: int) -> dict:
        """Verify wallet integrity by comparing the user's cached balance with the ledger"""
        async with self.get_session() as session:
            player = await session.get(Player, player_id)
            if player is None:
                raise PlayerNotFound(player_id)

            user_result = await session.execute(
                select(User.balance).where(User.id == player.user_id)
            )
            cached_balance = user_result.scalar_one_or_none() or 0

            calculated_balance = await self.get_wallet_balance(player_id, session=session)

            last_entry_result = await session.execute(
                select(WalletEntry.balance_after)
                .where(WalletEntry.player_id == player_id)
                .order_by(WalletEntry.sequence.desc())
                .limit(1)
            )
            last_balance_after = last_entry_result.scalar_one_or_none() or 0

            return {
                'player_id': player_id,
                'cached_balance': cached_balance,
                'calculated_balance': calculated_balance,
                'last_balance_after': last_balance_after,
                'integrity_check': cached_balance == calculated_balance == last_balance_after
            }
