"""
Vote Ledger Operations

Accepts, validates and retires player preference votes. A player holds at
most one live vote across all tournaments: submitting again (for the same or
another tournament) replaces the previous row inside one transaction.

Validation order for submit_vote():
1. kind/target shape (InvalidTarget)
2. tournament accepting votes (OutsideVotingWindow)
3. submitting player eligible (PlayerNotEligible)
4. target eligible for this tournament (InvalidTarget)
5. submitter not already on a team here (PlayerAlreadyOnTeam)
"""

from typing import List, Optional, Union

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.data_models.formation import PreferenceRecord
from tourney.database.models import (
    Player, Tournament, TournamentStatus, Vote, VoteKind, TeamMember
)
from tourney.services.base import BaseService, storage_errors
from tourney.services.locks import KeyedLockRegistry
from tourney.utils.clock import Clock, utcnow
from tourney.utils.exceptions import (
    InvalidTarget, OutsideVotingWindow, PlayerAlreadyOnTeam, PlayerNotEligible,
    PlayerNotFound, TournamentStateError
)
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)

# Tournaments whose teams are fixed; their members cannot be picked elsewhere
RUNNING_STATUSES = (TournamentStatus.TEAMS_FORMED, TournamentStatus.IN_PROGRESS)


class VoteOperations(BaseService):
    """Vote ledger for all tournaments."""

    def __init__(self, database, clock: Clock = utcnow, locks: Optional[KeyedLockRegistry] = None):
        super().__init__(database.session_factory)
        self.db = database
        self.clock = clock
        self.locks = locks or database.lock_registry('vote')
        self.logger = logger

    async def submit_vote(self, player_id: int, tournament_id: int, kind: Union[VoteKind, str],
                          target_player_id: Optional[int] = None) -> Vote:
        """
        Record a player's preference for a tournament, replacing any live vote.

        Args:
            player_id: Submitting player
            tournament_id: Tournament being voted in
            kind: PAIR, EXCLUDE or SOLO (enum or its value)
            target_player_id: Required for PAIR/EXCLUDE, forbidden for SOLO

        Returns:
            The newly stored Vote
        """
        kind = kind if isinstance(kind, VoteKind) else VoteKind(kind)

        if kind.requires_target and target_player_id is None:
            raise InvalidTarget(player_id, None, f"a {kind.value} vote needs a target player")
        if not kind.requires_target and target_player_id is not None:
            raise InvalidTarget(player_id, target_player_id, "a solo vote cannot name a player")

        async def write_vote():
            async with self.db.transaction() as session:
                return await self._write_vote(session, player_id, tournament_id, kind, target_player_id)

        async with self.locks.hold(player_id):
            async with storage_errors("submit vote", self.logger):
                vote = await self.execute_with_retry(write_vote)

        self.logger.info(
            f"Player {player_id} voted {kind.value}"
            f"{f' -> {target_player_id}' if target_player_id else ''} in tournament {tournament_id}"
        )
        return vote

    async def _write_vote(self, session: AsyncSession, player_id: int, tournament_id: int,
                          kind: VoteKind, target_player_id: Optional[int]) -> Vote:
        tournament = await self.db.get_tournament(tournament_id, session=session)
        now = self.clock()
        self._check_window(tournament, now)

        player = await session.get(Player, player_id)
        if player is None:
            raise PlayerNotFound(player_id)
        if not player.is_eligible:
            raise PlayerNotEligible(player_id, "banned" if player.is_banned else "deactivated")

        if kind.requires_target:
            await self._check_target(session, player_id, target_player_id, tournament_id)

        on_team = await session.execute(
            select(TeamMember.id).where(
                TeamMember.player_id == player_id,
                TeamMember.tournament_id == tournament_id
            ).limit(1)
        )
        if on_team.scalar_one_or_none() is not None:
            raise PlayerAlreadyOnTeam(player_id, tournament_id)

        # One live vote per player: replace whatever was there
        await session.execute(delete(Vote).where(Vote.player_id == player_id))
        vote = Vote(
            player_id=player_id,
            tournament_id=tournament_id,
            kind=kind,
            target_player_id=target_player_id,
            vote_start=tournament.vote_start,
            vote_end=tournament.vote_end,
            created_at=now
        )
        session.add(vote)
        await session.flush()
        return vote

    @staticmethod
    def _check_window(tournament: Tournament, now) -> None:
        if tournament.status != TournamentStatus.VOTING_OPEN:
            raise OutsideVotingWindow(tournament.id, f"tournament is {tournament.status.value}")
        if tournament.vote_start is None or tournament.vote_end is None:
            raise OutsideVotingWindow(tournament.id, "voting window is not set")
        if now < tournament.vote_start:
            raise OutsideVotingWindow(tournament.id, f"voting opens at {tournament.vote_start}")
        if now > tournament.vote_end:
            raise OutsideVotingWindow(tournament.id, f"voting closed at {tournament.vote_end}")

    async def _check_target(self, session: AsyncSession, player_id: int, target_player_id: int,
                            tournament_id: int) -> None:
        if target_player_id == player_id:
            raise InvalidTarget(player_id, target_player_id, "you cannot choose yourself")

        target = await session.get(Player, target_player_id)
        if target is None:
            raise InvalidTarget(player_id, target_player_id, "no such player")
        if target.is_banned:
            raise InvalidTarget(player_id, target_player_id, "the player is banned")
        if not target.is_active:
            raise InvalidTarget(player_id, target_player_id, "the player is deactivated")

        live = await session.execute(select(Vote.tournament_id).where(Vote.player_id == target_player_id))
        target_tournament = live.scalar_one_or_none()
        if target_tournament is not None and target_tournament != tournament_id:
            raise InvalidTarget(player_id, target_player_id, "the player is voting in another tournament")

        busy = await session.execute(
            select(TeamMember.id)
            .join(Tournament, Tournament.id == TeamMember.tournament_id)
            .where(
                TeamMember.player_id == target_player_id,
                TeamMember.tournament_id != tournament_id,
                Tournament.status.in_(RUNNING_STATUSES)
            )
            .limit(1)
        )
        if busy.scalar_one_or_none() is not None:
            raise InvalidTarget(player_id, target_player_id, "the player is on a team in another tournament")

    async def close_window(self, tournament_id: int) -> Tournament:
        """
        Close voting for a tournament.

        Idempotent: a tournament already past VOTING_OPEN is returned unchanged.
        Closing a DRAFT tournament is a state error since voting never opened.
        """
        async with storage_errors("close voting", self.logger), self.db.transaction() as session:
            tournament = await self.db.get_tournament(tournament_id, session=session)
            if tournament.status == TournamentStatus.DRAFT:
                raise TournamentStateError(tournament_id, tournament.status.name, "close voting for")
            if tournament.status != TournamentStatus.VOTING_OPEN:
                self.logger.debug(f"Voting for tournament {tournament_id} already closed ({tournament.status.value})")
                return tournament

            closed = await self.db.compare_and_set_status(
                session, tournament_id, TournamentStatus.VOTING_OPEN, TournamentStatus.VOTING_CLOSED
            )
            tournament = await self.db.get_tournament(tournament_id, session=session)

        if closed:
            self.logger.info(f"Closed voting for tournament {tournament_id}")
        return tournament

    # ============================================================================
    # Reads and retirement
    # ============================================================================

    async def get_live_vote(self, player_id: int) -> Optional[Vote]:
        async with self.db.get_session() as session:
            result = await session.execute(select(Vote).where(Vote.player_id == player_id))
            return result.scalar_one_or_none()

    async def list_votes(self, tournament_id: int, session: Optional[AsyncSession] = None) -> List[Vote]:
        """Live votes of a tournament ordered by player id."""
        query = select(Vote).where(Vote.tournament_id == tournament_id).order_by(Vote.player_id)
        if session is not None:
            return list((await session.execute(query)).scalars().all())
        async with self.db.get_session() as s:
            return list((await s.execute(query)).scalars().all())

    async def get_preference_records(self, tournament_id: int,
                                     session: Optional[AsyncSession] = None) -> List[PreferenceRecord]:
        votes = await self.list_votes(tournament_id, session=session)
        return [
            PreferenceRecord(player_id=v.player_id, kind=v.kind, target_id=v.target_player_id)
            for v in votes
        ]

    async def retire_votes(self, tournament_id: int, session: AsyncSession) -> int:
        """Delete the live votes of a finished tournament; returns how many were removed."""
        result = await session.execute(delete(Vote).where(Vote.tournament_id == tournament_id))
        if result.rowcount:
            self.logger.info(f"Retired {result.rowcount} votes for tournament {tournament_id}")
        return result.rowcount
