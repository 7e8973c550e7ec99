"""
Match & Standings Recorder

Appends Match rows while a tournament is in progress and validates and
persists final standings when it concludes. Everything here is read-only
once the tournament has concluded.

Standings are a list of dicts ``{"player_id": int, "position": int}``;
positions must be exactly 1..N for N winners.
"""

from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.database.models import Match, Tournament, TournamentStatus, TournamentWinner
from tourney.utils.exceptions import InvalidStandings, TournamentStateError
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)


class MatchOperations:
    """Match recording and standings persistence for tournaments."""

    def __init__(self, database):
        """Initialize with database instance"""
        self.db = database
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new transaction.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session

    # ============================================================================
    # Matches
    # ============================================================================

    async def record_match(self, tournament_id: int, name: str,
                           session: Optional[AsyncSession] = None) -> Match:
        """
        Append a match to a tournament that is in progress.

        Raises:
            TournamentStateError: If the tournament is not IN_PROGRESS
            ValueError: If the name is blank
        """
        if not name or not name.strip():
            raise ValueError("Match name is required")

        async with self._get_session_context(session) as s:
            tournament = await self.db.get_tournament(tournament_id, session=s)
            if tournament.status != TournamentStatus.IN_PROGRESS:
                raise TournamentStateError(tournament_id, tournament.status.name, "record a match for")

            match = Match(tournament_id=tournament_id, name=name.strip())
            s.add(match)
            await s.flush()
            await s.refresh(match)

        self.logger.info(f"Recorded match {match.id} '{match.name}' for tournament {tournament_id}")
        return match

    async def list_matches(self, tournament_id: int) -> List[Match]:
        """Matches of a tournament in creation order."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Match)
                .where(Match.tournament_id == tournament_id)
                .order_by(Match.created_at, Match.id)
            )
            return list(result.scalars().all())

    async def count_matches(self, tournament_id: int, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count(Match.id)).where(Match.tournament_id == tournament_id)
        )
        return result.scalar_one()

    # ============================================================================
    # Standings
    # ============================================================================

    def validate_standings(self, standings: List[Dict], participant_ids: Iterable[int]) -> None:
        """
        Validate final positions.

        Positions must be integers forming exactly {1..N} for N entries, no
        player may appear twice, and every player must have taken part in
        the tournament.
        """
        if not standings:
            raise InvalidStandings("at least one winner is required")

        for i, entry in enumerate(standings):
            if "player_id" not in entry:
                raise InvalidStandings(f"missing 'player_id' in entry {i}")
            if "position" not in entry:
                raise InvalidStandings(f"missing 'position' in entry {i}")

        positions = [entry["position"] for entry in standings]
        if not all(isinstance(p, int) and not isinstance(p, bool) and p > 0 for p in positions):
            raise InvalidStandings("positions must be positive integers")

        if len(set(positions)) != len(positions):
            repeated = sorted({p for p in positions if positions.count(p) > 1})
            raise InvalidStandings(f"position(s) {repeated} given more than once")

        expected = set(range(1, len(standings) + 1))
        if set(positions) != expected:
            missing = sorted(expected - set(positions))
            raise InvalidStandings(
                f"positions must be 1..{len(standings)} without gaps (missing {missing})"
            )

        player_ids = [entry["player_id"] for entry in standings]
        if len(set(player_ids)) != len(player_ids):
            raise InvalidStandings("a player appears more than once")

        outsiders = sorted(set(player_ids) - set(participant_ids))
        if outsiders:
            raise InvalidStandings(f"player(s) {outsiders} did not take part in the tournament")

    async def record_winners(self, session: AsyncSession, tournament: Tournament, standings: List[Dict],
                             prizes: Mapping[int, int]) -> List[TournamentWinner]:
        """Insert winner rows (session-aware); standings must already be validated."""
        winners = []
        for entry in sorted(standings, key=lambda e: e["position"]):
            winner = TournamentWinner(
                tournament_id=tournament.id,
                player_id=entry["player_id"],
                position=entry["position"],
                prize_amount=prizes.get(entry["position"], 0)
            )
            session.add(winner)
            winners.append(winner)
        await session.flush()
        self.logger.info(f"Recorded {len(winners)} winners for tournament {tournament.id}")
        return winners

    async def get_standings(self, tournament_id: int) -> List[TournamentWinner]:
        """Winners of a tournament ordered by position."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TournamentWinner)
                .where(TournamentWinner.tournament_id == tournament_id)
                .order_by(TournamentWinner.position)
            )
            return list(result.scalars().all())
