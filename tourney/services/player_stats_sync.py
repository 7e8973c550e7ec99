"""
Player Stats Synchronization Service

Folds a concluded tournament into each participant's statistics. Every player
has one all-time row (``season_id`` NULL) and one row per season they played
in; both are updated in the caller's transaction.
"""

from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.database.models import PlayerStats, Tournament
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)

PODIUM_POSITIONS = 3


class PlayerStatsService:
    """Service for updating player statistics when a tournament concludes."""

    async def get_or_create_stats(self, session: AsyncSession, player_id: int,
                                  season_id: Optional[int]) -> PlayerStats:
        result = await session.execute(
            select(PlayerStats).where(
                PlayerStats.player_id == player_id,
                PlayerStats.season_id.is_(None) if season_id is None else PlayerStats.season_id == season_id
            )
        )
        stats = result.scalar_one_or_none()
        if stats is None:
            stats = PlayerStats(
                player_id=player_id,
                season_id=season_id,
                tournaments_played=0,
                matches_played=0,
                wins=0,
                podiums=0
            )
            session.add(stats)
        return stats

    async def record_tournament_result(self, session: AsyncSession, tournament: Tournament,
                                       participant_ids: Iterable[int], standings: List[Dict],
                                       match_count: int = 0) -> None:
        """
        Update statistics of every participant of a concluded tournament.

        Args:
            session: Database session (caller handles commit)
            tournament: The tournament being concluded
            participant_ids: Players who were on a team when it concluded
            standings: Validated list of {"player_id", "position"} dicts
            match_count: Number of matches recorded for the tournament
        """
        positions = {entry["player_id"]: entry["position"] for entry in standings}
        scopes = [None] if tournament.season_id is None else [None, tournament.season_id]

        participants = sorted(set(participant_ids))
        for player_id in participants:
            position = positions.get(player_id)
            for season_id in scopes:
                stats = await self.get_or_create_stats(session, player_id, season_id)
                stats.tournaments_played += 1
                stats.matches_played += match_count
                if position == 1:
                    stats.wins += 1
                if position is not None and position <= PODIUM_POSITIONS:
                    stats.podiums += 1

        await session.flush()
        logger.info(f"Updated stats for {len(participants)} players of tournament {tournament.id}")

    async def get_stats(self, session: AsyncSession, player_id: int,
                        season_id: Optional[int] = None) -> Optional[PlayerStats]:
        """All-time stats when ``season_id`` is None, otherwise that season's row."""
        result = await session.execute(
            select(PlayerStats).where(
                PlayerStats.player_id == player_id,
                PlayerStats.season_id.is_(None) if season_id is None else PlayerStats.season_id == season_id
            )
        )
        return result.scalar_one_or_none()
