"""
Player Operations Module

Business logic for the Player lifecycle as far as the engine needs it:

- onboard_player(): atomic User + Player creation, idempotent on username
- ban_player() / unban_player(): moderation
- deactivate_player(): players are never deleted, only deactivated
- set_skill_category(): four-tier skill classification, read by team formation
- get_player_stats(): all-time or per-season tournament statistics

A ban or deactivation also drops the player's live vote so it cannot shape
any team formed afterwards.
"""

from contextlib import asynccontextmanager
from typing import Optional, Union

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.database.models import Player, PlayerStats, SkillCategory, User, Vote
from tourney.services.base import storage_errors
from tourney.services.player_stats_sync import PlayerStatsService
from tourney.utils.exceptions import PlayerNotFound
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)


class PlayerOperations:
    """
    Business logic operations for Player management.

    Every write runs in its own transaction unless the caller passes a session.
    """

    def __init__(self, database, stats_service: Optional[PlayerStatsService] = None):
        """Initialize with database instance"""
        self.db = database
        self.stats = stats_service or PlayerStatsService()
        self.logger = logger

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None, operation: str = "player update"):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates and manages a new transaction whose storage failures
        surface as StorageUnavailable.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            async with storage_errors(operation, self.logger), self.db.transaction() as new_session:
                yield new_session

    async def onboard_player(
        self,
        username: str,
        display_name: Optional[str] = None,
        skill_category: Union[SkillCategory, str] = SkillCategory.NOOB,
        profile_image_url: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> Player:
        """
        Get the Player of ``username`` or create User and Player together.

        Features:
        - Idempotent: onboarding the same username twice returns the same Player
        - Atomic: User and Player are created in one transaction

        Raises:
            ValueError: If the username is blank
        """
        username = (username or "").strip()
        if not username:
            raise ValueError("Username is required")
        if not isinstance(skill_category, SkillCategory):
            skill_category = SkillCategory(skill_category)

        async with self._get_session_context(session, "onboard player") as s:
            result = await s.execute(
                select(Player).join(User, User.id == Player.user_id).where(User.username == username)
            )
            existing = result.scalar_one_or_none()
            if existing:
                self.logger.debug(f"Found existing Player {existing.id} for user '{username}'")
                return existing

            user = await s.scalar(select(User).where(User.username == username))
            if user is None:
                user = User(username=username, display_name=display_name or username, balance=0)
                s.add(user)
                await s.flush()

            player = Player(
                user_id=user.id,
                display_name=display_name or username,
                skill_category=skill_category,
                profile_image_url=profile_image_url
            )
            s.add(player)
            await s.flush()
            await s.refresh(player)

        self.logger.info(f"Onboarded Player {player.id} for user '{username}'")
        return player

    async def get_player(self, player_id: int) -> Player:
        async with storage_errors("read player", self.logger):
            player = await self.db.get_player(player_id)
        if player is None:
            raise PlayerNotFound(player_id)
        return player

    async def _load_for_update(self, session: AsyncSession, player_id: int) -> Player:
        player = await session.get(Player, player_id)
        if player is None:
            raise PlayerNotFound(player_id)
        return player

    async def ban_player(self, player_id: int) -> Player:
        """Ban a player and drop their live vote."""
        async with self._get_session_context(operation="ban player") as session:
            player = await self._load_for_update(session, player_id)
            player.is_banned = True
            await session.execute(delete(Vote).where(Vote.player_id == player_id))
        self.logger.info(f"Banned player {player_id}")
        return player

    async def unban_player(self, player_id: int) -> Player:
        async with self._get_session_context(operation="unban player") as session:
            player = await self._load_for_update(session, player_id)
            player.is_banned = False
        self.logger.info(f"Unbanned player {player_id}")
        return player

    async def deactivate_player(self, player_id: int) -> Player:
        """Deactivate a player (soft delete) and drop their live vote."""
        async with self._get_session_context(operation="deactivate player") as session:
            player = await self._load_for_update(session, player_id)
            player.is_active = False
            await session.execute(delete(Vote).where(Vote.player_id == player_id))
        self.logger.info(f"Deactivated player {player_id}")
        return player

    async def set_skill_category(self, player_id: int, skill_category: Union[SkillCategory, str]) -> Player:
        if not isinstance(skill_category, SkillCategory):
            skill_category = SkillCategory(skill_category)
        async with self._get_session_context(operation="set skill category") as session:
            player = await self._load_for_update(session, player_id)
            player.skill_category = skill_category
        self.logger.info(f"Set skill category of player {player_id} to {skill_category.value}")
        return player

    async def get_player_stats(self, player_id: int, season_id: Optional[int] = None) -> Optional[PlayerStats]:
        """All-time statistics, or one season's when ``season_id`` is given; None before any result."""
        async with storage_errors("read player stats", self.logger):
            async with self.db.get_session() as session:
                return await self.stats.get_stats(session, player_id, season_id)
