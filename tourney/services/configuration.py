"""
Runtime configuration for the tournament engine.

Organizers can override the static ``Config`` defaults per deployment:
team sizes, the placement search budget and the default prize table. Values
live in the ``configurations`` table as JSON, are cached in memory, and every
change leaves an ``AuditLog`` row. Unknown keys are stored as given; known
keys are validated before anything is written.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional
from sqlalchemy import select
from tourney.services.base import BaseService
from tourney.database.models import Configuration, AuditLog
from tourney.config import Config

logger = logging.getLogger(__name__)

TEAM_SIZE_KEY = 'formation.team_size'
MIN_TEAM_SIZE_KEY = 'formation.min_team_size'
SEARCH_BUDGET_KEY = 'formation.search_budget'
PRIZE_DISTRIBUTION_KEY = 'prizes.default_distribution'


def _team_size(value: Any) -> int:
    size = int(value)
    if not 1 <= size <= Config.MAX_TEAM_SIZE:
        raise ValueError(f"team size must be between 1 and {Config.MAX_TEAM_SIZE}, got {size}")
    return size


def _positive_int(value: Any) -> int:
    number = int(value)
    if number < 1:
        raise ValueError(f"expected a positive integer, got {number}")
    return number


def _prize_table(value: Any) -> Dict[str, int]:
    if not isinstance(value, dict):
        raise ValueError("prize distribution must be a mapping of position -> amount")
    table = {}
    for position, amount in value.items():
        position, amount = int(position), int(amount)
        if position < 1 or amount < 0:
            raise ValueError(f"invalid prize entry {position}: {amount}")
        table[str(position)] = amount  # JSON object keys are strings
    return table


VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    TEAM_SIZE_KEY: _team_size,
    MIN_TEAM_SIZE_KEY: _team_size,
    SEARCH_BUDGET_KEY: _positive_int,
    PRIZE_DISTRIBUTION_KEY: _prize_table,
}


class ConfigurationService(BaseService):
    """Cached, audited runtime settings backed by the configurations table."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self._cache: Dict[str, Any] = {}

    async def load_all(self):
        """Replace the cache with every readable, valid row in the database."""
        fresh = {}
        async with self.get_session() as session:
            rows = (await session.execute(select(Configuration))).scalars().all()

        for row in rows:
            try:
                fresh[row.key] = self._normalize(row.key, json.loads(row.value))
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON for config key '{row.key}', skipping")
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring stored value for '{row.key}': {e}")

        self._cache = fresh
        logger.info(f"Loaded {len(self._cache)} configuration parameters")

    @staticmethod
    def _normalize(key: str, value: Any) -> Any:
        validator = VALIDATORS.get(key)
        return validator(value) if validator else value

    def get(self, key: str, default: Any = None) -> Any:
        return self._cache.get(key, default)

    async def set(self, key: str, value: Any, actor_id: Optional[int] = None):
        """
        Validate, persist and cache one setting.

        Args:
            key: Dotted configuration key, e.g. 'formation.team_size'
            value: JSON-serializable value
            actor_id: Organizer id recorded in the audit trail

        Raises:
            ValueError: The value is not acceptable for a known key, or the
                minimum team size would exceed the team size
        """
        try:
            value = self._normalize(key, value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for '{key}': {e}") from e

        team_size = value if key == TEAM_SIZE_KEY else self.team_size()
        min_team_size = value if key == MIN_TEAM_SIZE_KEY else self.min_team_size()
        if key in (TEAM_SIZE_KEY, MIN_TEAM_SIZE_KEY) and min_team_size > team_size:
            raise ValueError(f"Minimum team size {min_team_size} exceeds team size {team_size}")

        async with self.get_session() as session:
            row = await session.scalar(select(Configuration).where(Configuration.key == key))
            old_value = self._decode_for_audit(row.value) if row else None
            if row:
                row.value = json.dumps(value)
            else:
                session.add(Configuration(key=key, value=json.dumps(value)))

            session.add(AuditLog(
                actor_id=actor_id,
                action='config_set',
                details=json.dumps({'key': key, 'old_value': old_value, 'new_value': value})
            ))

        self._cache[key] = value
        logger.info(f"Configuration '{key}' set to {value!r} by {actor_id}")

    async def reset(self, key: str, actor_id: Optional[int] = None) -> bool:
        """Drop an override so the static default applies again. Returns False if none existed."""
        async with self.get_session() as session:
            row = await session.scalar(select(Configuration).where(Configuration.key == key))
            if row is None:
                return False
            session.add(AuditLog(
                actor_id=actor_id,
                action='config_reset',
                details=json.dumps({'key': key, 'old_value': self._decode_for_audit(row.value)})
            ))
            await session.delete(row)

        self._cache.pop(key, None)
        logger.info(f"Configuration '{key}' reset to default by {actor_id}")
        return True

    @staticmethod
    def _decode_for_audit(raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {"error": "invalid JSON", "raw": raw}

    def list_all(self) -> Dict[str, Any]:
        return self._cache.copy()

    def get_by_category(self, category: str) -> Dict[str, Any]:
        """Settings under one dotted prefix, e.g. 'formation', keyed without the prefix."""
        prefix = f"{category}."
        return {
            key[len(prefix):]: value
            for key, value in self._cache.items()
            if key.startswith(prefix)
        }

    # Typed accessors for the values the engine reads

    def team_size(self) -> int:
        return self.get(TEAM_SIZE_KEY, Config.DEFAULT_TEAM_SIZE)

    def min_team_size(self) -> int:
        return self.get(MIN_TEAM_SIZE_KEY, Config.DEFAULT_MIN_TEAM_SIZE)

    def search_budget(self) -> int:
        return self.get(SEARCH_BUDGET_KEY, Config.PARTITION_SEARCH_BUDGET)

    def prize_distribution(self) -> Dict[int, int]:
        table = self.get(PRIZE_DISTRIBUTION_KEY)
        if table is None:
            return Config.get_default_prize_distribution()
        return {int(position): amount for position, amount in table.items()}
