"""
Shared fixtures for the tournament engine tests.

Each test gets a fresh file-backed SQLite database under ``tmp_path`` and a
controllable clock, so voting windows can be crossed without sleeping.
"""

import os
from datetime import datetime, timedelta

# Keep test runs from writing daily log files; must precede tourney imports
os.environ.setdefault("LOG_TO_FILE", "false")

import pytest
import pytest_asyncio

from tourney.database.database import Database
from tourney.operations.player_operations import PlayerOperations
from tourney.operations.tournament_operations import TournamentOperations
from tourney.operations.vote_operations import VoteOperations
from tourney.operations.wallet_operations import WalletOperations


class FakeClock:
    """Callable clock returning a fixed naive-UTC time until advanced."""

    def __init__(self, now: datetime = datetime(2026, 3, 1, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'tourney_test.db'}")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def player_ops(db):
    return PlayerOperations(db)


@pytest.fixture
def wallet(db):
    return WalletOperations(db)


@pytest.fixture
def votes(db, clock):
    return VoteOperations(db, clock=clock)


@pytest.fixture
def lifecycle(db, clock, votes, wallet):
    return TournamentOperations(db, clock=clock, vote_ops=votes, wallet_ops=wallet)


@pytest.fixture
def make_players(player_ops):
    """Onboard ``count`` players and return their ids in creation order."""
    async def _make(count: int, prefix: str = "player"):
        players = [await player_ops.onboard_player(f"{prefix}{i}") for i in range(1, count + 1)]
        return [player.id for player in players]
    return _make


@pytest.fixture
def open_tournament(lifecycle, clock):
    """Create a tournament and open its voting window around the current clock time."""
    async def _open(name: str = "Spring Cup", team_size: int = 2, min_team_size: int = 1,
                    entry_fee: int = 0, **kwargs):
        tournament = await lifecycle.create_tournament(
            name=name,
            start_date=clock() + timedelta(days=7),
            entry_fee=entry_fee,
            team_size=team_size,
            min_team_size=min_team_size,
            **kwargs
        )
        return await lifecycle.open_voting(
            tournament.id,
            vote_start=clock() - timedelta(hours=1),
            vote_end=clock() + timedelta(days=1)
        )
    return _open


@pytest.fixture
def teams_formed(lifecycle):
    """Close voting on an open tournament and form its teams."""
    async def _form(tournament_id: int):
        await lifecycle.close_voting_window(tournament_id)
        return await lifecycle.form_teams(tournament_id)
    return _form
