"""
Tests for the match and standings recorder.
"""

import pytest

from tourney.database.match_operations import MatchOperations
from tourney.database.models import VoteKind
from tourney.utils.exceptions import InvalidStandings


@pytest.fixture
def recorder(db):
    return MatchOperations(db)


def standings(*pairs):
    return [{"player_id": player_id, "position": position} for player_id, position in pairs]


class TestValidateStandings:

    def test_contiguous_positions_are_accepted(self, recorder):
        recorder.validate_standings(standings((3, 2), (1, 1), (2, 3)), participant_ids=[1, 2, 3, 4])

    @pytest.mark.parametrize("entries, message", [
        ([], "at least one winner"),
        ([(1, 1), (2, 3)], "without gaps"),
        ([(1, 2), (2, 3)], "without gaps"),
        ([(1, 1), (2, 1)], "more than once"),
        ([(1, 1), (1, 2)], "appears more than once"),
        ([(1, 0)], "positive integers"),
        ([(1, "1")], "positive integers"),
        ([(9, 1)], "did not take part"),
    ])
    def test_invalid_standings(self, recorder, entries, message):
        with pytest.raises(InvalidStandings) as exc_info:
            recorder.validate_standings(standings(*entries), participant_ids=[1, 2, 3])

        assert message in str(exc_info.value)

    def test_missing_keys(self, recorder):
        with pytest.raises(InvalidStandings):
            recorder.validate_standings([{"player_id": 1}], participant_ids=[1])


@pytest.mark.asyncio
async def test_matches_are_listed_in_creation_order(lifecycle, votes, recorder, open_tournament,
                                                    make_players, teams_formed):
    tournament = await open_tournament()
    players = await make_players(2)
    for player_id in players:
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)
    await teams_formed(tournament.id)
    await lifecycle.start_tournament(tournament.id)

    for name in ("Quarterfinal", "Semifinal", "Final"):
        await recorder.record_match(tournament.id, name)

    matches = await recorder.list_matches(tournament.id)
    assert [m.name for m in matches] == ["Quarterfinal", "Semifinal", "Final"]

    with pytest.raises(ValueError):
        await recorder.record_match(tournament.id, "   ")
