"""
Tests for player onboarding and moderation.
"""

import pytest

from tourney.database.models import SkillCategory, VoteKind
from tourney.utils.exceptions import PlayerNotFound


@pytest.mark.asyncio
async def test_onboarding_is_idempotent(player_ops):
    first = await player_ops.onboard_player("ace", display_name="Ace", skill_category="pro")
    second = await player_ops.onboard_player("ace")

    assert first.id == second.id
    assert second.display_name == "Ace"
    assert second.skill_category == SkillCategory.PRO
    assert second.is_eligible


@pytest.mark.asyncio
async def test_onboarding_requires_username(player_ops):
    with pytest.raises(ValueError):
        await player_ops.onboard_player("  ")


@pytest.mark.asyncio
async def test_ban_drops_live_vote(player_ops, votes, open_tournament, make_players):
    tournament = await open_tournament()
    (alice,) = await make_players(1)
    await votes.submit_vote(alice, tournament.id, VoteKind.SOLO)

    banned = await player_ops.ban_player(alice)

    assert banned.is_banned
    assert not banned.is_eligible
    assert await votes.get_live_vote(alice) is None

    unbanned = await player_ops.unban_player(alice)
    assert unbanned.is_eligible


@pytest.mark.asyncio
async def test_deactivate_keeps_the_player(player_ops, make_players):
    (alice,) = await make_players(1)

    await player_ops.deactivate_player(alice)
    player = await player_ops.get_player(alice)

    assert player is not None
    assert not player.is_active


@pytest.mark.asyncio
async def test_set_skill_category(player_ops, make_players):
    (alice,) = await make_players(1)

    updated = await player_ops.set_skill_category(alice, SkillCategory.ULTRA_PRO)

    assert updated.skill_category == SkillCategory.ULTRA_PRO


@pytest.mark.asyncio
async def test_new_player_has_no_stats(player_ops, make_players):
    (alice,) = await make_players(1)

    assert await player_ops.get_player_stats(alice) is None
    assert await player_ops.get_player_stats(alice, season_id=1) is None


@pytest.mark.asyncio
async def test_unknown_player(player_ops):
    with pytest.raises(PlayerNotFound):
        await player_ops.get_player(12345)
    with pytest.raises(PlayerNotFound):
        await player_ops.ban_player(12345)
