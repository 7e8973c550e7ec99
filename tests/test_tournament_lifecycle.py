"""
Tests for the tournament lifecycle: team formation, start with fee
settlement, conclusion with prizes and cancellation with refunds.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from tourney.database.models import (
    AuditLog, LedgerEntryKind, PlayerStats, Team, TeamMember, TournamentStatus, TournamentWinner,
    SkillCategory, VoteKind, WalletEntry
)
from tourney.utils.exceptions import (
    CapacityViolation, InvalidStandings, StorageUnavailable, TournamentStateError
)


async def count_rows(db, model, **filters):
    async with db.get_session() as session:
        query = select(func.count()).select_from(model)
        for column, value in filters.items():
            query = query.where(getattr(model, column) == value)
        return (await session.execute(query)).scalar_one()


async def ledger_kinds(db, tournament_id):
    async with db.get_session() as session:
        result = await session.execute(
            select(WalletEntry.player_id, WalletEntry.kind, WalletEntry.amount)
            .where(WalletEntry.tournament_id == tournament_id)
            .order_by(WalletEntry.id)
        )
        return result.all()


# ============================================================================
# Opening and closing voting
# ============================================================================

@pytest.mark.asyncio
async def test_open_voting_requires_fee_and_window(lifecycle, clock):
    no_fee = await lifecycle.create_tournament("No Fee", clock())
    no_window = await lifecycle.create_tournament("No Window", clock(), entry_fee=10)

    with pytest.raises(ValueError):
        await lifecycle.open_voting(no_fee.id, clock(), clock() + timedelta(days=1))
    with pytest.raises(ValueError):
        await lifecycle.open_voting(no_window.id)

    assert (await lifecycle.get_tournament(no_fee.id)).status == TournamentStatus.DRAFT
    assert (await lifecycle.get_tournament(no_window.id)).status == TournamentStatus.DRAFT


@pytest.mark.asyncio
async def test_open_voting_twice_is_a_state_error(lifecycle, open_tournament):
    tournament = await open_tournament()

    with pytest.raises(TournamentStateError):
        await lifecycle.open_voting(tournament.id)


@pytest.mark.asyncio
async def test_transitions_are_audited(db, lifecycle, open_tournament):
    tournament = await open_tournament()
    await lifecycle.close_voting_window(tournament.id)
    await lifecycle.cancel_tournament(tournament.id)

    async with db.get_session() as session:
        entries = (await session.execute(select(AuditLog).order_by(AuditLog.id))).scalars().all()

    assert [e.action for e in entries] == ['tournament_transition', 'tournament_transition']
    assert '"to": "VOTING_OPEN"' in entries[0].details
    assert '"to": "CANCELLED"' in entries[1].details


# ============================================================================
# Team formation
# ============================================================================

@pytest.mark.asyncio
async def test_form_teams_honours_bonds_exclusions_and_solo(lifecycle, votes, open_tournament,
                                                          make_players, teams_formed):
    tournament = await open_tournament(team_size=2)
    a, b, c, d = await make_players(4)
    await votes.submit_vote(a, tournament.id, VoteKind.PAIR, b)
    await votes.submit_vote(b, tournament.id, VoteKind.PAIR, a)
    await votes.submit_vote(c, tournament.id, VoteKind.EXCLUDE, b)
    await votes.submit_vote(d, tournament.id, VoteKind.SOLO)

    partition = await teams_formed(tournament.id)

    assert partition.as_dict() == {1: [a, b], 2: [c, d]}
    stored = await lifecycle.get_tournament(tournament.id)
    assert stored.status == TournamentStatus.TEAMS_FORMED
    assert stored.teams_formed_at is not None


@pytest.mark.asyncio
async def test_form_teams_spreads_skill_tiers(lifecycle, votes, player_ops, open_tournament,
                                              make_players, teams_formed):
    tournament = await open_tournament(team_size=2)
    a, b, c, d = await make_players(4)
    for player_id, category in ((a, SkillCategory.NOOB), (b, SkillCategory.ULTRA_PRO),
                                (c, SkillCategory.PRO), (d, SkillCategory.ULTRA_NOOB)):
        await player_ops.set_skill_category(player_id, category)
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)

    partition = await teams_formed(tournament.id)

    # Snake draft b, c | a, d: the strongest player shares a team with the weakest
    assert partition.as_dict() == {1: [b, d], 2: [a, c]}


@pytest.mark.asyncio
async def test_form_teams_is_idempotent(db, lifecycle, votes, open_tournament, make_players, teams_formed):
    tournament = await open_tournament(team_size=2)
    players = await make_players(5)
    for player_id in players:
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)

    first = await teams_formed(tournament.id)
    second = await lifecycle.form_teams(tournament.id)

    assert first == second
    assert await count_rows(db, Team, tournament_id=tournament.id) == 3
    assert await count_rows(db, TeamMember, tournament_id=tournament.id) == 5


@pytest.mark.asyncio
async def test_concurrent_form_teams_produce_one_team_set(db, lifecycle, votes, open_tournament, make_players):
    tournament = await open_tournament(team_size=2)
    players = await make_players(4)
    for player_id in players:
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)
    await lifecycle.close_voting_window(tournament.id)

    first, second = await asyncio.gather(
        lifecycle.form_teams(tournament.id),
        lifecycle.form_teams(tournament.id),
    )

    assert first == second
    assert await count_rows(db, Team, tournament_id=tournament.id) == 2


@pytest.mark.asyncio
async def test_form_teams_requires_closed_voting(lifecycle, open_tournament):
    tournament = await open_tournament()

    with pytest.raises(TournamentStateError):
        await lifecycle.form_teams(tournament.id)


@pytest.mark.asyncio
async def test_capacity_violation_leaves_voting_closed(db, lifecycle, votes, open_tournament, make_players):
    tournament = await open_tournament(team_size=1)
    a, b = await make_players(2)
    await votes.submit_vote(a, tournament.id, VoteKind.PAIR, b)
    await votes.submit_vote(b, tournament.id, VoteKind.PAIR, a)
    await lifecycle.close_voting_window(tournament.id)

    with pytest.raises(CapacityViolation):
        await lifecycle.form_teams(tournament.id)

    assert (await lifecycle.get_tournament(tournament.id)).status == TournamentStatus.VOTING_CLOSED
    assert await count_rows(db, Team, tournament_id=tournament.id) == 0


@pytest.mark.asyncio
async def test_reopen_voting_to_correct_votes(lifecycle, votes, open_tournament, make_players):
    tournament = await open_tournament(team_size=1)
    a, b = await make_players(2)
    await votes.submit_vote(a, tournament.id, VoteKind.PAIR, b)
    await votes.submit_vote(b, tournament.id, VoteKind.PAIR, a)
    await lifecycle.close_voting_window(tournament.id)
    with pytest.raises(CapacityViolation):
        await lifecycle.form_teams(tournament.id)

    await lifecycle.reopen_voting(tournament.id)
    await votes.submit_vote(b, tournament.id, VoteKind.SOLO)
    await lifecycle.close_voting_window(tournament.id)
    partition = await lifecycle.form_teams(tournament.id)

    assert partition.as_dict() == {1: [a], 2: [b]}


@pytest.mark.asyncio
async def test_storage_failure_leaves_state_unchanged(db, lifecycle, votes, open_tournament,
                                                    make_players, monkeypatch):
    tournament = await open_tournament(team_size=2)
    players = await make_players(2)
    for player_id in players:
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)
    await lifecycle.close_voting_window(tournament.id)

    async def failing_persist(session, tournament, partition):
        raise OperationalError("INSERT INTO teams", {}, Exception("disk I/O error"))

    monkeypatch.setattr(lifecycle, "_persist_partition", failing_persist)

    with pytest.raises(StorageUnavailable):
        await lifecycle.form_teams(tournament.id)

    assert (await lifecycle.get_tournament(tournament.id)).status == TournamentStatus.VOTING_CLOSED
    assert await count_rows(db, Team, tournament_id=tournament.id) == 0


@pytest.mark.asyncio
async def test_storage_failure_outside_transitions_surfaces_as_unavailable(
    db, lifecycle, votes, wallet, player_ops, open_tournament, make_players, monkeypatch
):
    tournament = await open_tournament()
    (alice,) = await make_players(1)

    def failing_transaction():
        raise OperationalError("BEGIN", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "transaction", failing_transaction)

    with pytest.raises(StorageUnavailable) as exc_info:
        await votes.submit_vote(alice, tournament.id, VoteKind.SOLO)
    assert isinstance(exc_info.value.__cause__, OperationalError)
    with pytest.raises(StorageUnavailable):
        await votes.close_window(tournament.id)
    with pytest.raises(StorageUnavailable):
        await wallet.deposit(alice, 10)
    with pytest.raises(StorageUnavailable):
        await player_ops.ban_player(alice)
    with pytest.raises(StorageUnavailable):
        await player_ops.onboard_player("newcomer")

    monkeypatch.undo()
    assert await votes.get_live_vote(alice) is None
    assert await wallet.get_balance(alice) == 0
    assert not (await player_ops.get_player(alice)).is_banned
    assert (await lifecycle.get_tournament(tournament.id)).status == TournamentStatus.VOTING_OPEN


@pytest.mark.asyncio
async def test_enrolled_players_join_and_banned_voters_do_not(lifecycle, votes, player_ops,
                                                             open_tournament, make_players, teams_formed):
    tournament = await open_tournament(team_size=2)
    a, b, c = await make_players(3)
    await votes.submit_vote(a, tournament.id, VoteKind.SOLO)
    await votes.submit_vote(b, tournament.id, VoteKind.SOLO)
    await lifecycle.enroll_player(tournament.id, c)
    await lifecycle.enroll_player(tournament.id, c)
    await player_ops.ban_player(b)

    partition = await teams_formed(tournament.id)

    assert sorted(partition.player_ids) == [a, c]


@pytest.mark.asyncio
async def test_compare_and_set_status_rejects_stale_expectation(db, open_tournament):
    tournament = await open_tournament()

    async with db.transaction() as session:
        moved = await db.compare_and_set_status(
            session, tournament.id, TournamentStatus.DRAFT, TournamentStatus.VOTING_OPEN
        )

    assert moved is False


# ============================================================================
# Start
# ============================================================================

@pytest.mark.asyncio
async def test_start_charges_entry_fees(lifecycle, votes, wallet, open_tournament, make_players, teams_formed):
    tournament = await open_tournament(team_size=2, entry_fee=50)
    players = await make_players(4)
    for player_id in players:
        await wallet.deposit(player_id, 100)
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)
    formed = await teams_formed(tournament.id)

    result = await lifecycle.start_tournament(tournament.id)

    assert result.partition == formed
    assert result.charged_player_ids == formed.player_ids
    assert result.removed_player_ids == ()
    assert result.total_collected == 200
    for player_id in players:
        assert await wallet.get_balance(player_id) == 50
    assert (await lifecycle.get_tournament(tournament.id)).status == TournamentStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_insufficient_balance_vacates_only_that_slot(lifecycle, votes, wallet, open_tournament,
                                                           make_players, teams_formed):
    tournament = await open_tournament(team_size=2, entry_fee=50)
    players = await make_players(6)
    for player_id in players:
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)
    formed = await teams_formed(tournament.id)
    broke = formed.teams[1].members[0]
    for player_id in players:
        if player_id != broke:
            await wallet.deposit(player_id, 50)

    result = await lifecycle.start_tournament(tournament.id)

    assert result.removed_player_ids == (broke,)
    assert broke not in result.charged_player_ids
    assert result.total_collected == 250
    assert result.partition.teams[0] == formed.teams[0]
    assert result.partition.teams[2] == formed.teams[2]
    assert result.partition.teams[1].members == tuple(p for p in formed.teams[1].members if p != broke)
    assert await lifecycle.get_teams(tournament.id) == result.partition
    assert await wallet.get_balance(broke) == 0


@pytest.mark.asyncio
async def test_emptied_team_is_dissolved_and_renumbered(db, lifecycle, votes, wallet, open_tournament,
                                                        make_players, teams_formed):
    tournament = await open_tournament(team_size=1, entry_fee=10)
    a, b, c = await make_players(3)
    for player_id in (a, b, c):
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)
    await wallet.deposit(a, 10)
    await wallet.deposit(c, 10)
    await teams_formed(tournament.id)

    result = await lifecycle.start_tournament(tournament.id)

    assert result.partition.as_dict() == {1: [a], 2: [c]}
    assert await lifecycle.get_teams(tournament.id) == result.partition
    async with db.get_session() as session:
        names = (await session.execute(
            select(Team.name).where(Team.tournament_id == tournament.id).order_by(Team.number)
        )).scalars().all()
    assert names == ["Team 1", "Team 2"]


@pytest.mark.asyncio
async def test_start_requires_formed_teams(lifecycle, open_tournament):
    tournament = await open_tournament()

    with pytest.raises(TournamentStateError):
        await lifecycle.start_tournament(tournament.id)


# ============================================================================
# Matches and conclusion
# ============================================================================

async def running_tournament(lifecycle, votes, wallet, open_tournament, make_players, teams_formed,
                             entry_fee=0, **kwargs):
    tournament = await open_tournament(team_size=2, entry_fee=entry_fee, **kwargs)
    players = await make_players(4)
    for player_id in players:
        if entry_fee:
            await wallet.deposit(player_id, entry_fee)
        await votes.submit_vote(player_id, tournament.id, VoteKind.SOLO)
    await teams_formed(tournament.id)
    await lifecycle.start_tournament(tournament.id)
    return tournament, players


@pytest.mark.asyncio
async def test_gap_in_standings_is_rejected_without_credit(db, lifecycle, votes, wallet, open_tournament,
                                                           make_players, teams_formed):
    tournament, (a, b, c, d) = await running_tournament(
        lifecycle, votes, wallet, open_tournament, make_players, teams_formed
    )

    with pytest.raises(InvalidStandings):
        await lifecycle.conclude_tournament(tournament.id, [
            {"player_id": a, "position": 1},
            {"player_id": b, "position": 3},
        ])

    assert (await lifecycle.get_tournament(tournament.id)).status == TournamentStatus.IN_PROGRESS
    assert await count_rows(db, WalletEntry, kind=LedgerEntryKind.PRIZE) == 0
    assert await count_rows(db, TournamentWinner, tournament_id=tournament.id) == 0


@pytest.mark.asyncio
async def test_conclude_credits_prizes_and_updates_stats(db, lifecycle, votes, wallet, player_ops,
                                                         open_tournament, make_players, teams_formed):
    season = await lifecycle.create_season("Season 1", lifecycle.clock())
    tournament, (a, b, c, d) = await running_tournament(
        lifecycle, votes, wallet, open_tournament, make_players, teams_formed, season_id=season.id
    )
    await lifecycle.record_match(tournament.id, "Round 1")
    await lifecycle.record_match(tournament.id, "Final")

    winners = await lifecycle.conclude_tournament(tournament.id, [
        {"player_id": c, "position": 2},
        {"player_id": a, "position": 1},
    ])

    assert [(w.player_id, w.position, w.prize_amount) for w in winners] == [(a, 1, 340), (c, 2, 140)]
    assert await wallet.get_balance(a) == 340
    assert await wallet.get_balance(c) == 140
    assert await wallet.get_balance(b) == 0
    assert [w.position_suffix for w in await lifecycle.get_standings(tournament.id)] == ["1st", "2nd"]
    assert await count_rows(db, AuditLog) > 0
    assert await votes.list_votes(tournament.id) == []

    overall = await player_ops.get_player_stats(a)
    seasonal = await player_ops.get_player_stats(a, season_id=season.id)
    assert (overall.season_id, seasonal.season_id) == (None, season.id)
    assert await count_rows(db, PlayerStats, player_id=a) == 2
    for row in (overall, seasonal):
        assert (row.tournaments_played, row.matches_played, row.wins, row.podiums) == (1, 2, 1, 1)
        assert row.win_ratio == 1.0

    with pytest.raises(TournamentStateError):
        await lifecycle.record_match(tournament.id, "Afterparty")


@pytest.mark.asyncio
async def test_conclude_uses_explicit_prize_table(lifecycle, votes, wallet, open_tournament,
                                                  make_players, teams_formed):
    tournament, (a, b, c, d) = await running_tournament(
        lifecycle, votes, wallet, open_tournament, make_players, teams_formed,
        prize_distribution={1: 500}
    )

    winners = await lifecycle.conclude_tournament(tournament.id, [
        {"player_id": d, "position": 1},
        {"player_id": b, "position": 2},
    ])

    assert [w.prize_amount for w in winners] == [500, 0]
    assert await wallet.get_balance(d) == 500
    assert await wallet.get_balance(b) == 0


@pytest.mark.asyncio
async def test_empty_prize_table_pays_nothing(db, lifecycle, votes, wallet, open_tournament,
                                              make_players, teams_formed):
    tournament, (a, b, c, d) = await running_tournament(
        lifecycle, votes, wallet, open_tournament, make_players, teams_formed,
        prize_distribution={}
    )

    winners = await lifecycle.conclude_tournament(tournament.id, [{"player_id": a, "position": 1}])

    assert [(w.player_id, w.prize_amount) for w in winners] == [(a, 0)]
    assert await wallet.get_balance(a) == 0
    assert await count_rows(db, WalletEntry, kind=LedgerEntryKind.PRIZE) == 0


@pytest.mark.asyncio
async def test_record_match_requires_running_tournament(lifecycle, open_tournament):
    tournament = await open_tournament()

    with pytest.raises(TournamentStateError):
        await lifecycle.record_match(tournament.id, "Too early")


# ============================================================================
# Cancellation
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_refunds_entry_fees(db, lifecycle, votes, wallet, open_tournament,
                                         make_players, teams_formed):
    tournament, players = await running_tournament(
        lifecycle, votes, wallet, open_tournament, make_players, teams_formed, entry_fee=30
    )

    cancelled = await lifecycle.cancel_tournament(tournament.id, reason="venue unavailable")

    assert cancelled.status == TournamentStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    for player_id in players:
        assert await wallet.get_balance(player_id) == 30
        assert (await wallet.verify_balance_integrity(player_id))['integrity_check']
    kinds = [kind for _, kind, _ in await ledger_kinds(db, tournament.id)]
    assert kinds.count(LedgerEntryKind.ENTRY_FEE) == 4
    assert kinds.count(LedgerEntryKind.REFUND) == 4

    with pytest.raises(TournamentStateError):
        await lifecycle.cancel_tournament(tournament.id)


@pytest.mark.asyncio
async def test_cancel_from_draft_writes_no_ledger_entries(db, lifecycle, clock):
    tournament = await lifecycle.create_tournament("Rain Check", clock())

    cancelled = await lifecycle.cancel_tournament(tournament.id)

    assert cancelled.status == TournamentStatus.CANCELLED
    assert await ledger_kinds(db, tournament.id) == []
