"""
Tournament Lifecycle Operations

Drives a tournament through its states and their side effects:

    DRAFT -> VOTING_OPEN -> VOTING_CLOSED -> TEAMS_FORMED -> IN_PROGRESS -> CONCLUDED
    (any non-terminal state) -> CANCELLED

Every transition:
- holds the per-tournament lock, so in-process callers queue up;
- flips the status with a compare-and-set UPDATE, so a caller that lost a
  race sees ConcurrentTransitionConflict instead of applying twice;
- performs all of its writes (teams, ledger entries, winners, stats) in the
  same transaction as the status flip. Any failure rolls everything back and
  the tournament keeps its previous status.
"""

import json
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Set

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.config import Config
from tourney.data_models.formation import Partition, StartResult, TeamAssignment
from tourney.database.match_operations import MatchOperations
from tourney.database.models import (
    AuditLog, LedgerEntryKind, Match, Player, Season, Team, TeamMember, Tournament,
    TournamentEnrollment, TournamentStatus, TournamentWinner, Vote, WalletEntry
)
from tourney.formation.partitioner import TeamPartitioner
from tourney.formation.preference_graph import PreferenceGraph, PreferenceGraphBuilder
from tourney.operations.vote_operations import VoteOperations
from tourney.operations.wallet_operations import WalletOperations
from tourney.services.base import storage_errors
from tourney.services.locks import KeyedLockRegistry
from tourney.services.player_stats_sync import PlayerStatsService
from tourney.utils.clock import Clock, to_naive_utc, utcnow
from tourney.utils.exceptions import (
    ConcurrentTransitionConflict, InsufficientBalance, PlayerNotEligible, PlayerNotFound,
    TournamentStateError
)
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)

# States from which teams exist and can be read back
TEAMS_EXIST_STATUSES = (
    TournamentStatus.TEAMS_FORMED, TournamentStatus.IN_PROGRESS, TournamentStatus.CONCLUDED
)
ENROLLMENT_STATUSES = (
    TournamentStatus.DRAFT, TournamentStatus.VOTING_OPEN, TournamentStatus.VOTING_CLOSED
)


class TournamentOperations:
    """
    Lifecycle controller for tournaments.

    Composes the vote ledger, graph builder, partitioner, match recorder,
    wallet and statistics service. Collaborators can be injected; by default
    each is built on the same Database.
    """

    def __init__(self, database, config_service=None, clock: Clock = utcnow,
                 vote_ops: Optional[VoteOperations] = None,
                 wallet_ops: Optional[WalletOperations] = None,
                 match_ops: Optional[MatchOperations] = None,
                 stats_service: Optional[PlayerStatsService] = None,
                 locks: Optional[KeyedLockRegistry] = None):
        self.db = database
        self.config_service = config_service
        self.clock = clock
        self.votes = vote_ops or VoteOperations(database, clock=clock)
        self.wallet = wallet_ops or WalletOperations(database)
        self.matches = match_ops or MatchOperations(database)
        self.stats = stats_service or PlayerStatsService()
        self.locks = locks or database.lock_registry('tournament')
        self.graph_builder = PreferenceGraphBuilder()
        self.logger = logger

    @asynccontextmanager
    async def _transition(self, operation: str):
        """Transaction for one transition; storage failures surface as StorageUnavailable."""
        async with storage_errors(operation, self.logger), self.db.transaction() as session:
            yield session

    async def _flip(self, session: AsyncSession, tournament_id: int, expected: TournamentStatus,
                    new_status: TournamentStatus, **values) -> None:
        if not await self.db.compare_and_set_status(session, tournament_id, expected, new_status, **values):
            current = await session.scalar(select(Tournament.status).where(Tournament.id == tournament_id))
            raise ConcurrentTransitionConflict(tournament_id, expected.name, current.name if current else None)
        session.add(AuditLog(
            action='tournament_transition',
            details=json.dumps({
                'tournament_id': tournament_id,
                'from': expected.name,
                'to': new_status.name
            })
        ))
        self.logger.info(f"Tournament {tournament_id}: {expected.name} -> {new_status.name}")

    # ============================================================================
    # Configuration
    # ============================================================================

    def _default_sizes(self):
        if self.config_service is not None:
            return self.config_service.team_size(), self.config_service.min_team_size()
        return Config.DEFAULT_TEAM_SIZE, Config.DEFAULT_MIN_TEAM_SIZE

    def _search_budget(self) -> int:
        if self.config_service is not None:
            return self.config_service.search_budget()
        return Config.PARTITION_SEARCH_BUDGET

    def _default_prizes(self) -> Dict[int, int]:
        if self.config_service is not None:
            return self.config_service.prize_distribution()
        return Config.get_default_prize_distribution()

    def _partitioner_for(self, tournament: Tournament) -> TeamPartitioner:
        return TeamPartitioner(tournament.team_size, tournament.min_team_size, self._search_budget())

    @staticmethod
    def _validate_prizes(prizes: Mapping[int, int]) -> Dict[int, int]:
        table = {}
        for position, amount in prizes.items():
            position, amount = int(position), int(amount)
            if position < 1 or amount < 0:
                raise ValueError(f"Invalid prize entry {position}: {amount}")
            table[position] = amount
        return table

    # ============================================================================
    # Seasons and tournaments
    # ============================================================================

    async def create_season(self, name: str, start_date: datetime, end_date: Optional[datetime] = None) -> Season:
        if not name or not name.strip():
            raise ValueError("Season name is required")
        start_date = to_naive_utc(start_date)
        end_date = to_naive_utc(end_date) if end_date else None
        if end_date and end_date <= start_date:
            raise ValueError("Season end must be after its start")

        async with self._transition("create season") as session:
            season = Season(name=name.strip(), start_date=start_date, end_date=end_date, is_active=True)
            session.add(season)
            await session.flush()
        self.logger.info(f"Created season {season.id} '{season.name}'")
        return season

    async def create_tournament(
        self,
        name: str,
        start_date: datetime,
        entry_fee: Optional[int] = None,
        season_id: Optional[int] = None,
        team_size: Optional[int] = None,
        min_team_size: Optional[int] = None,
        prize_distribution: Optional[Mapping[int, int]] = None,
        banner_image_url: Optional[str] = None,
        vote_start: Optional[datetime] = None,
        vote_end: Optional[datetime] = None
    ) -> Tournament:
        """
        Create a tournament in DRAFT.

        Team sizes default from the configuration service (or Config). The
        entry fee and voting window may be left unset until voting opens.
        """
        if not name or not name.strip():
            raise ValueError("Tournament name is required")
        default_size, default_min = self._default_sizes()
        team_size = team_size or default_size
        min_team_size = min_team_size or min(default_min, team_size)
        if not 1 <= team_size <= Config.MAX_TEAM_SIZE:
            raise ValueError(f"Team size must be between 1 and {Config.MAX_TEAM_SIZE}")
        if not 1 <= min_team_size <= team_size:
            raise ValueError(f"Minimum team size must be between 1 and {team_size}")
        if entry_fee is not None and entry_fee < 0:
            raise ValueError("Entry fee cannot be negative")
        prizes = self._validate_prizes(prize_distribution) if prize_distribution is not None else None

        async with self._transition("create tournament") as session:
            if season_id is not None and await session.get(Season, season_id) is None:
                raise ValueError(f"Season {season_id} does not exist")
            tournament = Tournament(
                name=name.strip(),
                start_date=to_naive_utc(start_date),
                entry_fee=entry_fee,
                season_id=season_id,
                banner_image_url=banner_image_url,
                status=TournamentStatus.DRAFT,
                vote_start=to_naive_utc(vote_start) if vote_start else None,
                vote_end=to_naive_utc(vote_end) if vote_end else None,
                team_size=team_size,
                min_team_size=min_team_size,
                prize_distribution=json.dumps({str(p): a for p, a in prizes.items()}) if prizes is not None else None
            )
            session.add(tournament)
            await session.flush()

        self.logger.info(f"Created tournament {tournament.id} '{tournament.name}' (team size {team_size})")
        return tournament

    async def get_tournament(self, tournament_id: int) -> Tournament:
        return await self.db.get_tournament(tournament_id)

    # ============================================================================
    # Voting
    # ============================================================================

    async def open_voting(self, tournament_id: int, vote_start: Optional[datetime] = None,
                          vote_end: Optional[datetime] = None) -> Tournament:
        """DRAFT -> VOTING_OPEN. Requires the entry fee and both window bounds; charges nothing."""
        async with self.locks.hold(tournament_id):
            async with self._transition("open voting") as session:
                tournament = await self.db.get_tournament(tournament_id, session=session)
                if tournament.status != TournamentStatus.DRAFT:
                    raise TournamentStateError(tournament_id, tournament.status.name, "open voting for")

                start = to_naive_utc(vote_start) if vote_start else tournament.vote_start
                end = to_naive_utc(vote_end) if vote_end else tournament.vote_end
                if tournament.entry_fee is None:
                    raise ValueError(f"Tournament {tournament_id} needs an entry fee before voting opens")
                if start is None or end is None:
                    raise ValueError(f"Tournament {tournament_id} needs a voting window before voting opens")
                if start >= end:
                    raise ValueError("Voting window must end after it starts")

                await self._flip(session, tournament_id, TournamentStatus.DRAFT, TournamentStatus.VOTING_OPEN,
                                 vote_start=start, vote_end=end)
                return await self.db.get_tournament(tournament_id, session=session)

    async def close_voting_window(self, tournament_id: int) -> Tournament:
        """VOTING_OPEN -> VOTING_CLOSED; a no-op when voting is already closed."""
        async with self.locks.hold(tournament_id):
            return await self.votes.close_window(tournament_id)

    async def reopen_voting(self, tournament_id: int, vote_end: Optional[datetime] = None) -> Tournament:
        """
        VOTING_CLOSED -> VOTING_OPEN so players can correct votes after a
        formation error. ``vote_end`` optionally extends the window.
        """
        async with self.locks.hold(tournament_id):
            async with self._transition("reopen voting") as session:
                tournament = await self.db.get_tournament(tournament_id, session=session)
                if tournament.status != TournamentStatus.VOTING_CLOSED:
                    raise TournamentStateError(tournament_id, tournament.status.name, "reopen voting for")
                values = {}
                if vote_end is not None:
                    vote_end = to_naive_utc(vote_end)
                    if vote_end <= tournament.vote_start:
                        raise ValueError("Voting window must end after it starts")
                    values['vote_end'] = vote_end
                await self._flip(session, tournament_id, TournamentStatus.VOTING_CLOSED,
                                 TournamentStatus.VOTING_OPEN, **values)
                return await self.db.get_tournament(tournament_id, session=session)

    async def enroll_player(self, tournament_id: int, player_id: int) -> TournamentEnrollment:
        """Enrol an eligible player who will not vote; idempotent."""
        async with self.locks.hold(tournament_id):
            async with self._transition("enroll player") as session:
                tournament = await self.db.get_tournament(tournament_id, session=session)
                if tournament.status not in ENROLLMENT_STATUSES:
                    raise TournamentStateError(tournament_id, tournament.status.name, "enroll players in")

                player = await session.get(Player, player_id)
                if player is None:
                    raise PlayerNotFound(player_id)
                if not player.is_eligible:
                    raise PlayerNotEligible(player_id, "banned" if player.is_banned else "deactivated")

                existing = await session.scalar(
                    select(TournamentEnrollment).where(
                        TournamentEnrollment.tournament_id == tournament_id,
                        TournamentEnrollment.player_id == player_id
                    )
                )
                if existing is not None:
                    return existing

                enrollment = TournamentEnrollment(tournament_id=tournament_id, player_id=player_id)
                session.add(enrollment)
                await session.flush()

        self.logger.info(f"Enrolled player {player_id} in tournament {tournament_id}")
        return enrollment

    async def _participants(self, session: AsyncSession, tournament_id: int) -> Set[int]:
        """Eligible voters of the tournament plus eligible enrolled players."""
        eligible = (Player.is_banned.is_(False), Player.is_active.is_(True))
        voters = await session.execute(
            select(Vote.player_id)
            .join(Player, Player.id == Vote.player_id)
            .where(Vote.tournament_id == tournament_id, *eligible)
        )
        enrolled = await session.execute(
            select(TournamentEnrollment.player_id)
            .join(Player, Player.id == TournamentEnrollment.player_id)
            .where(TournamentEnrollment.tournament_id == tournament_id, *eligible)
        )
        return set(voters.scalars().all()) | set(enrolled.scalars().all())

    async def _build_graph(self, session: AsyncSession, tournament_id: int,
                           participants: Set[int]) -> PreferenceGraph:
        records = await self.votes.get_preference_records(tournament_id, session=session)
        rows = await session.execute(
            select(Player.id, Player.skill_category).where(Player.id.in_(sorted(participants)))
        )
        skill_tiers = {player_id: category.tier for player_id, category in rows.all() if category is not None}
        return self.graph_builder.build(records, participants, skill_tiers)

    # ============================================================================
    # Team formation
    # ============================================================================

    async def form_teams(self, tournament_id: int) -> Partition:
        """
        VOTING_CLOSED -> TEAMS_FORMED.

        Builds the preference graph, partitions it and stores the teams. A
        tournament that already has teams returns them unchanged instead of
        partitioning again. Graph or partition errors (ContradictoryVote,
        CapacityViolation) leave the tournament in VOTING_CLOSED.
        """
        async with self.locks.hold(tournament_id):
            tournament = await self.db.get_tournament(tournament_id)
            if tournament.status in TEAMS_EXIST_STATUSES:
                self.logger.debug(f"Teams for tournament {tournament_id} already formed; reading back")
                return await self.get_teams(tournament_id)
            if tournament.status != TournamentStatus.VOTING_CLOSED:
                raise TournamentStateError(tournament_id, tournament.status.name, "form teams for")

            try:
                async with self._transition("form teams") as session:
                    tournament = await self.db.get_tournament(tournament_id, session=session)
                    participants = await self._participants(session, tournament_id)
                    graph = await self._build_graph(session, tournament_id, participants)
                    partition = self._partitioner_for(tournament).partition(graph)

                    await self._flip(session, tournament_id, TournamentStatus.VOTING_CLOSED,
                                     TournamentStatus.TEAMS_FORMED, teams_formed_at=self.clock())
                    await self._persist_partition(session, tournament, partition)
            except ConcurrentTransitionConflict as conflict:
                current = await self.db.get_tournament(tournament_id)
                if current.status not in TEAMS_EXIST_STATUSES:
                    raise
                self.logger.info(f"{conflict}; returning the committed teams")
                return await self.get_teams(tournament_id)

        self.logger.info(f"Formed {partition.team_count} teams for tournament {tournament_id}: {partition.as_dict()}")
        return partition

    async def _persist_partition(self, session: AsyncSession, tournament: Tournament, partition: Partition) -> None:
        for assignment in partition.teams:
            team = Team(
                tournament_id=tournament.id,
                number=assignment.number,
                name=f"Team {assignment.number}",
                capacity=tournament.team_size
            )
            session.add(team)
            await session.flush()
            for slot, player_id in enumerate(assignment.members, start=1):
                session.add(TeamMember(
                    team_id=team.id,
                    player_id=player_id,
                    tournament_id=tournament.id,
                    slot=slot
                ))
        await session.flush()

    async def _load_partition(self, session: AsyncSession, tournament_id: int) -> Partition:
        rows = await session.execute(
            select(Team.number, TeamMember.player_id)
            .join(TeamMember, TeamMember.team_id == Team.id)
            .where(Team.tournament_id == tournament_id)
            .order_by(Team.number, TeamMember.slot)
        )
        members: Dict[int, List[int]] = defaultdict(list)
        for number, player_id in rows.all():
            members[number].append(player_id)
        return Partition(teams=tuple(
            TeamAssignment(number=number, members=tuple(player_ids))
            for number, player_ids in sorted(members.items())
        ))

    async def get_teams(self, tournament_id: int) -> Partition:
        """Committed teams of a tournament in team and slot order."""
        async with self.db.get_session() as session:
            return await self._load_partition(session, tournament_id)

    # ============================================================================
    # Start
    # ============================================================================

    async def start_tournament(self, tournament_id: int) -> StartResult:
        """
        TEAMS_FORMED -> IN_PROGRESS.

        Charges every member's entry fee in team and slot order. A member who
        cannot pay is removed and only their team is repaired (see
        TeamPartitioner.repartition_vacated_slot); all other teams keep their
        members and slots.
        """
        async with self.locks.hold(tournament_id):
            async with self._transition("start tournament") as session:
                tournament = await self.db.get_tournament(tournament_id, session=session)
                if tournament.status != TournamentStatus.TEAMS_FORMED:
                    raise TournamentStateError(tournament_id, tournament.status.name, "start")

                await self._flip(session, tournament_id, TournamentStatus.TEAMS_FORMED,
                                 TournamentStatus.IN_PROGRESS, started_at=self.clock())

                partition = await self._load_partition(session, tournament_id)
                fee = tournament.entry_fee or 0
                charged: List[int] = []
                removed: List[int] = []

                if fee > 0:
                    for player_id in partition.player_ids:
                        try:
                            await self.wallet.debit_entry_fee(player_id, tournament_id, fee, session=session)
                            charged.append(player_id)
                        except InsufficientBalance as e:
                            self.logger.warning(f"Removing player {player_id} from tournament {tournament_id}: {e}")
                            removed.append(player_id)
                else:
                    charged = list(partition.player_ids)

                if removed:
                    partition = await self._vacate(session, tournament, partition, removed)

        self.logger.info(
            f"Started tournament {tournament_id}: {len(charged)} charged, {len(removed)} removed, "
            f"{partition.team_count} teams"
        )
        return StartResult(
            tournament_id=tournament_id,
            partition=partition,
            charged_player_ids=tuple(charged),
            removed_player_ids=tuple(removed),
            total_collected=fee * len(charged) if fee > 0 else 0
        )

    async def _vacate(self, session: AsyncSession, tournament: Tournament, partition: Partition,
                      removed: List[int]) -> Partition:
        """Apply one partial re-partition per removed player and write the result back."""
        graph = await self._build_graph(session, tournament.id, set(partition.player_ids))
        partitioner = self._partitioner_for(tournament)

        # current team number -> original team number
        current_to_original = [team.number for team in partition.teams]
        for player_id in removed:
            result = partitioner.repartition_vacated_slot(partition, graph, player_id)
            partition = result.partition
            if result.dissolved_team is not None:
                del current_to_original[result.dissolved_team - 1]

        team_rows = await session.execute(
            select(Team.number, Team.id).where(Team.tournament_id == tournament.id)
        )
        team_ids = dict(team_rows.all())

        await session.execute(
            delete(TeamMember)
            .where(TeamMember.tournament_id == tournament.id, TeamMember.player_id.in_(removed))
            .execution_options(synchronize_session=False)
        )
        for assignment, original in zip(partition.teams, current_to_original):
            for slot, player_id in enumerate(assignment.members, start=1):
                await session.execute(
                    update(TeamMember)
                    .where(TeamMember.tournament_id == tournament.id, TeamMember.player_id == player_id)
                    .values(team_id=team_ids[original], slot=slot)
                    .execution_options(synchronize_session=False)
                )

        dissolved = sorted(set(team_ids) - set(current_to_original))
        if dissolved:
            await session.execute(
                delete(Team)
                .where(Team.id.in_([team_ids[number] for number in dissolved]))
                .execution_options(synchronize_session=False)
            )
            self.logger.info(f"Dissolved teams {dissolved} of tournament {tournament.id}")

        # Renumber ascending so every target number is already free
        for assignment, original in zip(partition.teams, current_to_original):
            if assignment.number != original:
                await session.execute(
                    update(Team)
                    .where(Team.id == team_ids[original])
                    .values(number=assignment.number, name=f"Team {assignment.number}")
                    .execution_options(synchronize_session=False)
                )

        return partition

    # ============================================================================
    # Matches, conclusion and cancellation
    # ============================================================================

    async def record_match(self, tournament_id: int, name: str) -> Match:
        async with self._transition("record match") as session:
            return await self.matches.record_match(tournament_id, name, session=session)

    async def list_matches(self, tournament_id: int) -> List[Match]:
        return await self.matches.list_matches(tournament_id)

    async def conclude_tournament(self, tournament_id: int, standings: List[Dict],
                                  prizes: Optional[Mapping[int, int]] = None) -> List[TournamentWinner]:
        """
        IN_PROGRESS -> CONCLUDED.

        Args:
            standings: [{"player_id": int, "position": int}, ...], positions 1..N
            prizes: position -> amount; defaults to the tournament's own table,
                then to the configured default distribution

        Raises:
            InvalidStandings: Positions are not exactly 1..N, a player repeats,
                or a winner was not on a team. Nothing is written.
        """
        async with self.locks.hold(tournament_id):
            async with self._transition("conclude tournament") as session:
                tournament = await self.db.get_tournament(tournament_id, session=session)
                if tournament.status != TournamentStatus.IN_PROGRESS:
                    raise TournamentStateError(tournament_id, tournament.status.name, "conclude")

                partition = await self._load_partition(session, tournament_id)
                self.matches.validate_standings(standings, partition.player_ids)

                if prizes is not None:
                    prize_table = self._validate_prizes(prizes)
                elif tournament.prize_distribution is not None:
                    prize_table = tournament.prize_table  # An explicit empty table pays nothing
                else:
                    prize_table = self._default_prizes()

                await self._flip(session, tournament_id, TournamentStatus.IN_PROGRESS,
                                 TournamentStatus.CONCLUDED, concluded_at=self.clock())

                winners = await self.matches.record_winners(session, tournament, standings, prize_table)
                for winner in winners:
                    if winner.prize_amount > 0:
                        await self.wallet.credit_prize(
                            winner.player_id, tournament_id, winner.prize_amount, winner.position, session=session
                        )

                match_count = await self.matches.count_matches(tournament_id, session)
                await self.stats.record_tournament_result(
                    session, tournament, partition.player_ids, standings, match_count
                )
                await self.votes.retire_votes(tournament_id, session)

        self.logger.info(f"Concluded tournament {tournament_id} with {len(winners)} winners")
        return winners

    async def cancel_tournament(self, tournament_id: int, reason: Optional[str] = None) -> Tournament:
        """Cancel from any non-terminal state, refunding every entry fee charged so far."""
        async with self.locks.hold(tournament_id):
            async with self._transition("cancel tournament") as session:
                tournament = await self.db.get_tournament(tournament_id, session=session)
                if tournament.is_terminal:
                    raise TournamentStateError(tournament_id, tournament.status.name, "cancel")

                await self._flip(session, tournament_id, tournament.status, TournamentStatus.CANCELLED,
                                 cancelled_at=self.clock())
                refunded = await self._refund_entry_fees(session, tournament_id)
                await self.votes.retire_votes(tournament_id, session)
                tournament = await self.db.get_tournament(tournament_id, session=session)

        self.logger.info(
            f"Cancelled tournament {tournament_id}{f' ({reason})' if reason else ''}; "
            f"refunded {len(refunded)} players"
        )
        return tournament

    async def _refund_entry_fees(self, session: AsyncSession, tournament_id: int) -> List[int]:
        """Compensating REFUND for whatever part of each player's entry fee is not yet refunded."""
        rows = await session.execute(
            select(WalletEntry.player_id, func.sum(WalletEntry.amount))
            .where(
                WalletEntry.tournament_id == tournament_id,
                WalletEntry.kind.in_([LedgerEntryKind.ENTRY_FEE, LedgerEntryKind.REFUND])
            )
            .group_by(WalletEntry.player_id)
            .order_by(WalletEntry.player_id)
        )
        refunded = []
        for player_id, net in rows.all():
            if net < 0:
                await self.wallet.refund_entry_fee(player_id, tournament_id, -net, session=session)
                refunded.append(player_id)
        return refunded

    async def get_standings(self, tournament_id: int) -> List[TournamentWinner]:
        return await self.matches.get_standings(tournament_id)
