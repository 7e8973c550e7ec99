"""
Team formation data models.

Immutable data transfer objects passed between the vote ledger, the
preference graph builder, the partitioner and the lifecycle controller.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from tourney.database.models import VoteKind


@dataclass(frozen=True)
class PreferenceRecord:
    """One player's preference as read from the vote ledger."""
    player_id: int
    kind: VoteKind
    target_id: Optional[int] = None


@dataclass(frozen=True)
class DroppedEdge:
    """A soft PAIR edge discarded because it conflicts with an exclusion."""
    source_id: int
    target_id: int
    reason: str


@dataclass(frozen=True)
class TeamAssignment:
    """A numbered team and its members in slot order."""
    number: int
    members: Tuple[int, ...]

    @property
    def size(self) -> int:
        return len(self.members)


@dataclass(frozen=True)
class Partition:
    """Complete assignment of players to teams numbered 1..N."""
    teams: Tuple[TeamAssignment, ...] = ()

    @classmethod
    def from_member_lists(cls, member_lists: List[List[int]]) -> 'Partition':
        """Number the given member lists 1..N in order."""
        return cls(teams=tuple(
            TeamAssignment(number=index, members=tuple(members))
            for index, members in enumerate(member_lists, start=1)
        ))

    @property
    def team_count(self) -> int:
        return len(self.teams)

    @property
    def player_ids(self) -> Tuple[int, ...]:
        return tuple(player_id for team in self.teams for player_id in team.members)

    def team_of(self, player_id: int) -> Optional[TeamAssignment]:
        for team in self.teams:
            if player_id in team.members:
                return team
        return None

    def as_dict(self) -> Dict[int, List[int]]:
        return {team.number: list(team.members) for team in self.teams}


@dataclass(frozen=True)
class VacancyResult:
    """Outcome of re-partitioning a single vacated slot."""
    partition: Partition
    vacated_player_id: int
    dissolved_team: Optional[int] = None  # Team number (before the change) that was removed


@dataclass(frozen=True)
class StartResult:
    """Outcome of starting a tournament: who paid and who was removed."""
    tournament_id: int
    partition: Partition
    charged_player_ids: Tuple[int, ...]
    removed_player_ids: Tuple[int, ...]
    total_collected: int
