"""
Team Partitioner

Places every participant of a preference graph on a numbered team:

1. bonded units larger than the team size are rejected up front;
2. soft affinity links merge units into groups, strongest link first;
3. groups are placed first-fit and singletons round-robin (fewest members,
   lowest team number; when skill tiers differ, strongest first in a snake
   draft) by a depth-first search that backtracks on exclusion
   conflicts, growing the number of teams when no placement exists (at
   worst every group gets a team of its own);
4. an undersized trailing team is folded into lower-numbered teams.

Identical input always gives an identical partition: every ordering decision
is keyed on player ids and nothing is random.
"""

import math
from typing import Dict, List, Optional, Sequence, Tuple

from tourney.config import Config
from tourney.data_models.formation import Partition, VacancyResult
from tourney.formation.preference_graph import PreferenceGraph, Unit
from tourney.utils.exceptions import CapacityViolation
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)


class TeamPartitioner:
    """Deterministic partitioner for a single tournament's preference graph."""

    def __init__(self, team_size: int, min_team_size: int = 1, search_budget: Optional[int] = None):
        if team_size < 1:
            raise ValueError(f"team_size must be positive, got {team_size}")
        if not 1 <= min_team_size <= team_size:
            raise ValueError(f"min_team_size must be between 1 and {team_size}, got {min_team_size}")
        self.team_size = team_size
        self.min_team_size = min_team_size
        self.search_budget = Config.PARTITION_SEARCH_BUDGET if search_budget is None else search_budget
        if self.search_budget < 1:
            raise ValueError("search_budget must be positive")

    def partition(self, graph: PreferenceGraph) -> Partition:
        """Partition all participants of ``graph`` into teams numbered 1..N."""
        if not graph.participants:
            return Partition()

        oversized = [unit for unit in graph.units if len(unit) > self.team_size]
        if oversized:
            logger.error(f"Bonded units {[list(u) for u in oversized]} exceed team size {self.team_size}")
            raise CapacityViolation(oversized, self.team_size)

        groups = self._affinity_groups(graph)
        items = self._placement_order(groups, graph)

        team_count = math.ceil(len(graph.participants) / self.team_size)
        while team_count < len(items):
            teams = self._search(items, team_count, graph)
            if teams is not None:
                break
            logger.debug(f"No placement with {team_count} teams, retrying with {team_count + 1}")
            team_count += 1
        else:
            # One group per team always satisfies every constraint
            teams = [list(item) for item in items]

        teams = [team for team in teams if team]
        teams = self._fold_trailing(teams, graph)

        partition = Partition.from_member_lists([sorted(team) for team in teams])
        logger.info(
            f"Partitioned {len(graph.participants)} players into {partition.team_count} teams "
            f"(team size {self.team_size}, min {self.min_team_size})"
        )
        return partition

    def repartition_vacated_slot(self, partition: Partition, graph: PreferenceGraph,
                                 player_id: int) -> VacancyResult:
        """
        Remove one player and repair only the team they left.

        An emptied team is dissolved and later team numbers shift down by one.
        A team left below the minimum size has its remaining groups folded into
        the lowest-numbered teams that can take them; if that is impossible the
        team is kept as is. Memberships of every other team are untouched apart
        from receiving folded players at the end of their slot order.
        """
        team = partition.team_of(player_id)
        if team is None:
            raise ValueError(f"Player {player_id} is not on any team of this partition")

        member_lists = [list(t.members) for t in partition.teams]
        index = team.number - 1
        member_lists[index].remove(player_id)
        remaining = member_lists[index]
        dissolved = None

        if not remaining:
            del member_lists[index]
            dissolved = team.number
            logger.info(f"Team {team.number} dissolved after removing player {player_id}")
        elif len(remaining) < self.min_team_size and len(member_lists) > 1:
            others = member_lists[:index] + member_lists[index + 1:]
            planned = self._plan_moves(self._split_groups(remaining, graph), others, graph)
            if planned is None:
                logger.warning(
                    f"Team {team.number} is below minimum size {self.min_team_size} after removing "
                    f"player {player_id}, but no other team can absorb {remaining}; keeping it"
                )
            else:
                member_lists = planned
                dissolved = team.number
                logger.info(f"Team {team.number} folded into other teams after removing player {player_id}")

        return VacancyResult(
            partition=Partition.from_member_lists(member_lists),
            vacated_player_id=player_id,
            dissolved_team=dissolved
        )

    # ============================================================================
    # Grouping
    # ============================================================================

    def _affinity_groups(self, graph: PreferenceGraph) -> List[Unit]:
        """Merge units along soft links, strongest first, while size and exclusions allow."""
        members: Dict[Unit, List[int]] = {unit: list(unit) for unit in graph.units}
        root_of: Dict[Unit, Unit] = {unit: unit for unit in graph.units}

        def find(unit: Unit) -> Unit:
            while root_of[unit] != unit:
                unit = root_of[unit]
            return unit

        links = sorted(graph.affinity.items(), key=lambda item: (-item[1], item[0]))
        for (unit_a, unit_b), weight in links:
            if graph.solo_players.intersection(unit_a + unit_b):
                continue
            root_a, root_b = find(unit_a), find(unit_b)
            if root_a == root_b:
                continue
            if len(members[root_a]) + len(members[root_b]) > self.team_size:
                continue
            if graph.conflicts(members[root_a], members[root_b]):
                continue
            keep, absorb = min(root_a, root_b), max(root_a, root_b)
            members[keep] = sorted(members[keep] + members.pop(absorb))
            root_of[absorb] = keep
            logger.debug(f"Grouped {list(unit_a)} with {list(unit_b)} (affinity {weight})")

        return sorted(tuple(group) for group in members.values())

    @staticmethod
    def _placement_order(groups: Sequence[Unit], graph: PreferenceGraph) -> List[Unit]:
        multi = sorted((g for g in groups if len(g) > 1), key=lambda g: (-len(g), g[0]))
        singles = [g for g in groups if len(g) == 1]
        if graph.skill_balanced:
            singles.sort(key=lambda g: (-graph.skill_of(g[0]), g[0]))
        else:
            singles.sort()
        return multi + singles

    @staticmethod
    def _split_groups(members: Sequence[int], graph: PreferenceGraph) -> List[Unit]:
        """Bonded units restricted to ``members``, largest first."""
        member_set = set(members)
        unit_of = graph.unit_of
        groups = {
            tuple(p for p in unit_of.get(player_id, (player_id,)) if p in member_set)
            for player_id in members
        }
        return sorted(groups, key=lambda g: (-len(g), g[0]))

    # ============================================================================
    # Placement
    # ============================================================================

    def _candidates(self, item: Unit, teams: List[List[int]], graph: PreferenceGraph,
                    snake: bool = False) -> List[int]:
        """
        Feasible team indexes for ``item`` in trial order; only one empty team is offered.

        Singletons go to the teams with the fewest members. Among those, the
        lowest team number comes first, unless ``snake`` is set: then teams
        holding an odd number of players are tried highest number first, so a
        strongest-first fill runs 1..N, N..1, 1..N like a snake draft.
        """
        feasible = []
        seen_empty = False
        for index, team in enumerate(teams):
            if len(team) + len(item) > self.team_size:
                continue
            if not team:
                if seen_empty:
                    continue
                seen_empty = True
            elif graph.conflicts(item, team):
                continue
            feasible.append(index)

        if len(item) > 1:
            return feasible  # First fit
        if snake:
            return sorted(feasible, key=lambda index: (
                len(teams[index]), -index if len(teams[index]) % 2 else index
            ))
        return sorted(feasible, key=lambda index: (len(teams[index]), index))

    def _search(self, items: List[Unit], team_count: int,
                graph: PreferenceGraph) -> Optional[List[List[int]]]:
        """Depth-first placement of ``items`` into ``team_count`` teams, or None."""
        teams: List[List[int]] = [[] for _ in range(team_count)]
        placed: List[int] = []
        snake = graph.skill_balanced
        stack: List[Tuple[List[int], int]] = [(self._candidates(items[0], teams, graph, snake), 0)]
        steps = 0

        while stack:
            steps += 1
            if steps > self.search_budget:
                logger.warning(f"Placement search budget of {self.search_budget} exhausted with {team_count} teams")
                return None

            depth = len(stack) - 1
            candidates, cursor = stack[-1]

            if len(placed) > depth:
                # Back at this depth: undo the previous choice before trying the next
                undo = placed.pop()
                del teams[undo][-len(items[depth]):]

            if cursor >= len(candidates):
                stack.pop()
                continue

            chosen = candidates[cursor]
            stack[-1] = (candidates, cursor + 1)
            teams[chosen].extend(items[depth])
            placed.append(chosen)

            if depth + 1 == len(items):
                return teams
            stack.append((self._candidates(items[depth + 1], teams, graph, snake), 0))

        return None

    # ============================================================================
    # Folding
    # ============================================================================

    def _plan_moves(self, groups: Sequence[Unit], targets: Sequence[Sequence[int]],
                    graph: PreferenceGraph) -> Optional[List[List[int]]]:
        """Move each group into the lowest-indexed target that can take it, or None."""
        planned = [list(team) for team in targets]
        for group in groups:
            for team in planned:
                if len(team) + len(group) <= self.team_size and not graph.conflicts(group, team):
                    team.extend(group)
                    break
            else:
                return None
        return planned

    def _fold_trailing(self, teams: List[List[int]], graph: PreferenceGraph) -> List[List[int]]:
        while len(teams) > 1 and len(teams[-1]) < self.min_team_size:
            last = teams[-1]
            planned = self._plan_moves(self._split_groups(last, graph), teams[:-1], graph)
            if planned is None:
                logger.warning(
                    f"Team {len(teams)} has {len(last)} players, below minimum {self.min_team_size}, "
                    f"and cannot be folded into another team; keeping it"
                )
                break
            logger.info(f"Folded undersized team {len(teams)} {sorted(last)} into lower-numbered teams")
            teams = planned
        return teams
