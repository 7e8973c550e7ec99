"""
Preference Graph Builder

Turns the vote ledger of one tournament into a directed graph of PAIR and
EXCLUDE edges, then derives what the partitioner needs from it:

- bonded units: connected components of mutual (reciprocal) PAIR edges,
  always placed together;
- affinity: weight between units from one-directional PAIR edges, used only
  as a soft preference;
- enemies: the hard exclusion relation, symmetric at placement time;
- skill tiers: optional per-player strength used to balance the singleton fill.

This module is pure: no database access, no randomness.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from tourney.data_models.formation import DroppedEdge, PreferenceRecord
from tourney.database.models import VoteKind
from tourney.utils.exceptions import ContradictoryVote
from tourney.utils.logger import setup_logger

logger = setup_logger(__name__)

Unit = Tuple[int, ...]
UnitPair = Tuple[Unit, Unit]


@dataclass(frozen=True)
class PreferenceGraph:
    """Preference graph of a single tournament."""
    participants: FrozenSet[int]
    pair_edges: FrozenSet[Tuple[int, int]]
    exclude_edges: FrozenSet[Tuple[int, int]]
    solo_players: FrozenSet[int]
    units: Tuple[Unit, ...]
    affinity: Mapping[UnitPair, int] = field(default_factory=dict)
    enemies: Mapping[int, FrozenSet[int]] = field(default_factory=dict)
    dropped_edges: Tuple[DroppedEdge, ...] = ()
    skill_tiers: Mapping[int, int] = field(default_factory=dict)

    @property
    def unit_of(self) -> Dict[int, Unit]:
        return {player_id: unit for unit in self.units for player_id in unit}

    @property
    def bonded_units(self) -> Tuple[Unit, ...]:
        """Units of two or more players joined by mutual PAIR votes."""
        return tuple(unit for unit in self.units if len(unit) > 1)

    @property
    def skill_balanced(self) -> bool:
        """True when participants span more than one skill tier."""
        return len({self.skill_of(player_id) for player_id in self.participants}) > 1

    def skill_of(self, player_id: int) -> int:
        return self.skill_tiers.get(player_id, 0)

    def conflicts(self, group_a: Iterable[int], group_b: Iterable[int]) -> bool:
        """True when any player of one group excludes (or is excluded by) the other."""
        other = set(group_b)
        return any(self.enemies.get(player_id, frozenset()) & other for player_id in group_a)


class PreferenceGraphBuilder:
    """
    Builds a PreferenceGraph from preference records.

    Records whose player is not a participant are ignored, as are edges whose
    target is not a participant (an unmet wish, or a vacuous exclusion).
    """

    def build(self, records: Iterable[PreferenceRecord], participants: Iterable[int],
              skill_tiers: Optional[Mapping[int, int]] = None) -> PreferenceGraph:
        participant_set = frozenset(participants)
        skills = {p: tier for p, tier in (skill_tiers or {}).items() if p in participant_set}
        by_player = self._group_records(records, participant_set)
        self._check_contradictions(by_player)

        pair_edges: Set[Tuple[int, int]] = set()
        exclude_edges: Set[Tuple[int, int]] = set()
        solo_players: Set[int] = set()

        for player_id in sorted(by_player):
            for record in by_player[player_id]:
                if record.kind is VoteKind.SOLO:
                    solo_players.add(player_id)
                    continue
                if record.target_id not in participant_set:
                    logger.debug(
                        f"Ignoring {record.kind.value} edge {player_id}->{record.target_id}: "
                        f"target is not a participant"
                    )
                    continue
                if record.kind is VoteKind.PAIR:
                    pair_edges.add((player_id, record.target_id))
                else:
                    exclude_edges.add((player_id, record.target_id))

        units = self._bonded_units(participant_set, pair_edges)
        enemies = self._enemies(exclude_edges)
        self._check_units_against_exclusions(units, enemies)
        affinity, dropped = self._soft_affinity(units, pair_edges, solo_players, enemies)

        graph = PreferenceGraph(
            participants=participant_set,
            pair_edges=frozenset(pair_edges),
            exclude_edges=frozenset(exclude_edges),
            solo_players=frozenset(solo_players),
            units=units,
            affinity=affinity,
            enemies=enemies,
            dropped_edges=dropped,
            skill_tiers=skills,
        )
        logger.info(
            f"Built preference graph: {len(participant_set)} participants, "
            f"{len(graph.bonded_units)} bonded units, {len(affinity)} soft links, "
            f"{len(exclude_edges)} exclusions, {len(dropped)} dropped edges"
        )
        return graph

    @staticmethod
    def _group_records(records: Iterable[PreferenceRecord],
                       participants: FrozenSet[int]) -> Dict[int, List[PreferenceRecord]]:
        by_player: Dict[int, List[PreferenceRecord]] = defaultdict(list)
        for record in records:
            if record.player_id not in participants:
                logger.debug(f"Ignoring vote of non-participant {record.player_id}")
                continue
            if record not in by_player[record.player_id]:
                by_player[record.player_id].append(record)
        return by_player

    @staticmethod
    def _check_contradictions(by_player: Mapping[int, List[PreferenceRecord]]) -> None:
        """Reject the whole build if any player's own records contradict each other."""
        offenders: Dict[int, str] = {}
        for player_id in sorted(by_player):
            records = by_player[player_id]
            kinds = {record.kind for record in records}
            for record in records:
                if record.kind.requires_target and record.target_id is None:
                    offenders[player_id] = f"{record.kind.value} vote without a target"
                elif not record.kind.requires_target and record.target_id is not None:
                    offenders[player_id] = "solo vote with a target"
                elif record.target_id == player_id:
                    offenders[player_id] = "vote targets the voter"
            if player_id in offenders:
                continue
            if VoteKind.SOLO in kinds and len(kinds) > 1:
                offenders[player_id] = "solo vote mixed with targeted votes"
                continue
            paired = {r.target_id for r in records if r.kind is VoteKind.PAIR}
            excluded = {r.target_id for r in records if r.kind is VoteKind.EXCLUDE}
            both = paired & excluded
            if both:
                offenders[player_id] = f"pairs with and excludes player(s) {sorted(both)}"

        if offenders:
            reason = "; ".join(f"player {pid}: {why}" for pid, why in sorted(offenders.items()))
            logger.error(f"Contradictory votes: {reason}")
            raise ContradictoryVote(offenders.keys(), reason)

    @staticmethod
    def _bonded_units(participants: FrozenSet[int], pair_edges: Set[Tuple[int, int]]) -> Tuple[Unit, ...]:
        """Connected components of the mutual-PAIR graph, singletons included."""
        parent = {player_id: player_id for player_id in participants}

        def find(player_id: int) -> int:
            while parent[player_id] != player_id:
                parent[player_id] = parent[parent[player_id]]
                player_id = parent[player_id]
            return player_id

        for source, target in sorted(pair_edges):
            if source < target and (target, source) in pair_edges:
                root_a, root_b = find(source), find(target)
                if root_a != root_b:
                    # Smallest id becomes the root for stable output
                    parent[max(root_a, root_b)] = min(root_a, root_b)

        components: Dict[int, List[int]] = defaultdict(list)
        for player_id in sorted(participants):
            components[find(player_id)].append(player_id)
        return tuple(sorted(tuple(members) for members in components.values()))

    @staticmethod
    def _enemies(exclude_edges: Set[Tuple[int, int]]) -> Dict[int, FrozenSet[int]]:
        enemies: Dict[int, Set[int]] = defaultdict(set)
        for source, target in exclude_edges:
            enemies[source].add(target)
            enemies[target].add(source)
        return {player_id: frozenset(others) for player_id, others in enemies.items()}

    @staticmethod
    def _check_units_against_exclusions(units: Tuple[Unit, ...], enemies: Mapping[int, FrozenSet[int]]) -> None:
        """A mutual bond is never broken, so an exclusion inside one cannot be satisfied."""
        for unit in units:
            if len(unit) < 2:
                continue
            members = set(unit)
            clashing = sorted(p for p in unit if enemies.get(p, frozenset()) & members)
            if clashing:
                reason = f"exclusion inside mutual pairing {list(unit)}"
                logger.error(f"Contradictory votes: {reason}")
                raise ContradictoryVote(clashing, reason)

    @staticmethod
    def _soft_affinity(units: Tuple[Unit, ...], pair_edges: Set[Tuple[int, int]],
                       solo_players: Set[int], enemies: Mapping[int, FrozenSet[int]]):
        """Weight one-directional PAIR edges between units, dropping those that hit an exclusion."""
        unit_of = {player_id: unit for unit in units for player_id in unit}
        affinity: Dict[UnitPair, int] = defaultdict(int)
        dropped: List[DroppedEdge] = []

        for source, target in sorted(pair_edges):
            if (target, source) in pair_edges:
                continue  # Mutual: already a bond
            unit_a, unit_b = unit_of[source], unit_of[target]
            if unit_a == unit_b:
                continue
            if source in solo_players or target in solo_players:
                logger.debug(f"Soft edge {source}->{target} touches a solo voter; no weight given")
                continue
            members_b = set(unit_b)
            if any(enemies.get(p, frozenset()) & members_b for p in unit_a):
                edge = DroppedEdge(
                    source_id=source,
                    target_id=target,
                    reason=f"units {list(unit_a)} and {list(unit_b)} are separated by an exclusion"
                )
                dropped.append(edge)
                logger.warning(f"Dropped soft pair {source}->{target}: {edge.reason}")
                continue
            key = (unit_a, unit_b) if unit_a < unit_b else (unit_b, unit_a)
            affinity[key] += 1

        return dict(affinity), tuple(dropped)
