"""
Error taxonomy for the team-formation engine with organizer-friendly messages.

Every error carries a developer-facing message and a ``user_message`` that
organizer tooling can show verbatim.
"""

from typing import Iterable, Sequence


class TourneyError(Exception):
    """Base exception for all engine errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


# ============================================================================
# Validation errors: never auto-corrected, surfaced verbatim
# ============================================================================

class OutsideVotingWindow(TourneyError):
    """Raised when a vote arrives while the tournament is not accepting votes."""
    def __init__(self, tournament_id: int, reason: str):
        self.tournament_id = tournament_id
        super().__init__(
            f"Tournament {tournament_id} is not accepting votes: {reason}",
            "Voting for this tournament is closed."
        )

class InvalidTarget(TourneyError):
    """Raised when a PAIR/EXCLUDE target (or its absence) is not acceptable."""
    def __init__(self, player_id: int, target_player_id, reason: str):
        self.player_id = player_id
        self.target_player_id = target_player_id
        super().__init__(
            f"Invalid vote target {target_player_id} for player {player_id}: {reason}",
            f"That player cannot be chosen: {reason}."
        )

class PlayerAlreadyOnTeam(TourneyError):
    """Raised when a player who already has a team tries to vote again."""
    def __init__(self, player_id: int, tournament_id: int):
        self.player_id = player_id
        self.tournament_id = tournament_id
        super().__init__(
            f"Player {player_id} is already on a team in tournament {tournament_id}",
            "You are already on a team for this tournament."
        )

class ContradictoryVote(TourneyError):
    """Raised when the vote ledger holds preferences that cannot all be true."""
    def __init__(self, player_ids: Iterable[int], reason: str):
        self.player_ids = tuple(sorted(player_ids))
        super().__init__(
            f"Contradictory votes for players {list(self.player_ids)}: {reason}",
            "Some votes contradict each other and must be corrected before teams can be formed."
        )

class CapacityViolation(TourneyError):
    """Raised when bonded units do not fit the configured team size."""
    def __init__(self, units: Sequence[Sequence[int]], team_size: int):
        self.units = tuple(tuple(unit) for unit in units)
        self.team_size = team_size
        super().__init__(
            f"Bonded units {[list(u) for u in self.units]} exceed team size {team_size}",
            f"Some mutual pairings are larger than the team size of {team_size}."
        )

class InvalidStandings(TourneyError):
    """Raised when final positions are not exactly 1..N without repeats."""
    def __init__(self, reason: str):
        super().__init__(
            f"Invalid standings: {reason}",
            f"The standings are invalid: {reason}."
        )

class PlayerNotEligible(TourneyError):
    """Raised when a banned or deactivated player tries to act."""
    def __init__(self, player_id: int, reason: str):
        self.player_id = player_id
        super().__init__(
            f"Player {player_id} is not eligible: {reason}",
            f"You cannot do that right now: {reason}."
        )

# ============================================================================
# Locally recovered errors
# ============================================================================

class InsufficientBalance(TourneyError):
    """Raised when a wallet debit would take the balance below zero."""
    def __init__(self, player_id: int, balance: int, amount: int):
        self.player_id = player_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient balance for player {player_id}. Current: {balance}, Attempted: {amount}",
            "Your wallet balance is too low."
        )

class ConcurrentTransitionConflict(TourneyError):
    """Raised when another caller moved the tournament out of the expected state."""
    def __init__(self, tournament_id: int, expected: str, actual: str = None):
        self.tournament_id = tournament_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Tournament {tournament_id} left state {expected} concurrently (now {actual})",
            "Another update to this tournament happened at the same time. Please retry."
        )

# ============================================================================
# Lookup, state and storage errors
# ============================================================================

class TournamentNotFound(TourneyError):
    def __init__(self, tournament_id: int):
        self.tournament_id = tournament_id
        super().__init__(
            f"Tournament {tournament_id} not found",
            "Tournament not found."
        )

class PlayerNotFound(TourneyError):
    def __init__(self, player_id: int):
        self.player_id = player_id
        super().__init__(
            f"Player {player_id} not found",
            "Player not found."
        )

class TournamentStateError(TourneyError):
    """Raised when an operation is not allowed in the tournament's current state."""
    def __init__(self, tournament_id: int, current: str, operation: str):
        self.tournament_id = tournament_id
        self.current = current
        self.operation = operation
        super().__init__(
            f"Cannot {operation} tournament {tournament_id} in state {current}",
            f"This tournament is {current.lower().replace('_', ' ')}; you cannot {operation} it now."
        )

class StorageUnavailable(TourneyError):
    """Raised when the storage collaborator fails mid-operation."""
    def __init__(self, operation: str, details: str = None):
        self.operation = operation
        super().__init__(
            f"Storage error during {operation}: {details}",
            "The service is temporarily unavailable. Nothing was changed; please try again later."
        )
