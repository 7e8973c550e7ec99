from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from enum import Enum
from typing import Dict
import json

Base = declarative_base()

class SkillCategory(Enum):
    ULTRA_NOOB = "ultra_noob"
    NOOB = "noob"
    PRO = "pro"
    ULTRA_PRO = "ultra_pro"

    @property
    def tier(self) -> int:
        """0 for the weakest category up to 3 for the strongest"""
        return list(SkillCategory).index(self)

class TournamentStatus(Enum):
    """Lifecycle phase of a single tournament"""
    DRAFT = "draft"
    VOTING_OPEN = "voting_open"
    VOTING_CLOSED = "voting_closed"
    TEAMS_FORMED = "teams_formed"
    IN_PROGRESS = "in_progress"
    CONCLUDED = "concluded"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = (TournamentStatus.CONCLUDED, TournamentStatus.CANCELLED)

class VoteKind(Enum):
    PAIR = "pair"        # Play with the target player
    EXCLUDE = "exclude"  # Never share a team with the target player
    SOLO = "solo"        # No specific partner

    @property
    def requires_target(self) -> bool:
        return self in (VoteKind.PAIR, VoteKind.EXCLUDE)

class LedgerEntryKind(Enum):
    DEPOSIT = "deposit"
    ENTRY_FEE = "entry_fee"
    PRIZE = "prize"
    REFUND = "refund"

class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    username = Column(String(100), nullable=False, unique=True, index=True)
    display_name = Column(String(100))

    # Cached projection of the wallet ledger; rewritten only from the ledger sum
    balance = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=func.now())

    player = relationship("Player", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', balance={self.balance})>"

class Player(Base):
    __tablename__ = 'players'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, unique=True)
    display_name = Column(String(100), nullable=False)

    skill_category = Column(SQLEnum(SkillCategory), default=SkillCategory.NOOB, nullable=False)
    profile_image_url = Column(String(500), nullable=True)

    # Moderation; players are deactivated, never deleted
    is_banned = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=func.now())

    user = relationship("User", back_populates="player")

    @property
    def is_eligible(self) -> bool:
        return bool(self.is_active) and not self.is_banned

    def __repr__(self):
        return f"<Player(id={self.id}, name='{self.display_name}', banned={self.is_banned})>"

class Season(Base):
    __tablename__ = 'seasons'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=func.now())

    tournaments = relationship("Tournament", back_populates="season")

    def __repr__(self):
        return f"<Season(name='{self.name}', active={self.is_active})>"

class Tournament(Base):
    __tablename__ = 'tournaments'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    start_date = Column(DateTime, nullable=False)
    entry_fee = Column(Integer, nullable=True)
    season_id = Column(Integer, ForeignKey('seasons.id'), nullable=True)
    banner_image_url = Column(String(500), nullable=True)

    # Lifecycle phase
    status = Column(SQLEnum(TournamentStatus), default=TournamentStatus.DRAFT, nullable=False)

    # Voting window
    vote_start = Column(DateTime, nullable=True)
    vote_end = Column(DateTime, nullable=True)

    # Team formation configuration
    team_size = Column(Integer, nullable=False)
    min_team_size = Column(Integer, default=1, nullable=False)

    # Prize configuration: JSON object of position -> amount
    prize_distribution = Column(Text, nullable=True)

    # Transition timestamps
    created_at = Column(DateTime, default=func.now())
    teams_formed_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    concluded_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    season = relationship("Season", back_populates="tournaments")

    __table_args__ = (
        CheckConstraint('team_size > 0', name='positive_team_size_check'),
        CheckConstraint('min_team_size > 0 AND min_team_size <= team_size', name='min_team_size_check'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def prize_table(self) -> Dict[int, int]:
        """Parsed prize distribution (position -> amount)"""
        if not self.prize_distribution:
            return {}
        return {int(position): int(amount) for position, amount in json.loads(self.prize_distribution).items()}

    def __repr__(self):
        return f"<Tournament(id={self.id}, name='{self.name}', status={self.status.value})>"

class Vote(Base):
    """
    A player's single live preference.

    ``player_id`` is unique: a player holds at most one vote across all
    tournaments, and re-voting replaces the row.
    """
    __tablename__ = 'votes'

    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, unique=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)

    kind = Column(SQLEnum(VoteKind), nullable=False)
    target_player_id = Column(Integer, ForeignKey('players.id'), nullable=True)

    # Window the vote was cast in (copied from the tournament)
    vote_start = Column(DateTime, nullable=False)
    vote_end = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=func.now())

    player = relationship("Player", foreign_keys=[player_id])
    target = relationship("Player", foreign_keys=[target_player_id])
    tournament = relationship("Tournament")

    __table_args__ = (
        CheckConstraint(
            "(kind = 'SOLO' AND target_player_id IS NULL) OR "
            "(kind != 'SOLO' AND target_player_id IS NOT NULL)",
            name='vote_target_matches_kind_check'
        ),
        CheckConstraint('target_player_id IS NULL OR target_player_id != player_id', name='vote_not_self_check'),
    )

    def __repr__(self):
        return f"<Vote(player_id={self.player_id}, tournament_id={self.tournament_id}, kind={self.kind.value}, target={self.target_player_id})>"

class TournamentEnrollment(Base):
    """Organizer enrolment of an eligible player who did not vote"""
    __tablename__ = 'tournament_enrollments'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        UniqueConstraint('tournament_id', 'player_id', name='unique_enrollment_per_tournament'),
    )

class Team(Base):
    __tablename__ = 'teams'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    number = Column(Integer, nullable=False)  # 1..N within the tournament
    name = Column(String(100), nullable=False)
    capacity = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=func.now())

    tournament = relationship("Tournament")
    members = relationship(
        "TeamMember", back_populates="team",
        cascade="all, delete-orphan", order_by="TeamMember.slot"
    )

    __table_args__ = (
        UniqueConstraint('tournament_id', 'number', name='unique_team_number_per_tournament'),
        CheckConstraint('number > 0', name='positive_team_number_check'),
    )

    @property
    def player_ids(self):
        return [member.player_id for member in self.members]

    def __repr__(self):
        return f"<Team(tournament_id={self.tournament_id}, number={self.number}, members={len(self.members)})>"

class TeamMember(Base):
    __tablename__ = 'team_members'

    id = Column(Integer, primary_key=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False)
    slot = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=func.now())

    team = relationship("Team", back_populates="members")
    player = relationship("Player")

    __table_args__ = (
        UniqueConstraint('tournament_id', 'player_id', name='unique_player_per_tournament_team'),
    )

    def __repr__(self):
        return f"<TeamMember(team_id={self.team_id}, player_id={self.player_id}, slot={self.slot})>"

class Match(Base):
    """A played round; ordering among matches is by creation time only"""
    __tablename__ = 'matches'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=func.now())

    tournament = relationship("Tournament")

    def __repr__(self):
        return f"<Match(id={self.id}, tournament_id={self.tournament_id}, name='{self.name}')>"

class TournamentWinner(Base):
    __tablename__ = 'tournament_winners'

    id = Column(Integer, primary_key=True)
    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False)
    position = Column(Integer, nullable=False)  # 1 = first place
    prize_amount = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=func.now())

    player = relationship("Player")

    __table_args__ = (
        CheckConstraint('position > 0', name='positive_position_check'),
        UniqueConstraint('tournament_id', 'position', name='unique_position_per_tournament'),
        UniqueConstraint('tournament_id', 'player_id', name='unique_winner_per_tournament'),
    )

    @property
    def position_suffix(self) -> str:
        """Position with ordinal suffix (1st, 2nd, 3rd, etc.)"""
        if 10 <= self.position % 100 <= 20:
            suffix = "th"
        else:
            suffix = {1: "st", 2: "nd", 3: "rd"}.get(self.position % 10, "th")
        return f"{self.position}{suffix}"

    def __repr__(self):
        return f"<TournamentWinner(tournament_id={self.tournament_id}, player_id={self.player_id}, position={self.position})>"

class WalletEntry(Base):
    """
    Append-only wallet ledger.

    Rows are never updated or deleted. Corrections are compensating entries,
    and the balance of a player is always the sum of ``amount``.
    """
    __tablename__ = 'wallet_entries'

    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)

    sequence = Column(Integer, nullable=False)        # 1, 2, 3... per player
    amount = Column(Integer, nullable=False)          # Positive credit, negative debit
    kind = Column(SQLEnum(LedgerEntryKind), nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)

    tournament_id = Column(Integer, ForeignKey('tournaments.id'), nullable=True, index=True)

    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        UniqueConstraint('player_id', 'sequence', name='unique_ledger_sequence_per_player'),
    )

    def __repr__(self):
        return f"<WalletEntry(player_id={self.player_id}, amount={self.amount}, balance_after={self.balance_after}, kind={self.kind.value})>"

class PlayerStats(Base):
    """
    Statistics aggregate per player and season.

    ``season_id`` NULL holds the all-time row.
    """
    __tablename__ = 'player_stats'

    id = Column(Integer, primary_key=True)
    player_id = Column(Integer, ForeignKey('players.id'), nullable=False, index=True)
    season_id = Column(Integer, ForeignKey('seasons.id'), nullable=True)

    tournaments_played = Column(Integer, default=0, nullable=False)
    matches_played = Column(Integer, default=0, nullable=False)
    wins = Column(Integer, default=0, nullable=False)
    podiums = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('player_id', 'season_id', name='uq_player_season_stats'),
    )

    @property
    def win_ratio(self) -> float:
        if not self.tournaments_played:
            return 0.0
        return self.wins / self.tournaments_played

    def __repr__(self):
        return f"<PlayerStats(player_id={self.player_id}, season_id={self.season_id}, wins={self.wins}/{self.tournaments_played})>"

class Configuration(Base):
    __tablename__ = 'configurations'

    id = Column(Integer, primary_key=True)
    key = Column(String(100), nullable=False, unique=True)
    value = Column(Text, nullable=False)  # JSON-encoded
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Configuration(key='{self.key}')>"

class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    actor_id = Column(Integer, nullable=True)  # Organizer user id, NULL for system actions
    action = Column(String(100), nullable=False)
    details = Column(Text)  # JSON-encoded
    created_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<AuditLog(action='{self.action}', actor_id={self.actor_id})>"
