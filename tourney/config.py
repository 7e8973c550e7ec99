import json
import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Engine configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///tourney.db')

    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'True').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    # Team formation settings
    DEFAULT_TEAM_SIZE = int(os.getenv('DEFAULT_TEAM_SIZE', 2))
    DEFAULT_MIN_TEAM_SIZE = int(os.getenv('DEFAULT_MIN_TEAM_SIZE', 1))
    MAX_TEAM_SIZE = int(os.getenv('MAX_TEAM_SIZE', 4))
    PARTITION_SEARCH_BUDGET = int(os.getenv('PARTITION_SEARCH_BUDGET', 10000))

    # Settlement settings
    DEFAULT_PRIZE_DISTRIBUTION = {1: 340, 2: 140}  # position -> prize amount
    WALLET_MAX_RETRIES = int(os.getenv('WALLET_MAX_RETRIES', 3))

    @classmethod
    def get_default_prize_distribution(cls):
        """Get the default prize table, optionally overridden by PRIZE_DISTRIBUTION (JSON)"""
        raw = os.getenv('PRIZE_DISTRIBUTION', '')
        if raw:
            try:
                return {int(position): int(amount) for position, amount in json.loads(raw).items()}
            except (ValueError, AttributeError):
                raise ValueError("PRIZE_DISTRIBUTION must be a JSON object of position -> amount")
        return dict(cls.DEFAULT_PRIZE_DISTRIBUTION)

    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if not 1 <= cls.DEFAULT_TEAM_SIZE <= cls.MAX_TEAM_SIZE:
            raise ValueError(f"DEFAULT_TEAM_SIZE must be between 1 and {cls.MAX_TEAM_SIZE}")
        if not 1 <= cls.DEFAULT_MIN_TEAM_SIZE <= cls.DEFAULT_TEAM_SIZE:
            raise ValueError("DEFAULT_MIN_TEAM_SIZE must be between 1 and DEFAULT_TEAM_SIZE")
        if cls.PARTITION_SEARCH_BUDGET <= 0:
            raise ValueError("PARTITION_SEARCH_BUDGET must be positive")
        if cls.WALLET_MAX_RETRIES <= 0:
            raise ValueError("WALLET_MAX_RETRIES must be positive")
