"""
Escape Room Server Configuration

This file contains all server-side configurable settings.
Modify these values to tune lobby, timer and puzzle behaviour.
"""

from dataclasses import dataclass
import os


@dataclass
class ServerConfig:
    """Server networking configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = os.getenv("ESCAPE_LOG_LEVEL", "INFO")


@dataclass
class GameConfig:
    """Lobby and membership settings."""
    MAX_PLAYERS: int = 10
    MIN_PLAYERS_TO_START: int = 2
    HEARTBEAT_INTERVAL: int = 10  # Seconds between lastActive refreshes
    PLAYER_IDLE_TIMEOUT: int = 60  # Seconds without heartbeat before pruning
    LOBBY_MAX_AGE: int = 6 * 3600  # Seconds before an abandoned lobby is dropped
    INTRO_DELAY_MS: int = 5000  # Countdown before the intro video starts
    ROOM_CODE_LENGTH: int = 6
    PLAYER_ID_LENGTH: int = 20
    MIN_NAME_LENGTH: int = 2
    MAX_NAME_LENGTH: int = 30

    # Votes from players who left keep counting until the host resets them.
    # Set to True to drop a departed player's votes and candidacy on leave.
    PRUNE_DEPARTED_VOTES: bool = False

    # A leader needs ceil(N/2) votes. Set to True to require more than half.
    STRICT_MAJORITY_VOTE: bool = False


@dataclass
class TimerConfig:
    """Countdown timer settings."""
    DEFAULT_TIME_LIMIT_MINUTES: int = 30
    DEFAULT_PENALTY_SECONDS: int = 120
    START_PHASE: int = 1  # Timer starts when this phase is first entered


@dataclass
class PuzzleDefaults:
    """Shared input channel settings."""
    INPUT_CLEAR_DELAY: float = 1.0  # Seconds a wrong entry stays visible
    LOGIN_PENALIZE_FROM_ATTEMPT: int = 2
    FIREWALL_PENALIZE_FROM_ATTEMPT: int = 1
    KEYPAD_PENALIZE_FROM_ATTEMPT: int = 0  # 0 = never penalise
    CLUE_DELAYS: tuple = ((1, 300), (2, 30))  # (phase, seconds after entering)


@dataclass
class DatabaseConfig:
    """Database configuration."""
    DATABASE_URL: str = os.getenv("ESCAPE_DATABASE_URL", "")
    ECHO_SQL: bool = False  # Log SQL queries
    PERSIST_INTERVAL: float = 2.0  # Seconds between lobby snapshot flushes


@dataclass
class Settings:
    """Main settings container."""
    server: ServerConfig = None
    game: GameConfig = None
    timer: TimerConfig = None
    puzzles: PuzzleDefaults = None
    database: DatabaseConfig = None

    # Application info
    APP_NAME: str = "EscapeRoom"
    VERSION: str = "0.1.0"
    DEBUG: bool = True

    def __post_init__(self):
        self.server = self.server or ServerConfig()
        self.game = self.game or GameConfig()
        self.timer = self.timer or TimerConfig()
        self.puzzles = self.puzzles or PuzzleDefaults()
        self.database = self.database or DatabaseConfig()


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings
