"""
GameConfig — connection settings and lifecycle timings.

Read from the environment (after load_dotenv() in bot/client.py).
Every timing is a field so tests can shrink the whole lifecycle to
milliseconds without patching module constants.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from game.backoff import BackoffPolicy


class GameConfig(BaseModel):
    """Settings for the game connection and its state machine."""

    # Relay / server
    relay_url: str = "ws://127.0.0.1:3050/session"
    relay_token: Optional[str] = None
    host: str = "localhost"
    port: int = 25565
    username: str = ""
    auth: str = "microsoft"
    version: str = "1.20.4"
    target_server: str = "economy-euc"

    # Post-spawn
    spawn_sequence: Optional[str] = "emerald"  # "emerald", "accept" or None
    sequence_delay: float = 2.0      # spawn → interaction sequence
    settle_delay: float = 15.0       # spawn → background tasks
    confirm_delay: float = 3.0       # server arrival message → background tasks

    # Reconnect timings
    expected_delay_min: float = 5.0
    expected_delay_max: float = 8.0
    creation_retry_delay: float = 10.0
    fault_retry_delay: float = 5.0
    liveness_retry_delay: float = 5.0
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)

    # Interaction sequencer
    hotbar_slot: int = 4
    activate_delay: float = 0.5
    window_timeout: float = 10.0
    window_settle: float = 0.2
    close_delay: float = 1.0

    # Liveness monitor
    monitor_interval: float = 120.0
    monitor_grace: float = 180.0

    # Background tasks
    anti_idle_interval: float = 180.0
    capture_interval: float = 5.0
    capture_path: Optional[str] = None

    # Transport
    quit_timeout: float = 2.0
    request_timeout: float = 10.0

    @field_validator("spawn_sequence")
    @classmethod
    def validate_spawn_sequence(cls, v):
        if v is None:
            return None
        v = v.strip().lower()
        if v in ("", "none", "off"):
            return None
        if v not in ("emerald", "accept"):
            raise ValueError(f"Unknown spawn sequence: {v}")
        return v

    @classmethod
    def from_env(cls) -> "GameConfig":
        """Build a config from GAME_* environment variables."""
        values = {
            "relay_url": os.getenv("GAME_RELAY_URL", "ws://127.0.0.1:3050/session"),
            "relay_token": os.getenv("GAME_RELAY_TOKEN") or None,
            "host": os.getenv("GAME_HOST", "localhost"),
            "port": int(os.getenv("GAME_PORT", "25565")),
            "username": os.getenv("GAME_USERNAME", ""),
            "auth": os.getenv("GAME_AUTH", "microsoft"),
            "version": os.getenv("GAME_VERSION", "1.20.4"),
            "target_server": os.getenv("GAME_TARGET_SERVER", "economy-euc"),
            "spawn_sequence": os.getenv("GAME_SPAWN_SEQUENCE", "emerald"),
            "capture_path": os.getenv("GAME_CAPTURE_PATH") or None,
        }
        return cls(**values)

    def connect_options(self) -> dict:
        """Options forwarded to the relay in the connect frame."""
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "auth": self.auth,
            "version": self.version,
        }
