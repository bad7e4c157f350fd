"""
Configuration management for Kortex.

Provides configuration dataclass and environment variable loading.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()


def get_base_dir() -> Path:
    """Get the base directory for Kortex data."""
    return Path.home() / ".kortex"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    return Path(value).expanduser() if value else default


@dataclass
class KortexConfig:
    """Configuration for the Kortex core.

    Loaded once at startup. Nothing re-reads the environment afterwards.
    """

    # LLM settings
    api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("KORTEX_API_KEY")
    )
    model_endpoint: str = field(
        default_factory=lambda: os.getenv(
            "KORTEX_ENDPOINT",
            "http://127.0.0.1:1234/v1"
        )
    )
    model: str = field(
        default_factory=lambda: os.getenv("KORTEX_MODEL", "qwen2.5:7b")
    )

    # Storage
    db_path: Path = field(
        default_factory=lambda: _env_path("KORTEX_DB_PATH", get_base_dir() / "kortex.db")
    )
    flight_recorder_path: Path = field(
        default_factory=lambda: _env_path(
            "KORTEX_FLIGHT_RECORDER",
            get_base_dir() / "flight_recorder.jsonl",
        )
    )

    # Browser settings
    headless: bool = field(
        default_factory=lambda: _env_flag("KORTEX_HEADLESS")
    )

    # Timeouts (ms)
    navigation_timeout: int = 30000
    action_timeout: int = 10000

    # Snapshot settings
    name_max_chars: int = 50
    snapshot_max_depth: int = 256

    # Agent settings
    max_steps: int = 30
    memory_context_limit: int = 3
    remember_outcomes: bool = False
    queue_size: int = 16

    # Flight recorder
    redact_secrets: bool = True
    fsync_records: bool = False

    # Embeddings (sentence-transformers model name)
    embedding_model: str = field(
        default_factory=lambda: os.getenv("KORTEX_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
    )

    # Debug mode - enables verbose logging (off by default)
    debug: bool = field(
        default_factory=lambda: _env_flag("KORTEX_DEBUG")
    )

    def ensure_directories(self) -> None:
        """Ensure the parent directories of all data files exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.flight_recorder_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_cli_args(
        cls,
        headless: Optional[bool] = None,
        max_steps: Optional[int] = None,
        model_endpoint: Optional[str] = None,
        model: Optional[str] = None,
        db_path: Optional[str] = None,
        flight_recorder_path: Optional[str] = None,
        remember_outcomes: bool = False,
        debug: bool = False,
    ) -> "KortexConfig":
        """Create configuration from CLI arguments, falling back to the environment."""
        config = cls()
        if headless is not None:
            config.headless = headless
        if max_steps is not None:
            config.max_steps = max_steps
        if model_endpoint:
            config.model_endpoint = model_endpoint
        if model:
            config.model = model
        if db_path:
            config.db_path = Path(db_path).expanduser()
        if flight_recorder_path:
            config.flight_recorder_path = Path(flight_recorder_path).expanduser()
        config.remember_outcomes = remember_outcomes
        config.debug = config.debug or debug
        return config


# Default configuration values for documentation
DEFAULTS = {
    "headless": False,
    "max_steps": 30,
    "model_endpoint": "http://127.0.0.1:1234/v1",
    "model": "qwen2.5:7b",
    "navigation_timeout_ms": 30000,
    "action_timeout_ms": 10000,
    "name_max_chars": 50,
    "memory_context_limit": 3,
}
