# Kanban sync: configuration
# Override paths, tier and timings via a YAML file or environment variables.

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("~/.config/kanban-sync/config.yaml")
CONFIG_ENV = "KANBAN_SYNC_CONFIG"
DB_ENV = "KANBAN_SYNC_DB"


@dataclass
class SyncConfig:
    """Runtime configuration for the board and its sync tiers."""

    # Local store
    db_path: str = "~/.local/share/kanban-sync/board.db"

    # Initial tier when no sync settings are stored yet: none|filesystem|gist|manual
    adapter: str = "none"
    file_path: Optional[str] = None      # filesystem tier target
    export_path: Optional[str] = None    # manual tier auto-export target

    # Gist tier
    gist_api_url: str = "https://api.github.com"
    token_env: str = "KANBAN_GIST_TOKEN"  # env var holding the token

    # Behavior
    debounce_seconds: float = 5.0
    timeout_seconds: float = 30.0
    quiescent_seconds: float = 2.0

    def resolve_paths(self):
        """Expand ~ and apply environment overrides."""
        env_db = os.environ.get(DB_ENV)
        if env_db:
            self.db_path = env_db
        self.db_path = str(Path(self.db_path).expanduser())
        if self.file_path:
            self.file_path = str(Path(self.file_path).expanduser())
        if self.export_path:
            self.export_path = str(Path(self.export_path).expanduser())

    def gist_token(self) -> Optional[str]:
        """Token from the configured environment variable, if set."""
        return os.environ.get(self.token_env) or None

    @classmethod
    def load(cls, path: Optional[str] = None) -> "SyncConfig":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path or os.environ.get(CONFIG_ENV) or CONFIG_PATH).expanduser()
        known = {f.name for f in fields(cls)}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except (OSError, yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                cfg = cls()
        else:
            cfg = cls()
        cfg.resolve_paths()
        return cfg
