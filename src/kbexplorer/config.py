"""kbexplorer configuration management.

Handles persistent settings stored in ~/.kbexplorer/config.json
"""

import json
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional

from kbexplorer.errors import ConfigurationError


# Default configuration values
DEFAULT_PAGE_SIZE = 10
DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_SEARCH_DEBOUNCE = 0.5
DEFAULT_OFFLINE_LATENCY = 0.5
DEFAULT_OFFLINE_WRITE_LATENCY = 0.2
DEFAULT_OFFLINE_INDEX_DELAY = 2.0
DEFAULT_OFFLINE_SYNC_DELAY = 2.0

# Environment variables that take precedence over the config file
ENV_OVERRIDES = {
    "backend_url": "KBEXPLORER_BACKEND_URL",
    "auth_url": "KBEXPLORER_AUTH_URL",
    "auth_anon_key": "KBEXPLORER_AUTH_ANON_KEY",
}


def get_config_dir() -> Path:
    """Directory holding the config file and local storage."""
    return Path.home() / ".kbexplorer"


@dataclass
class ExplorerConfig:
    """kbexplorer application configuration."""
    
    # Backend endpoints
    backend_url: Optional[str] = None
    auth_url: Optional[str] = None
    auth_anon_key: Optional[str] = None
    
    # Operating mode: False runs against bundled sample data and local storage
    online: bool = False
    
    # Browsing
    page_size: int = DEFAULT_PAGE_SIZE
    search_debounce: float = DEFAULT_SEARCH_DEBOUNCE
    
    # Membership polling while operations are pending
    poll_interval: float = DEFAULT_POLL_INTERVAL
    
    # Self-contained mode timings
    offline_latency: float = DEFAULT_OFFLINE_LATENCY
    offline_write_latency: float = DEFAULT_OFFLINE_WRITE_LATENCY
    offline_index_delay: float = DEFAULT_OFFLINE_INDEX_DELAY
    offline_sync_delay: float = DEFAULT_OFFLINE_SYNC_DELAY
    
    # Local key/value storage (None = ~/.kbexplorer/storage.db)
    storage_path: Optional[str] = None
    
    @classmethod
    def get_config_path(cls) -> Path:
        """Get the path to the config file."""
        return get_config_dir() / "config.json"
    
    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ExplorerConfig":
        """Load configuration from file, or return defaults if not found.
        
        Environment overrides are applied on top of whatever was loaded.
        """
        config_path = path or cls.get_config_path()
        config = cls()
        
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                # Only use known fields to avoid issues with old config versions
                known_fields = {f.name for f in fields(cls)}
                filtered_data = {k: v for k, v in data.items() if k in known_fields}
                config = cls(**filtered_data)
            except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
                # Invalid config, use defaults
                config = cls()
        
        config.apply_env()
        return config
    
    def apply_env(self) -> None:
        """Apply environment variable overrides."""
        for field_name, env_name in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                setattr(self, field_name, value)
    
    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        config_path = path or self.get_config_path()
        
        # Ensure directory exists
        config_path.parent.mkdir(parents=True, exist_ok=True)
        
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f, indent=2)
    
    def reset(self) -> None:
        """Reset configuration to defaults."""
        defaults = ExplorerConfig()
        for f in fields(self):
            setattr(self, f.name, getattr(defaults, f.name))
    
    def set_value(self, key: str, raw: str) -> None:
        """Set a field from its string form, coercing to the field's type."""
        known = {f.name: f for f in fields(self)}
        if key not in known:
            raise ConfigurationError(f"Unknown setting: {key}")
        current = getattr(ExplorerConfig(), key)
        try:
            if isinstance(current, bool):
                lowered = raw.strip().lower()
                if lowered not in {"true", "false", "1", "0", "yes", "no", "on", "off"}:
                    raise ValueError(raw)
                value = lowered in {"true", "1", "yes", "on"}
            elif isinstance(current, int):
                value = int(raw)
            elif isinstance(current, float):
                value = float(raw)
            else:
                value = raw or None
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {key}: {raw!r}") from e
        setattr(self, key, value)
    
    def resolve_storage_path(self) -> Path:
        """Path of the SQLite file backing local storage."""
        if self.storage_path:
            return Path(self.storage_path).expanduser()
        return get_config_dir() / "storage.db"
    
    def require_backend_url(self) -> str:
        """Return the backend URL or fail if online mode has none configured."""
        if not self.backend_url:
            raise ConfigurationError(
                f"Backend URL is not set (config 'backend_url' or ${ENV_OVERRIDES['backend_url']})"
            )
        return self.backend_url.rstrip("/")
