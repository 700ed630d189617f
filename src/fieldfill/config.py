from dotenv import load_dotenv
from dataclasses import dataclass
from pathlib import Path
import json
import os

load_dotenv()  # Loads variables from .env file


class Settings:
    """
    Manages process-level settings loaded from environment variables.
    """
    STORAGE_BACKEND = os.getenv("FIELDFILL_STORAGE_BACKEND", "sqlite")  # "sqlite" or "memory"
    STORAGE_PATH = os.getenv("FIELDFILL_STORAGE_PATH", "fieldfill_storage.db")
    LOG_LEVEL = os.getenv("FIELDFILL_LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("FIELDFILL_LOG_FILE")
    SITE_RULES_PATH = os.getenv("FIELDFILL_SITE_RULES")


settings = Settings()


@dataclass
class CoreConfig:
    """Tunables for caching, detection, learning and storage."""

    # Field decision cache (fingerprint -> DetectedField)
    field_cache_max_size: int = 200
    field_cache_timeout_ms: int = 5 * 60 * 1000

    # Storage read cache
    storage_cache_max_size: int = 50
    storage_cache_timeout_ms: int = 30 * 60 * 1000

    # Hostname -> SiteRule match cache
    url_cache_max_size: int = 100
    url_cache_timeout_ms: int = 10 * 60 * 1000

    # Minimum pattern score for a type to win (low bucket starts here)
    min_pattern_score: float = 0.2
    # Added to a type whose keyword group appears in the section text
    context_boost: float = 0.1

    # Mutation debouncing
    debounce_ms: int = 50
    max_debounce_wait_ms: int = 500

    # Storage
    batch_window_ms: int = 50
    compression_threshold: int = 1000  # bytes of JSON
    sync_quota_bytes: int = 100 * 1024
    sync_item_quota_bytes: int = 8 * 1024
    local_quota_bytes: int = 5 * 1024 * 1024
    local_item_quota_bytes: int = 1024 * 1024

    # Learning
    max_learning_entries: int = 1000
    quota_trim_fraction: float = 0.2  # Share of oldest corrections dropped on quota error
    retrain_min_support: int = 3

    # Multi-step forms
    default_step_wait_ms: int = 1000
    step_stall_timeout_ms: int = 15000

    @classmethod
    def from_env(cls) -> "CoreConfig":
        """Load configuration from environment variables.

        Environment variables are prefixed with FIELDFILL_
        e.g., FIELDFILL_FIELD_CACHE_MAX_SIZE=500

        Returns:
            CoreConfig with values from environment
        """
        config = cls()
        prefix = "FIELDFILL_"

        for field_name in config.__dataclass_fields__:
            env_value = os.getenv(f"{prefix}{field_name.upper()}")
            if env_value is None:
                continue

            field_type = config.__dataclass_fields__[field_name].type
            try:
                if field_type in (int, "int"):
                    setattr(config, field_name, int(env_value))
                elif field_type in (float, "float"):
                    setattr(config, field_name, float(env_value))
            except ValueError:
                pass  # Keep default if conversion fails

        return config

    @classmethod
    def from_file(cls, path: str) -> "CoreConfig":
        """Load configuration from a JSON file.

        The file may hold the values at top level or under a "core" key.
        Missing files yield the defaults.
        """
        config = cls()
        file_path = Path(path)

        if not file_path.exists():
            return config

        with open(file_path, 'r') as f:
            data = json.load(f)

        core = data.get('core', data)

        for field_name in config.__dataclass_fields__:
            if field_name in core:
                setattr(config, field_name, core[field_name])

        return config

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        return {
            field_name: getattr(self, field_name)
            for field_name in self.__dataclass_fields__
        }

    def save_to_file(self, path: str) -> None:
        """Save current configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump({'core': self.to_dict()}, f, indent=2)


# Global default configuration instance
default_config = CoreConfig()
