"""
Configuration management for plaintrack.

Uses pydantic-settings for environment variable binding.
All settings can be overridden via environment variables with PLAINTRACK_ prefix.
"""

import logging
import sys
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable binding."""
    
    model_config = SettingsConfigDict(
        env_prefix="PLAINTRACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
    
    # ==========================================
    # Data Storage
    # ==========================================
    root_dir: Path = Path(".plaintrack")
    """Root directory holding items/, plans/ and embeddings/."""
    
    # ==========================================
    # Semantic Search
    # ==========================================
    semantic_search_enabled: bool = True
    openai_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 32
    
    embedding_timeout_seconds: float = 30.0
    """Upper bound on a single call into the embedding model."""
    
    # ==========================================
    # Watcher
    # ==========================================
    watch_debounce_ms: int = 150
    """Quiet window that collapses a burst of events into one batch."""
    
    watch_retry_delay_ms: int = 300
    watch_max_retries: int = 3
    watch_queue_capacity: int = 512
    watch_pending_cap: int = 1024
    recently_edited_ttl_seconds: float = 2.0
    
    # ==========================================
    # Graph
    # ==========================================
    tree_max_nodes: int = 2000
    """Maximum nodes emitted by a single full-mode dependency tree."""
    
    # ==========================================
    # Logging
    # ==========================================
    log_level: str = "INFO"
    log_file: Path | None = None
    
    # ==========================================
    # Computed Properties
    # ==========================================
    @property
    def items_dir(self) -> Path:
        return self.root_dir / "items"
    
    @property
    def plans_dir(self) -> Path:
        return self.root_dir / "plans"
    
    @property
    def embeddings_dir(self) -> Path:
        return self.root_dir / "embeddings"
    
    def ensure_directories(self) -> None:
        """Create all required directories if they don't exist."""
        for directory in [self.items_dir, self.plans_dir, self.embeddings_dir]:
            directory.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()


def setup_logging(level: str | None = None) -> None:
    """Configure application logging."""
    log_level = level or settings.log_level
    
    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
    ]
    
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        handlers=handlers,
        force=True,
    )
    
    # Quiet noisy libraries
    logging.getLogger("watchdog").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name."""
    return logging.getLogger(f"plaintrack.{name}")
