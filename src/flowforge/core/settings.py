"""Settings management for flowforge with environment variable override support."""

import json
import logging
import os
import stat
import tempfile
import threading
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class LLMSettings(BaseModel):
    """Completion model configuration.

    The model name is anything `llm.get_model()` resolves, including plugin
    models such as "anthropic/claude-sonnet-4-0".
    """

    model: str = Field(default="anthropic/claude-sonnet-4-0")
    temperature: float = Field(default=0.0)

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is in the range models accept."""
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"Invalid temperature: {v}. Must be between 0.0 and 2.0")
        return v


class CatalogSettings(BaseModel):
    """Node catalog MCP server configuration.

    Mirrors the standard MCP server entry format: stdio servers use
    command/args/env, HTTP servers use url/headers.

    Examples:
        {"transport": "stdio", "command": "npx", "args": ["n8n-mcp"]}

        {"transport": "http", "url": "https://catalog.example.com/mcp",
         "headers": {"Authorization": "Bearer ${CATALOG_TOKEN}"}}
    """

    transport: str = Field(default="stdio")
    command: str = Field(default="npx")
    args: list[str] = Field(default_factory=lambda: ["-y", "n8n-mcp"])
    env: dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = Field(default=None)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=30.0, description="Per-call timeout in seconds")
    max_attempts: int = Field(default=3, description="Attempts per catalog call, including the first")
    base_delay: float = Field(default=1.0, description="Backoff base delay in seconds")
    max_delay: float = Field(default=30.0, description="Backoff delay cap in seconds")

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        """Validate transport is supported."""
        if v not in ["stdio", "http"]:
            raise ValueError(f"Invalid transport: {v}. Must be 'stdio' or 'http'")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class PipelineSettings(BaseModel):
    """Pipeline behaviour shared by all phase runners."""

    task_cache_ttl: float = Field(default=900.0, description="Task template cache TTL in seconds")
    essentials_cache_ttl: float = Field(default=3600.0, description="Node essentials cache TTL in seconds")
    config_concurrency: int = Field(default=3, description="Max concurrent configurations in parallel batches")
    validation_timeout: float = Field(default=120.0, description="Timeout for the whole validation fix loop")
    validation_max_attempts: int = Field(default=5)
    sessions_dir: str = Field(default="~/.flowforge/sessions")

    @field_validator("config_concurrency", "validation_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counters are positive."""
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v


class FlowforgeSettings(BaseModel):
    """Main settings configuration."""

    version: str = Field(default="1.0.0")
    llm: LLMSettings = Field(default_factory=LLMSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)


class SettingsManager:
    """Manages flowforge settings with environment variable override support."""

    def __init__(self, settings_path: Optional[Path] = None):
        self.settings_path = settings_path or Path.home() / ".flowforge" / "settings.json"
        self._settings: Optional[FlowforgeSettings] = None
        # Lock for thread-safe load-modify-save operations
        self._lock = threading.Lock()

    def load(self) -> FlowforgeSettings:
        """Load settings with environment variable overrides."""
        if self._settings is None:
            self._settings = self._load_from_file()
        settings = self._settings
        self._apply_env_overrides(settings)
        return settings

    def reload(self) -> FlowforgeSettings:
        """Force reload settings from file."""
        self._settings = None
        return self.load()

    def _load_from_file(self) -> FlowforgeSettings:
        """Load settings from file or return defaults."""
        if self.settings_path.exists():
            try:
                with open(self.settings_path) as f:
                    data = json.load(f)
                return FlowforgeSettings(**data)
            except Exception as e:
                # If file is corrupted, use defaults
                logger.warning(f"Failed to load settings from {self.settings_path} ({e}); using defaults")
        return FlowforgeSettings()

    def _apply_env_overrides(self, settings: FlowforgeSettings) -> None:
        """Apply environment variable overrides."""
        env_model = os.getenv("FLOWFORGE_MODEL")
        if env_model:
            settings.llm.model = env_model

        env_timeout = os.getenv("FLOWFORGE_VALIDATION_TIMEOUT")
        if env_timeout is not None:
            try:
                settings.pipeline.validation_timeout = float(env_timeout)
            except ValueError:
                logger.warning(
                    f"Invalid FLOWFORGE_VALIDATION_TIMEOUT: {env_timeout}. "
                    f"Using: {settings.pipeline.validation_timeout}"
                )

        env_url = os.getenv("FLOWFORGE_CATALOG_URL")
        if env_url:
            settings.catalog.transport = "http"
            settings.catalog.url = env_url

    def save(self, settings: Optional[FlowforgeSettings] = None) -> None:
        """Save settings to file with atomic operations and secure permissions."""
        if settings is None:
            settings = self.load()

        self.settings_path.parent.mkdir(parents=True, exist_ok=True)

        # Atomic write pattern: write to temp file, then replace
        temp_fd, temp_path = tempfile.mkstemp(dir=self.settings_path.parent, prefix=".settings.", suffix=".tmp")

        try:
            with open(temp_fd, "w", encoding="utf-8") as f:
                json.dump(settings.model_dump(), f, indent=2)

            os.replace(temp_path, self.settings_path)

            # Catalog headers may hold tokens
            os.chmod(self.settings_path, stat.S_IRUSR | stat.S_IWUSR)  # 0o600

            # Clear cache to force reload on next access
            self._settings = None

        except Exception:
            Path(temp_path).unlink(missing_ok=True)
            raise

    def set_model(self, model: str) -> None:
        """Persist the completion model name."""
        with self._lock:
            settings = self._load_from_file()
            settings.llm.model = model
            self.save(settings)

    def set_catalog_url(self, url: str) -> None:
        """Point the catalog at a streamable-HTTP MCP endpoint."""
        with self._lock:
            settings = self._load_from_file()
            settings.catalog.transport = "http"
            settings.catalog.url = url
            self.save(settings)
