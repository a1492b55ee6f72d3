"""
Configuration System
====================

Centralized, validated configuration management with typed dataclasses.
"""

import os
import re
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List, Union
import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass
class GenerationConfig:
    """Generation service settings."""

    provider: str = "gemini"
    model_tier: str = "standard"
    text_model: str = "gemini-2.5-flash"
    premium_text_model: str = "gemini-2.5-pro"
    image_model: str = "gemini-2.5-flash-image"
    tts_model: str = "gemini-2.5-flash-preview-tts"
    video_model: str = "veo-3.1-fast-generate-preview"
    max_retries: int = 3
    retry_delay: float = 2.0
    timeout: int = 120
    poll_interval: float = 5.0
    max_video_wait: float = 600.0
    max_reference_images: int = 3

    VALID_PROVIDERS = {"gemini"}
    VALID_TIERS = {"standard", "premium"}

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.provider not in self.VALID_PROVIDERS:
            raise ConfigurationError(
                f"Invalid provider: {self.provider}",
                config_key="generation.provider",
            )
        if self.model_tier not in self.VALID_TIERS:
            raise ConfigurationError(
                f"Invalid model tier: {self.model_tier}",
                config_key="generation.model_tier",
            )
        if not 0 <= self.max_retries <= 10:
            raise ConfigurationError(
                f"max_retries must be 0-10, got {self.max_retries}",
                config_key="generation.max_retries",
            )
        if self.max_reference_images < 0:
            raise ConfigurationError(
                f"max_reference_images must be >= 0, got {self.max_reference_images}",
                config_key="generation.max_reference_images",
            )

    @property
    def active_text_model(self) -> str:
        return self.premium_text_model if self.model_tier == "premium" else self.text_model


@dataclass
class PipelineConfig:
    """Asset generation loop settings."""

    # Seconds to wait between items in one loop invocation
    item_delay: float = 0.0
    default_panel_count: int = 8

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.item_delay < 0:
            raise ConfigurationError(
                f"item_delay must be >= 0, got {self.item_delay}",
                config_key="pipeline.item_delay",
            )
        if self.default_panel_count < 1:
            raise ConfigurationError(
                f"default_panel_count must be >= 1, got {self.default_panel_count}",
                config_key="pipeline.default_panel_count",
            )


@dataclass
class ConsistencyConfig:
    """Character consistency verification settings."""

    gate_policy: str = "advisory"
    verify_generated: bool = True
    auto_verify_uploads: bool = True

    VALID_POLICIES = {"advisory", "blocking"}

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.gate_policy not in self.VALID_POLICIES:
            raise ConfigurationError(
                f"Invalid gate policy: {self.gate_policy}",
                config_key="consistency.gate_policy",
            )

    @property
    def is_blocking(self) -> bool:
        return self.gate_policy == "blocking"


DEFAULT_VOICE_DESCRIPTIONS = {
    "Puck": "Male, high pitch, energetic, youthful. The hero or the sidekick.",
    "Charon": "Male, low pitch, deep, gravelly, authoritative. The villain, the mentor, the monster.",
    "Kore": "Female, soft, soothing, calm. The healer, the mother, the innocent.",
    "Fenrir": "Male, rough, aggressive, intense. The warrior, the beast, the anti-hero.",
    "Zephyr": "Androgynous, balanced, neutral, clear. The narrator, the intellect, the robot.",
}


@dataclass
class VoiceConfig:
    """Voice casting settings."""

    default_voice: str = "Puck"
    narrator_voice: str = "Charon"
    available: List[str] = field(default_factory=lambda: ["Puck", "Charon", "Kore", "Fenrir", "Zephyr"])
    descriptions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_VOICE_DESCRIPTIONS))

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.available:
            raise ConfigurationError(
                "At least one voice must be available",
                config_key="voices.available",
            )


@dataclass
class StorageConfig:
    """Persistence settings."""

    db_path: str = "./data/studio.db"
    max_active_slots: int = 3
    max_project_bytes: int = 50 * 1024 * 1024
    export_path: str = "./exports"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.max_active_slots < 1:
            raise ConfigurationError(
                f"max_active_slots must be >= 1, got {self.max_active_slots}",
                config_key="storage.max_active_slots",
            )
        if self.max_project_bytes <= 0:
            raise ConfigurationError(
                f"max_project_bytes must be positive, got {self.max_project_bytes}",
                config_key="storage.max_project_bytes",
            )


# =============================================================================
# Main Configuration Class
# =============================================================================


SECTIONS = ["generation", "pipeline", "consistency", "voices", "storage"]


@dataclass
class Config:
    """
    Main configuration container with validation and loading.

    Provides a unified interface to all configuration settings with:
    - Type-safe access to configuration values
    - Validation on load and modification
    - Environment variable interpolation
    """

    generation: GenerationConfig = field(default_factory=GenerationConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    consistency: ConsistencyConfig = field(default_factory=ConsistencyConfig)
    voices: VoiceConfig = field(default_factory=VoiceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Raw config for service-specific extensions
    _raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Config":
        """
        Load configuration from file with environment variable interpolation.

        Args:
            path: Path to YAML config file

        Returns:
            Validated Config instance
        """
        search_paths = [
            Path("./config/studio.yaml"),
            Path("./studio.yaml"),
            Path.home() / ".comic-studio" / "config.yaml",
        ]

        if path:
            search_paths.insert(0, Path(path))

        config_data = {}

        for search_path in search_paths:
            if search_path.exists():
                logger.info(f"Loading config from: {search_path}")
                try:
                    with open(search_path, "r") as f:
                        config_data = yaml.safe_load(f) or {}
                    break
                except yaml.YAMLError as e:
                    raise ConfigurationError(
                        f"Invalid YAML in config file: {e}",
                        config_key=str(search_path),
                    )
        else:
            logger.info("No config file found, using defaults")

        config_data = cls._interpolate_env_vars(config_data)

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary with validation."""
        try:
            return cls(
                generation=GenerationConfig(**data.get("generation", {})),
                pipeline=PipelineConfig(**data.get("pipeline", {})),
                consistency=ConsistencyConfig(**data.get("consistency", {})),
                voices=VoiceConfig(**data.get("voices", {})),
                storage=StorageConfig(**data.get("storage", {})),
                _raw=data,
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @staticmethod
    def _interpolate_env_vars(data: Any) -> Any:
        """Recursively interpolate ${VAR} patterns with environment variables."""
        if isinstance(data, str):
            # Handle ${VAR} and ${VAR:-default} patterns
            pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

            def replace(match):
                var_name = match.group(1)
                default = match.group(2) or ""
                return os.environ.get(var_name, default)

            return re.sub(pattern, replace, data)
        elif isinstance(data, dict):
            return {k: Config._interpolate_env_vars(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [Config._interpolate_env_vars(item) for item in data]
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {section: asdict(getattr(self, section)) for section in SECTIONS}

    def get_service_config(self, provider: str) -> Dict[str, Any]:
        """Get provider-specific settings from the raw `services` block."""
        return self._raw.get("services", {}).get(provider, {})


# =============================================================================
# Convenience Functions
# =============================================================================


_global_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance (lazily loaded)."""
    global _global_config
    if _global_config is None:
        _global_config = Config.load()
    return _global_config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Reset global configuration to None (forces reload on next access)."""
    global _global_config
    _global_config = None
