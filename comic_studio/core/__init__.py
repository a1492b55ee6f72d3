"""
Core Module
===========

Configuration, exceptions, and security helpers for Comic Studio.
"""

from .config import (
    Config,
    GenerationConfig,
    PipelineConfig,
    ConsistencyConfig,
    VoiceConfig,
    StorageConfig,
    get_config,
    set_config,
    reset_config,
)
from .exceptions import (
    StudioError,
    ConfigurationError,
    ServiceError,
    RateLimitedError,
    InvalidInputError,
    ServiceUnavailableError,
    SafetyRejectedError,
    ValidationError,
    StageCallError,
    TransitionError,
    PreconditionError,
    BusyError,
    PersistenceError,
    ResourceNotFoundError,
)
from .security import sanitize_filename, redact_api_key

__all__ = [
    # Configuration
    "Config",
    "GenerationConfig",
    "PipelineConfig",
    "ConsistencyConfig",
    "VoiceConfig",
    "StorageConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Exceptions
    "StudioError",
    "ConfigurationError",
    "ServiceError",
    "RateLimitedError",
    "InvalidInputError",
    "ServiceUnavailableError",
    "SafetyRejectedError",
    "ValidationError",
    "StageCallError",
    "TransitionError",
    "PreconditionError",
    "BusyError",
    "PersistenceError",
    "ResourceNotFoundError",
    # Security
    "sanitize_filename",
    "redact_api_key",
]
