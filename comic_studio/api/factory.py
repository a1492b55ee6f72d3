"""
Service Factory
===============

Factory for creating generation service instances.
"""

import logging
from typing import Optional, List, Dict, Type

from ..core.exceptions import ConfigurationError
from .base import HttpGenerationService

logger = logging.getLogger(__name__)

# Registry of available services
_SERVICES: Dict[str, Type[HttpGenerationService]] = {}


def register_service(name: str):
    """Decorator to register a service class."""
    def decorator(cls: Type[HttpGenerationService]):
        _SERVICES[name.lower()] = cls
        return cls
    return decorator


def get_service(
    name: str,
    config=None,
    **kwargs,
) -> HttpGenerationService:
    """
    Get a generation service instance.

    Args:
        name: Service name (e.g., 'gemini')
        config: Optional Config; when given, the service is built from it
        **kwargs: Additional service-specific arguments

    Returns:
        Configured service instance

    Raises:
        ConfigurationError: If the service name is not recognized
    """
    name_lower = name.lower()

    if name_lower not in _SERVICES:
        if name_lower == "gemini":
            from .gemini import GeminiService  # noqa: F401
        else:
            raise ConfigurationError(f"Unknown generation service: {name}", config_key="generation.provider")

    service_class = _SERVICES[name_lower]
    logger.debug(f"Creating generation service: {name_lower}")

    if config is not None and hasattr(service_class, "from_config"):
        return service_class.from_config(config, **kwargs)
    return service_class(**kwargs)


def list_services() -> List[str]:
    """List all registered service names."""
    from . import gemini  # noqa: F401

    return list(_SERVICES.keys())
