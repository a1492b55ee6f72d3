"""
API Module
==========

Generation service contracts and the Gemini implementation.
"""

from .base import (
    GenerationService,
    ConsistencyService,
    HttpGenerationService,
    Artifact,
    ConsistencyVerdict,
)
from .factory import get_service, list_services, register_service
from .gemini import GeminiService
from . import schemas

__all__ = [
    "GenerationService",
    "ConsistencyService",
    "HttpGenerationService",
    "Artifact",
    "ConsistencyVerdict",
    "GeminiService",
    "get_service",
    "list_services",
    "register_service",
    "schemas",
]
