"""
Base Generation Service
=======================

Contracts for the generative services the pipeline drives, plus a shared
base class with HTTP client management and retry with exponential backoff.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List, Dict, Type, TypeVar, Union, Callable, Awaitable

import httpx
from pydantic import BaseModel

from ..core.exceptions import ServiceError, RateLimitedError
from ..core.security import redact_api_key

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================


DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_RETRY_MULTIPLIER = 2.0
DEFAULT_TIMEOUT = 120

SchemaT = TypeVar("SchemaT", bound=BaseModel)
T = TypeVar("T")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class Artifact:
    """A generated image, audio clip, or video."""

    url: str
    mime_type: str


@dataclass
class ConsistencyVerdict:
    is_consistent: bool
    critique: str = ""


# =============================================================================
# Service Contracts
# =============================================================================


class GenerationService(ABC):
    """Text, image, speech, and video generation."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        schema: Optional[Type[SchemaT]] = None,
        images: Optional[List[str]] = None,
    ) -> Union[SchemaT, str]:
        """
        Generate text, optionally constrained to a structured schema.

        Args:
            prompt: Instruction text
            schema: Pydantic model the response must validate against
            images: Image URLs (data URLs or remote) to include as context

        Returns:
            A validated ``schema`` instance, or plain text when no schema

        Raises:
            ServiceError: On service failures
            ValidationError: If the response does not match ``schema``
        """
        pass

    @abstractmethod
    async def generate_image(self, prompt: str, reference_images: Optional[List[str]] = None) -> Artifact:
        pass

    @abstractmethod
    async def generate_audio(self, text: str, voice: str) -> Artifact:
        pass

    @abstractmethod
    async def generate_video(self, image: str, motion_prompt: str) -> Artifact:
        """Animate a still image. Long-running; polled until done."""
        pass

    def set_model_tier(self, tier: str) -> None:
        """Select standard or premium text models. Ignored by default."""

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class ConsistencyService(ABC):
    """Judges whether an image matches a style for a named subject."""

    @abstractmethod
    async def check_consistency(self, image: str, style: str, subject: str) -> ConsistencyVerdict:
        pass


# =============================================================================
# Shared HTTP Base
# =============================================================================


class HttpGenerationService(GenerationService, ConsistencyService):
    """
    Base class for HTTP-backed services.

    Features:
    - Lazily created, lock-guarded httpx client
    - Retry with exponential backoff on recoverable errors
    - API key lookup from environment
    """

    env_key_names: List[str] = []

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the service.

        Args:
            api_key: API key (or read from environment)
            base_url: Base URL for the API
            timeout: Request timeout in seconds
            max_retries: Retries after the first attempt on recoverable errors
            retry_delay: Initial backoff delay in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = api_key or self._get_api_key_from_env()
        self.base_url = (base_url or self._get_default_base_url()).rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

        if not self.api_key:
            logger.warning(
                f"No API key found for {self.provider_name}. "
                f"Set {' or '.join(self.env_key_names)} or pass api_key."
            )

    @abstractmethod
    def _get_default_base_url(self) -> str:
        pass

    def _get_api_key_from_env(self) -> Optional[str]:
        for name in self.env_key_names:
            value = os.getenv(name)
            if value:
                return value
        return None

    def _get_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout),
                    headers=self._get_headers(),
                    transport=self._transport,
                )
            return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    async def _with_retries(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``call`` with exponential backoff on recoverable errors.

        Rate limits are always retried (honouring Retry-After when it is
        longer than the backoff). Other service errors are retried only when
        marked recoverable. Anything else propagates immediately.
        """
        last_error: Optional[ServiceError] = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.retry_delay * (DEFAULT_RETRY_MULTIPLIER ** (attempt - 1))
                if isinstance(last_error, RateLimitedError) and last_error.retry_after:
                    delay = max(delay, float(last_error.retry_after))
                logger.info(f"Retry {attempt}/{self.max_retries} for {operation} after {delay:.1f}s delay")
                await asyncio.sleep(delay)

            try:
                return await call()

            except RateLimitedError as e:
                last_error = e
                logger.warning(f"Rate limited during {operation}: {redact_api_key(e.message)}")
                continue

            except ServiceError as e:
                last_error = e
                if not e.recoverable:
                    raise
                logger.warning(f"Recoverable error during {operation}: {redact_api_key(e.message)}")
                continue

        logger.error(f"All retries exhausted for {operation}")
        raise last_error
