"""
Gemini Service
==============

Generation service backed by the Gemini REST API.

Features:
- Structured JSON responses validated against pydantic schemas
- Image generation with reference images for visual grounding
- Prebuilt-voice text-to-speech
- Veo image-to-video with long-running operation polling
- Multimodal consistency checks
"""

import asyncio
import base64
import io
import json
import logging
import re
import wave
from typing import Optional, List, Dict, Any, Type, Union

import httpx
from pydantic import ValidationError as SchemaValidationError

from ..core.exceptions import (
    ServiceError,
    RateLimitedError,
    InvalidInputError,
    ServiceUnavailableError,
    SafetyRejectedError,
    ValidationError,
)
from ..core.security import redact_api_key, truncate_data_url
from .base import (
    HttpGenerationService,
    Artifact,
    ConsistencyVerdict,
    SchemaT,
    DEFAULT_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
)
from .factory import register_service
from .schemas import ConsistencySchema

logger = logging.getLogger(__name__)

SAFETY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY"}
PCM_SAMPLE_RATE = 24000

_DATA_URL = re.compile(r"^data:(?P<mime>[^;,]+)(?:;[^,]*)?;base64,(?P<data>.+)$", re.DOTALL)

CONSISTENCY_PROMPT = (
    "You are a continuity supervisor for a comic. Examine the attached design of "
    "the character '{subject}'. Does it match this art style: {style}? "
    "Reply with JSON: is_consistent (boolean) and critique (what deviates, "
    "empty if consistent)."
)


def parse_data_url(url: str) -> Optional[Dict[str, str]]:
    """Split a base64 data URL into mime type and payload."""
    match = _DATA_URL.match(url or "")
    if not match:
        return None
    return {"mime_type": match.group("mime"), "data": match.group("data")}


def clean_json_text(text: str) -> str:
    """Strip markdown code fences that models sometimes wrap JSON in."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned)
    return cleaned


def pcm_to_wav(pcm: bytes, sample_rate: int = PCM_SAMPLE_RATE) -> bytes:
    """Wrap raw 16-bit mono PCM in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()


@register_service("gemini")
class GeminiService(HttpGenerationService):
    """
    Gemini API generation service.

    The API key is passed as a query parameter, as the Gemini REST API expects.
    """

    env_key_names = ["GEMINI_API_KEY", "GOOGLE_API_KEY"]

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        text_model: str = "gemini-2.5-flash",
        premium_text_model: str = "gemini-2.5-pro",
        image_model: str = "gemini-2.5-flash-image",
        tts_model: str = "gemini-2.5-flash-preview-tts",
        video_model: str = "veo-3.1-fast-generate-preview",
        model_tier: str = "standard",
        poll_interval: float = 5.0,
        max_video_wait: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
            retry_delay=retry_delay,
            transport=transport,
        )
        self.text_model = text_model
        self.premium_text_model = premium_text_model
        self.image_model = image_model
        self.tts_model = tts_model
        self.video_model = video_model
        self.model_tier = model_tier
        self.poll_interval = poll_interval
        self.max_video_wait = max_video_wait

    @classmethod
    def from_config(cls, config, **kwargs) -> "GeminiService":
        gen = config.generation
        settings = dict(config.get_service_config("gemini"))
        settings.update(kwargs)
        return cls(
            timeout=gen.timeout,
            max_retries=gen.max_retries,
            retry_delay=gen.retry_delay,
            text_model=gen.text_model,
            premium_text_model=gen.premium_text_model,
            image_model=gen.image_model,
            tts_model=gen.tts_model,
            video_model=gen.video_model,
            model_tier=gen.model_tier,
            poll_interval=gen.poll_interval,
            max_video_wait=gen.max_video_wait,
            **settings,
        )

    @property
    def provider_name(self) -> str:
        return "Gemini"

    def _get_default_base_url(self) -> str:
        return "https://generativelanguage.googleapis.com/v1beta"

    def set_model_tier(self, tier: str) -> None:
        self.model_tier = tier.lower()

    @property
    def active_text_model(self) -> str:
        return self.premium_text_model if self.model_tier == "premium" else self.text_model

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate_text(
        self,
        prompt: str,
        schema: Optional[Type[SchemaT]] = None,
        images: Optional[List[str]] = None,
    ) -> Union[SchemaT, str]:
        parts: List[Dict[str, Any]] = [self._image_part(url) for url in images or []]
        parts.append({"text": prompt})
        payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if schema is not None:
            payload["generationConfig"] = {
                "responseMimeType": "application/json",
                "responseJsonSchema": schema.model_json_schema(),
            }

        model = self.active_text_model
        data = await self._with_retries(
            f"text ({model})",
            lambda: self._generate_content(model, payload),
        )
        text = "".join(part.get("text", "") for part in self._candidate_parts(data))
        if not text.strip():
            raise ServiceError("Empty text response", provider=self.provider_name, recoverable=True)

        if schema is None:
            return text

        try:
            return schema.model_validate_json(clean_json_text(text))
        except SchemaValidationError as e:
            raise ValidationError(
                f"Response does not match {schema.__name__}: {e.error_count()} error(s)",
                field=schema.__name__,
                value=text,
            ) from e

    async def generate_image(self, prompt: str, reference_images: Optional[List[str]] = None) -> Artifact:
        parts: List[Dict[str, Any]] = [self._image_part(url) for url in reference_images or []]
        parts.append({"text": prompt})
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

        data = await self._with_retries(
            f"image ({self.image_model})",
            lambda: self._generate_content(self.image_model, payload),
        )
        notes = []
        for part in self._candidate_parts(data):
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType", "image/png")
                return Artifact(url=f"data:{mime_type};base64,{inline['data']}", mime_type=mime_type)
            if part.get("text"):
                notes.append(part["text"])

        # The model answered with text only, usually a refusal
        raise SafetyRejectedError(
            "No image returned",
            reason=" ".join(notes)[:300] or None,
            provider=self.provider_name,
        )

    async def generate_audio(self, text: str, voice: str) -> Artifact:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}},
                },
            },
        }

        data = await self._with_retries(
            f"audio ({self.tts_model})",
            lambda: self._generate_content(self.tts_model, payload),
        )
        for part in self._candidate_parts(data):
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType", "audio/wav")
                if mime_type.lower().startswith("audio/l16") or "pcm" in mime_type.lower():
                    wav = pcm_to_wav(base64.b64decode(inline["data"]), self._sample_rate(mime_type))
                    encoded = base64.b64encode(wav).decode("ascii")
                    return Artifact(url=f"data:audio/wav;base64,{encoded}", mime_type="audio/wav")
                return Artifact(url=f"data:{mime_type};base64,{inline['data']}", mime_type=mime_type)

        raise ServiceError("No audio returned", provider=self.provider_name)

    async def generate_video(self, image: str, motion_prompt: str) -> Artifact:
        image_payload = await self._video_image(image)
        payload = {
            "instances": [{"prompt": motion_prompt, "image": image_payload}],
            "parameters": {"aspectRatio": "16:9", "personGeneration": "allow_adult"},
        }
        endpoint = self._endpoint(f"models/{self.video_model}:predictLongRunning")

        async def submit() -> Dict[str, Any]:
            return await self._post(endpoint, payload)

        data = await self._with_retries(f"video ({self.video_model})", submit)
        operation_name = data.get("name")
        if not operation_name:
            raise ServiceError("No operation name in video response", provider=self.provider_name)

        logger.info(f"Video operation started: {operation_name}")
        result = await self._poll_operation(operation_name)
        return self._parse_video(result)

    async def check_consistency(self, image: str, style: str, subject: str) -> ConsistencyVerdict:
        prompt = CONSISTENCY_PROMPT.format(subject=subject, style=style or "unspecified")
        verdict = await self.generate_text(prompt, schema=ConsistencySchema, images=[image])
        return ConsistencyVerdict(is_consistent=verdict.is_consistent, critique=verdict.critique.strip())

    # -------------------------------------------------------------------------
    # HTTP Helpers
    # -------------------------------------------------------------------------

    def _endpoint(self, path: str) -> str:
        endpoint = f"{self.base_url}/{path}"
        if self.api_key:
            endpoint += f"?key={self.api_key}"
        return endpoint

    async def _generate_content(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._post(self._endpoint(f"models/{model}:generateContent"), payload)
        self._raise_for_safety(data)
        return data

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        logger.debug(f"POST {redact_api_key(endpoint)}")
        try:
            response = await client.post(endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise ServiceUnavailableError(
                f"Request timed out after {self.timeout}s",
                provider=self.provider_name,
            ) from e
        except httpx.TransportError as e:
            raise ServiceUnavailableError(
                f"Connection failed: {redact_api_key(str(e))}",
                provider=self.provider_name,
            ) from e

        self._raise_for_status(response)
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise ServiceError(
                "Response body is not JSON",
                provider=self.provider_name,
                response_body=response.text,
            ) from e

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 200:
            return

        message = self._error_message(response)
        body = redact_api_key(response.text)

        if status == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitedError(
                f"Rate limited: {message}",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                provider=self.provider_name,
                response_body=body,
            )
        if status in (400, 404, 422):
            raise InvalidInputError(
                f"Invalid request: {message}",
                provider=self.provider_name,
                status_code=status,
                response_body=body,
            )
        if status >= 500:
            raise ServiceUnavailableError(
                f"Service unavailable ({status}): {message}",
                provider=self.provider_name,
                status_code=status,
                response_body=body,
            )
        raise ServiceError(
            f"API error {status}: {message}",
            provider=self.provider_name,
            status_code=status,
            response_body=body,
            recoverable=False,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
        except (json.JSONDecodeError, AttributeError):
            pass
        return response.reason_phrase or "unknown error"

    def _raise_for_safety(self, data: Dict[str, Any]) -> None:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise SafetyRejectedError(
                f"Prompt blocked: {block_reason}",
                reason=block_reason,
                provider=self.provider_name,
            )
        candidates = data.get("candidates") or []
        if candidates and candidates[0].get("finishReason") in SAFETY_FINISH_REASONS:
            reason = candidates[0]["finishReason"]
            raise SafetyRejectedError(
                f"Response blocked: {reason}",
                reason=reason,
                provider=self.provider_name,
            )

    def _candidate_parts(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ServiceError("No candidates in response", provider=self.provider_name, recoverable=True)
        return (candidates[0].get("content") or {}).get("parts") or []

    def _image_part(self, url: str) -> Dict[str, Any]:
        inline = parse_data_url(url)
        if inline:
            return {"inlineData": {"mimeType": inline["mime_type"], "data": inline["data"]}}
        if url.startswith(("http://", "https://")):
            return {"fileData": {"mimeType": "image/png", "fileUri": url}}
        raise InvalidInputError(
            f"Unsupported image reference: {truncate_data_url(url)}",
            provider=self.provider_name,
        )

    async def _video_image(self, image: str) -> Dict[str, str]:
        inline = parse_data_url(image)
        if inline:
            return {"bytesBase64Encoded": inline["data"], "mimeType": inline["mime_type"]}
        if image.startswith(("http://", "https://")):
            client = await self._get_client()
            try:
                response = await client.get(image)
            except httpx.TransportError as e:
                raise ServiceUnavailableError(
                    f"Could not fetch source image: {redact_api_key(str(e))}",
                    provider=self.provider_name,
                ) from e
            if response.status_code != 200:
                raise InvalidInputError(
                    f"Could not fetch source image ({response.status_code})",
                    provider=self.provider_name,
                )
            mime_type = response.headers.get("content-type", "image/png").split(";")[0]
            return {
                "bytesBase64Encoded": base64.b64encode(response.content).decode("ascii"),
                "mimeType": mime_type,
            }
        raise InvalidInputError("Video source must be a data URL or http(s) URL", provider=self.provider_name)

    async def _poll_operation(self, operation_name: str) -> Dict[str, Any]:
        """Poll a long-running operation until it reports done."""
        client = await self._get_client()
        endpoint = self._endpoint(operation_name)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_video_wait
        attempt = 0

        while loop.time() < deadline:
            attempt += 1
            try:
                response = await client.get(endpoint)
            except httpx.TransportError as e:
                logger.warning(f"Poll error: {redact_api_key(str(e))}")
                await asyncio.sleep(self.poll_interval)
                continue

            if response.status_code != 200:
                logger.warning(f"Poll failed: {response.status_code}")
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                data = response.json()
            except json.JSONDecodeError as e:
                raise ServiceError(
                    "Operation status is not JSON",
                    provider=self.provider_name,
                    response_body=redact_api_key(response.text),
                ) from e
            if data.get("done"):
                if "error" in data:
                    raise ServiceError(
                        f"Video generation failed: {data['error'].get('message', 'Unknown error')}",
                        provider=self.provider_name,
                        recoverable=False,
                    )
                return data.get("response") or {}

            logger.debug(f"Operation in progress, attempt {attempt}")
            await asyncio.sleep(self.poll_interval)

        raise ServiceUnavailableError(
            f"Timed out waiting for video after {self.max_video_wait}s",
            provider=self.provider_name,
            recoverable=False,
        )

    def _parse_video(self, data: Dict[str, Any]) -> Artifact:
        wrapped = data.get("generateVideoResponse") or data
        samples = wrapped.get("generatedSamples") or wrapped.get("generatedVideos") or []
        if not samples:
            reasons = wrapped.get("raiMediaFilteredReasons")
            if reasons:
                raise SafetyRejectedError(
                    "Video filtered",
                    reason="; ".join(reasons),
                    provider=self.provider_name,
                )
            raise ServiceError("No video in completed operation", provider=self.provider_name)

        video = samples[0].get("video") or {}
        if video.get("uri"):
            return Artifact(url=video["uri"], mime_type=video.get("mimeType", "video/mp4"))
        if video.get("bytesBase64Encoded"):
            mime_type = video.get("mimeType", "video/mp4")
            return Artifact(url=f"data:{mime_type};base64,{video['bytesBase64Encoded']}", mime_type=mime_type)
        raise ServiceError("Video sample has no content", provider=self.provider_name)

    @staticmethod
    def _sample_rate(mime_type: str) -> int:
        match = re.search(r"rate=(\d+)", mime_type)
        return int(match.group(1)) if match else PCM_SAMPLE_RATE
