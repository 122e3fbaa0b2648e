"""Paid media providers used by the render steps.

OpenAIMediaProvider wraps the openai async SDK for speech synthesis,
word-level transcription, image generation and publish metadata. Transient
failures (rate limits, 5xx, timeouts, dropped connections) are retried
here with tenacity exponential backoff; once retries are exhausted the
error surfaces to the step as ProviderError.
"""

import base64
import json
import logging
from pathlib import Path
from typing import List, Optional, Protocol

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from renderflow.config import ProvidersConfig, settings

logger = logging.getLogger(__name__)

# Approximate list prices (USD)
TTS_USD_PER_MILLION_CHARS = 15.0
WHISPER_USD_PER_MINUTE = 0.006
IMAGE_USD = {"1024x1792": 0.04, "1792x1024": 0.08, "1024x1024": 0.04}

TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.InternalServerError,
    openai.APITimeoutError,
    openai.APIConnectionError,
)


class ProviderError(Exception):
    """A provider call failed after exhausting retries or returned unusable data."""


class TranscriptWord(BaseModel):
    word: str
    start: float
    end: float


class Transcription(BaseModel):
    text: str
    words: List[TranscriptWord] = Field(default_factory=list)
    cost_usd: float = 0.0


class PublishMeta(BaseModel):
    caption: str
    hashtags: List[str] = Field(default_factory=list)
    title: str
    cost_usd: float = 0.0


class MediaProvider(Protocol):
    async def synthesize_speech(self, text: str, output: Path, voice: Optional[str] = None) -> float:
        ...

    async def transcribe(self, audio: Path) -> Transcription:
        ...

    async def generate_image(self, prompt: str, output: Path) -> float:
        ...

    async def publish_metadata(
        self, topic: str, niche_name: str, hook: str, outline: str
    ) -> PublishMeta:
        ...


def tts_cost(text: str) -> float:
    return len(text) / 1_000_000 * TTS_USD_PER_MILLION_CHARS


def transcription_cost(duration_sec: Optional[float]) -> float:
    # Unknown duration is billed as one minute
    if not duration_sec:
        return WHISPER_USD_PER_MINUTE
    return duration_sec / 60 * WHISPER_USD_PER_MINUTE


def image_cost(size: str) -> float:
    return IMAGE_USD.get(size, 0.04)


_PUBLISH_META_PROMPT = """You are a short-form video content strategist. Given the following video context, produce exactly three outputs as a JSON object (no markdown, no extra text):
1. "caption": a short, engaging caption (1-2 sentences, max ~150 chars) with a hook or call-to-action and no hashtags.
2. "hashtags": an array of 5-10 hashtag strings without the leading #, mixing niche-specific and broad-reach tags.
3. "title": a concise video title (max ~60 chars).

Context:
- Topic: {topic}
- Niche / channel style: {niche}
- Hook (first line): {hook}
- Outline: {outline}

Return only a JSON object with keys "caption", "hashtags", "title"."""


class OpenAIMediaProvider:
    """MediaProvider backed by the OpenAI API."""

    def __init__(self, config: Optional[ProvidersConfig] = None, client: Optional[AsyncOpenAI] = None):
        """Initialize the provider.

        Args:
            config: Provider settings; defaults to settings.providers.
            client: Pre-built client (tests); otherwise built from config.

        Raises:
            ProviderError: If no API key is configured and no client is given.
        """
        self._config = config or settings.providers
        if client is None:
            if not self._config.openai_api_key:
                raise ProviderError("OpenAI API key not configured (RENDERFLOW_PROVIDERS__OPENAI_API_KEY)")
            client = AsyncOpenAI(
                api_key=self._config.openai_api_key,
                base_url=self._config.openai_base_url,
                timeout=self._config.request_timeout,
                max_retries=0,
            )
        self._client = client

    async def _call(self, operation: str, fn):
        """Run fn() with retry on transient errors, mapping failures to ProviderError."""

        @retry(
            stop=stop_after_attempt(self._config.retry_max_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def _attempt():
            return await fn()

        try:
            return await _attempt()
        except openai.OpenAIError as e:
            raise ProviderError(f"{operation} failed: {type(e).__name__}: {e}") from e

    async def synthesize_speech(self, text: str, output: Path, voice: Optional[str] = None) -> float:
        """Write MP3 speech for text to output. Returns the estimated cost."""
        response = await self._call(
            "Speech synthesis",
            lambda: self._client.audio.speech.create(
                model=self._config.tts_model,
                voice=voice or self._config.tts_voice,
                input=text,
                response_format="mp3",
            ),
        )
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(response.content)
        logger.debug(f"TTS wrote {output.name} ({len(text)} chars)")
        return tts_cost(text)

    async def transcribe(self, audio: Path) -> Transcription:
        """Transcribe audio with word-level timestamps."""
        audio_bytes = audio.read_bytes()
        result = await self._call(
            "Transcription",
            lambda: self._client.audio.transcriptions.create(
                file=(audio.name, audio_bytes),
                model=self._config.transcription_model,
                response_format="verbose_json",
                timestamp_granularities=["word"],
            ),
        )
        words = [
            TranscriptWord(word=w.word, start=float(w.start), end=float(w.end))
            for w in (getattr(result, "words", None) or [])
        ]
        duration = getattr(result, "duration", None)
        return Transcription(
            text=result.text,
            words=words,
            cost_usd=transcription_cost(float(duration) if duration else None),
        )

    async def generate_image(self, prompt: str, output: Path) -> float:
        """Generate one image for prompt and write it as PNG. Returns the estimated cost."""
        size = self._config.image_size
        result = await self._call(
            "Image generation",
            lambda: self._client.images.generate(
                model=self._config.image_model,
                prompt=prompt,
                size=size,
                n=1,
                response_format="b64_json",
            ),
        )
        if not result.data or not result.data[0].b64_json:
            raise ProviderError("Image generation returned no image data")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(base64.b64decode(result.data[0].b64_json))
        return image_cost(size)

    async def publish_metadata(
        self, topic: str, niche_name: str, hook: str, outline: str
    ) -> PublishMeta:
        """Caption, hashtags and title for publishing the finished video.

        Malformed model output falls back to the topic for caption and title.
        """
        prompt = _PUBLISH_META_PROMPT.format(
            topic=topic,
            niche=niche_name,
            hook=hook.strip() or "-",
            outline=outline.strip() or "-",
        )
        response = await self._call(
            "Publish metadata",
            lambda: self._client.chat.completions.create(
                model=self._config.chat_model,
                messages=[
                    {"role": "system", "content": "You respond with JSON only."},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
            ),
        )
        raw = response.choices[0].message.content or "{}"
        return parse_publish_meta(raw, topic)


def parse_publish_meta(raw: str, topic: str) -> PublishMeta:
    """Decode the chat model's JSON, tolerating missing or mistyped fields."""
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Publish metadata response was not valid JSON")
        data = {}
    if not isinstance(data, dict):
        data = {}

    caption = data.get("caption") if isinstance(data.get("caption"), str) else topic
    title = data.get("title") if isinstance(data.get("title"), str) else topic
    hashtags = data.get("hashtags") if isinstance(data.get("hashtags"), list) else []
    try:
        return PublishMeta(
            caption=caption,
            title=title,
            hashtags=[h.lstrip("#") for h in hashtags if isinstance(h, str)][:15],
        )
    except ValidationError as e:
        raise ProviderError(f"Unusable publish metadata: {e}") from e
