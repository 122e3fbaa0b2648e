"""Tests for the OpenAI media provider using a stub client."""

import base64
from types import SimpleNamespace

import httpx
import openai
import pytest

from renderflow.config import ProvidersConfig
from renderflow.services.providers import (
    OpenAIMediaProvider,
    ProviderError,
    image_cost,
    parse_publish_meta,
    transcription_cost,
    tts_cost,
)


class _DummySpeech:
    def __init__(self, client):
        self._client = client

    async def create(self, **kwargs):
        self._client.calls.append(("speech", kwargs))
        return SimpleNamespace(content=b"ID3fake-mp3")


class _DummyTranscriptions:
    async def create(self, **kwargs):
        return SimpleNamespace(
            text="hello deep sea",
            duration=30.0,
            words=[
                SimpleNamespace(word="hello", start=0.0, end=0.4),
                SimpleNamespace(word="deep", start=0.5, end=0.8),
                SimpleNamespace(word="sea", start=0.85, end=1.2),
            ],
        )


class _FlakyImages:
    """Fails with a rate limit once, then returns a PNG payload."""

    def __init__(self):
        self.attempts = 0

    async def create_error(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")
        response = httpx.Response(429, request=request)
        return openai.RateLimitError("rate limited", response=response, body=None)

    async def generate(self, **kwargs):
        self.attempts += 1
        if self.attempts == 1:
            raise await self.create_error()
        payload = base64.b64encode(b"\x89PNG fake").decode()
        return SimpleNamespace(data=[SimpleNamespace(b64_json=payload)])


class _DummyCompletions:
    def __init__(self, content):
        self._content = content

    async def create(self, **kwargs):
        message = SimpleNamespace(content=self._content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class _DummyClient:
    def __init__(self, chat_content='{"caption": "Dive in", "hashtags": ["#ocean", "facts"], "title": "Deep"}'):
        self.calls = []
        self.audio = SimpleNamespace(speech=_DummySpeech(self), transcriptions=_DummyTranscriptions())
        self.images = _FlakyImages()
        self.chat = SimpleNamespace(completions=_DummyCompletions(chat_content))


def _provider(client=None, **config):
    config.setdefault("retry_max_attempts", 2)
    return OpenAIMediaProvider(ProvidersConfig(**config), client=client or _DummyClient())


def test_missing_api_key_without_client_raises():
    with pytest.raises(ProviderError, match="API key"):
        OpenAIMediaProvider(ProvidersConfig(openai_api_key=""))


def test_cost_estimates():
    assert tts_cost("x" * 1000) == pytest.approx(0.015)
    assert transcription_cost(120) == pytest.approx(0.012)
    assert transcription_cost(None) == pytest.approx(0.006)
    assert image_cost("1024x1792") > 0


async def test_synthesize_speech_writes_audio_and_returns_cost(tmp_path):
    client = _DummyClient()
    provider = _provider(client, tts_voice="nova")
    output = tmp_path / "audio" / "scene_00.mp3"

    cost = await provider.synthesize_speech("Hello there", output)

    assert output.read_bytes() == b"ID3fake-mp3"
    assert cost == pytest.approx(tts_cost("Hello there"))
    assert client.calls[0][1]["voice"] == "nova"


async def test_transcribe_returns_word_timings(tmp_path):
    audio = tmp_path / "vo_full.mp3"
    audio.write_bytes(b"fake")

    result = await _provider().transcribe(audio)

    assert result.text == "hello deep sea"
    assert [w.word for w in result.words] == ["hello", "deep", "sea"]
    assert result.cost_usd == pytest.approx(0.003)


async def test_generate_image_retries_transient_errors(tmp_path, monkeypatch):
    # Skip backoff sleeps
    monkeypatch.setattr("asyncio.sleep", _no_sleep)
    client = _DummyClient()
    output = tmp_path / "scene_00.png"

    cost = await _provider(client).generate_image("a deep sea fish", output)

    assert client.images.attempts == 2
    assert output.read_bytes() == b"\x89PNG fake"
    assert cost > 0


async def test_exhausted_retries_surface_as_provider_error(tmp_path, monkeypatch):
    monkeypatch.setattr("asyncio.sleep", _no_sleep)
    client = _DummyClient()

    with pytest.raises(ProviderError, match="Image generation failed"):
        await _provider(client, retry_max_attempts=1).generate_image("fish", tmp_path / "x.png")


async def test_publish_metadata_strips_hash_signs():
    meta = await _provider().publish_metadata("Ocean facts", "Amazing Facts", "Hook", "Outline")
    assert meta.caption == "Dive in"
    assert meta.hashtags == ["ocean", "facts"]
    assert meta.title == "Deep"


def test_parse_publish_meta_falls_back_to_topic():
    meta = parse_publish_meta("not json", "Ocean facts")
    assert meta.caption == "Ocean facts"
    assert meta.title == "Ocean facts"
    assert meta.hashtags == []


async def _no_sleep(_seconds):
    return None
