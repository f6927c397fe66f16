"""
External collaborators: embedder, completion provider and text-to-speech.

The core only depends on the Protocols. The HTTP adapters talk to any
OpenAI-compatible endpoint and translate failures into typed errors:

- HTTP 429                    -> ApiRateLimitedError (Retry-After honoured)
- HTTP 402 / insufficient_quota -> ApiQuotaExceededError
- anything else               -> EmbeddingUnavailable / CompletionUnavailable / TtsFailed
"""
from __future__ import annotations

import base64
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from assistant.errors import (
    ApiQuotaExceededError,
    ApiRateLimitedError,
    CompletionUnavailableError,
    EmbeddingUnavailableError,
    TtsFailedError,
    VoiceError,
)
from logging_setup import get_logger, Component


logger = get_logger(Component.PROVIDER)


class Embedder(Protocol):
    async def embed(self, text: str) -> Sequence[float]:
        ...


class CompletionProvider(Protocol):
    async def complete(self, prompt: str, context: Optional[str] = None) -> str:
        """``prompt`` is the system instruction, ``context`` the user-side content."""
        ...


class TextToSpeech(Protocol):
    async def synthesize(self, text: str, voice: str) -> bytes:
        ...


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class _OpenAICompatibleClient:
    """Shared HTTP session handling for the OpenAI-compatible adapters."""

    unavailable_error: type = VoiceError
    name = "openai"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        timeout_seconds: float = 15.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._http_session: Optional[aiohttp.ClientSession] = None

    @property
    def model(self) -> str:
        return self._model

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            headers = {}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._http_session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
        return self._http_session

    async def aclose(self) -> None:
        """Close the pooled HTTP session. Safe to call multiple times."""
        if self._http_session is not None:
            try:
                await self._http_session.close()
            except Exception as e:
                logger.warning(
                    "Error closing provider HTTP session",
                    provider=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._http_session = None

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if 200 <= response.status < 300:
            return
        error_text = await response.text()
        logger.error(
            "Provider request failed",
            provider=self.name,
            status_code=response.status,
            error_text=error_text[:500],
        )
        if response.status == 429 and "insufficient_quota" not in error_text:
            raise ApiRateLimitedError(
                f"{self.name} rate limited: {response.status}",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status in (402, 429) or "quota" in error_text.lower():
            raise ApiQuotaExceededError(f"{self.name} quota exceeded: {response.status}")
        raise self.unavailable_error(f"{self.name} API error: {response.status}")

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        start_ts = time.time()
        try:
            session = self._get_or_create_session()
            async with session.post(url, json=payload) as response:
                await self._raise_for_status(response)
                data = await response.json()
        except VoiceError:
            raise
        except Exception as e:
            logger.warning(
                "Provider request exception",
                provider=self.name,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise self.unavailable_error(f"{self.name} request failed: {e}") from e

        logger.debug(
            "Provider request completed",
            provider=self.name,
            path=path,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return data


class OpenAIEmbedder(_OpenAICompatibleClient):
    """``POST /embeddings``."""

    unavailable_error = EmbeddingUnavailableError
    name = "embeddings"

    async def embed(self, text: str) -> List[float]:
        data = await self._post_json("/embeddings", {"model": self._model, "input": text})
        try:
            return [float(v) for v in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise EmbeddingUnavailableError("malformed embedding response") from e


class OpenAICompletionProvider(_OpenAICompatibleClient):
    """``POST /chat/completions``."""

    unavailable_error = CompletionUnavailableError
    name = "completions"

    def __init__(self, *args, temperature: float = 0.3, max_tokens: int = 300, **kwargs):
        super().__init__(*args, **kwargs)
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def complete(self, prompt: str, context: Optional[str] = None) -> str:
        messages = [{"role": "system", "content": prompt}]
        if context:
            messages.append({"role": "user", "content": context})
        data = await self._post_json("/chat/completions", {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        })
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionUnavailableError("malformed completion response") from e
        if not content or not content.strip():
            raise CompletionUnavailableError("empty completion")
        return content.strip()


class OpenAITextToSpeech(_OpenAICompatibleClient):
    """``POST /audio/speech``; returns the raw audio bytes."""

    unavailable_error = TtsFailedError
    name = "tts"

    async def synthesize(self, text: str, voice: str) -> bytes:
        url = f"{self._base_url}/audio/speech"
        start_ts = time.time()
        try:
            session = self._get_or_create_session()
            payload = {"model": self._model, "input": text, "voice": voice}
            async with session.post(url, json=payload) as response:
                await self._raise_for_status(response)
                audio = await response.read()
        except VoiceError:
            raise
        except Exception as e:
            logger.warning(
                "TTS request exception",
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise TtsFailedError(f"tts request failed: {e}") from e
        if not audio:
            raise TtsFailedError("tts returned no audio")
        logger.info(
            "TTS call completed",
            text_length=len(text),
            audio_bytes=len(audio),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return audio


def encode_audio(audio: bytes) -> str:
    """Base64 text form of synthesized audio for JSON responses."""
    return base64.b64encode(audio).decode("ascii")
