"""OpenAI audio transcription provider.

Sends the audio to the hosted ``/v1/audio/transcriptions`` endpoint in
one request and asks for ``verbose_json`` so per-segment log
probabilities are available as verification signals.
"""

import logging
import math
from typing import Any

import httpx

from media_pipeline.asr.interface import ASRProvider, TranscriptionResult
from media_pipeline.asr.postprocess import LOW_CONFIDENCE_THRESHOLD, clean_text
from media_pipeline.utils.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
# Segments the model itself flags as probably not speech
NO_SPEECH_THRESHOLD = 0.6


class OpenAIWhisperProvider(ASRProvider):
    """Hosted Whisper transcription.

    Args:
        api_key: OpenAI API key.
        model: Transcription model id (default ``whisper-1``).
        base_url: API base URL, overridable for compatible gateways.
        timeout: HTTP timeout for the single upload request.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 600.0,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def transcribe(
        self, audio: bytes, options: dict[str, Any]
    ) -> TranscriptionResult:
        file_name = options.get("file_name") or "audio.mp3"
        data: dict[str, str] = {
            "model": self._model,
            "response_format": "verbose_json",
        }
        if options.get("language"):
            data["language"] = options["language"]

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/audio/transcriptions",
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    files={"file": (file_name, audio, "audio/mpeg")},
                    data=data,
                )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"Transcription request timed out: {exc}",
                provider=self.name,
                cause="timeout",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"Transcription request failed: {exc}",
                provider=self.name,
                cause="network",
            ) from exc

        if response.status_code == 429:
            raise ProviderError(
                "Rate limited or quota exceeded", provider=self.name, cause="quota"
            )
        if response.status_code >= 500:
            raise ProviderError(
                f"Service error {response.status_code}",
                provider=self.name,
                cause="unavailable",
            )
        if response.status_code != 200:
            raise ProviderError(
                f"Transcription failed with status {response.status_code}: "
                f"{response.text}",
                provider=self.name,
                cause="http_error",
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                "Transcription response was not JSON",
                provider=self.name,
                cause="bad_response",
            ) from exc

        logger.info("OpenAI transcription finished with model %s", self._model)
        return self._convert_response(body)

    def _convert_response(self, body: dict[str, Any]) -> TranscriptionResult:
        segments = body.get("segments") or []
        logprobs = [s["avg_logprob"] for s in segments if "avg_logprob" in s]
        # exp(mean log prob) approximates a per-token confidence in [0, 1]
        confidence = math.exp(sum(logprobs) / len(logprobs)) if logprobs else None
        no_speech = sum(
            1 for s in segments if s.get("no_speech_prob", 0.0) > NO_SPEECH_THRESHOLD
        )

        return TranscriptionResult(
            raw_response=body,
            text=clean_text(body.get("text", "")),
            model_meta={
                "model": self._model,
                "language": body.get("language"),
                "duration_seconds": body.get("duration"),
                "segment_count": len(segments),
                "average_confidence": confidence,
                "low_confidence": confidence is not None
                and confidence < LOW_CONFIDENCE_THRESHOLD,
                "no_speech_segments": no_speech,
            },
        )
