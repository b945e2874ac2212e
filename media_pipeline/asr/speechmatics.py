"""Speechmatics ASR provider.

Uses the Speechmatics Batch API v2: submit the audio as a job, poll
until it completes, fetch the json-v2 transcript and render it as
speaker-labelled plain text.
"""

import asyncio
import json
import logging
import time
from typing import Any

import httpx

from media_pipeline.asr.interface import (
    ASRProvider,
    TranscriptionResult,
    TranscriptSegment,
    TranscriptWord,
)
from media_pipeline.asr.postprocess import (
    LOW_CONFIDENCE_THRESHOLD,
    average_confidence,
    render_segments,
)
from media_pipeline.utils.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://asr.api.speechmatics.com/v2"
POLL_INTERVAL_SECONDS = 5.0
TRANSIENT_STATUS_CODES = {429, 503}


class SpeechmaticsProvider(ASRProvider):
    """Speechmatics Batch API provider with speaker diarization.

    Args:
        api_key: Speechmatics API key for authentication.
        language: Default transcription language (overridable per call).
        timeout: Maximum seconds to wait for job completion (default 600).
        base_url: Speechmatics API base URL (default production endpoint).
    """

    name = "speechmatics"

    def __init__(
        self,
        api_key: str,
        language: str = "en",
        timeout: int = 600,
        base_url: str = DEFAULT_BASE_URL,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._language = language
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")

    def _error(self, message: str, cause: str) -> ProviderError:
        return ProviderError(message, provider=self.name, cause=cause)

    async def transcribe(
        self, audio: bytes, options: dict[str, Any]
    ) -> TranscriptionResult:
        """Submit audio, wait for the job and convert the transcript.

        Raises:
            ProviderError: On submission failure, job rejection, or timeout.
        """
        language = options.get("language") or self._language
        file_name = options.get("file_name") or "audio.mp3"
        async with httpx.AsyncClient(timeout=60.0) as client:
            job_id = await self._submit_job(client, audio, file_name, language)
            await self._poll_until_complete(client, job_id)
            raw_response = await self._fetch_transcript(client, job_id)
        return self._convert_response(raw_response, job_id, language)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def _submit_job(
        self,
        client: httpx.AsyncClient,
        audio: bytes,
        file_name: str,
        language: str,
    ) -> str:
        """Submit audio for transcription and return the Speechmatics job id."""
        config = {
            "type": "transcription",
            "transcription_config": {
                "language": language,
                "diarization": "speaker",
            },
        }

        try:
            response = await client.post(
                f"{self._base_url}/jobs/",
                headers=self._headers(),
                files={"data_file": (file_name, audio, "audio/mpeg")},
                data={"config": json.dumps(config)},
            )
        except httpx.HTTPError as exc:
            raise self._error(f"Failed to submit job: {exc}", "network") from exc

        if response.status_code == 429:
            raise self._error("Rate limited during job submission", "quota")
        if response.status_code == 503:
            raise self._error("Service unavailable during job submission", "unavailable")
        if response.status_code != 201:
            raise self._error(
                f"Job submission failed with status {response.status_code}: "
                f"{response.text}",
                "http_error",
            )

        job_id = response.json().get("id")
        if not job_id:
            raise self._error("No job ID in submission response", "bad_response")

        logger.info("Submitted Speechmatics job %s", job_id)
        return job_id

    async def _poll_until_complete(
        self, client: httpx.AsyncClient, job_id: str
    ) -> None:
        """Poll job status until done, rejected, or timeout."""
        url = f"{self._base_url}/jobs/{job_id}"
        deadline = time.monotonic() + self._timeout

        while time.monotonic() < deadline:
            try:
                response = await client.get(url, headers=self._headers())
            except httpx.HTTPError as exc:
                raise self._error(f"Failed to poll job status: {exc}", "network") from exc

            if response.status_code in TRANSIENT_STATUS_CODES:
                await asyncio.sleep(POLL_INTERVAL_SECONDS)
                continue

            if response.status_code != 200:
                raise self._error(
                    f"Poll failed with status {response.status_code}: {response.text}",
                    "http_error",
                )

            status = response.json().get("job", {}).get("status", "")
            if status == "done":
                logger.info("Speechmatics job %s completed", job_id)
                return
            if status in ("rejected", "deleted"):
                raise self._error(f"Job {job_id} was {status}", "rejected")

            await asyncio.sleep(POLL_INTERVAL_SECONDS)

        raise self._error(f"Job {job_id} timed out after {self._timeout}s", "timeout")

    async def _fetch_transcript(
        self, client: httpx.AsyncClient, job_id: str
    ) -> dict[str, Any]:
        """Fetch the completed json-v2 transcript."""
        try:
            response = await client.get(
                f"{self._base_url}/jobs/{job_id}/transcript",
                headers=self._headers(),
                params={"format": "json-v2"},
            )
        except httpx.HTTPError as exc:
            raise self._error(f"Failed to fetch transcript: {exc}", "network") from exc

        if response.status_code != 200:
            raise self._error(
                f"Transcript fetch failed with status "
                f"{response.status_code}: {response.text}",
                "http_error",
            )
        return response.json()

    def _segments(self, raw_response: dict[str, Any]) -> list[TranscriptSegment]:
        """Group results into speaker segments.

        Speaker ids (S1, S2, ...) become 'Speaker 1', 'Speaker 2', ... in
        order of first appearance. Punctuation attaches to the current
        segment.
        """
        speaker_map: dict[str, str] = {}
        segments: list[TranscriptSegment] = []
        current: TranscriptSegment | None = None

        for result in raw_response.get("results", []):
            kind = result.get("type")
            alternatives = result.get("alternatives") or []
            if kind not in ("word", "punctuation") or not alternatives:
                continue
            alt = alternatives[0]

            if kind == "punctuation":
                if current is not None:
                    current.words.append(
                        TranscriptWord(
                            text=alt.get("content", ""),
                            start_time=result.get("start_time", 0.0),
                            end_time=result.get("end_time", 0.0),
                            confidence=-1.0,
                        )
                    )
                continue

            raw_speaker = alt.get("speaker", "UU")
            if raw_speaker not in speaker_map:
                speaker_map[raw_speaker] = f"Speaker {len(speaker_map) + 1}"
            label = speaker_map[raw_speaker]

            word = TranscriptWord(
                text=alt.get("content", ""),
                start_time=result.get("start_time", 0.0),
                end_time=result.get("end_time", 0.0),
                confidence=alt.get("confidence", 0.0),
            )
            if current is None or current.speaker_label != label:
                current = TranscriptSegment(speaker_label=label, words=[word])
                segments.append(current)
            else:
                current.words.append(word)

        return segments

    def _convert_response(
        self, raw_response: dict[str, Any], job_id: str, language: str
    ) -> TranscriptionResult:
        segments = self._segments(raw_response)
        spoken = [
            TranscriptSegment(
                speaker_label=s.speaker_label,
                words=[w for w in s.words if w.confidence >= 0],
            )
            for s in segments
        ]
        confidence = average_confidence(spoken)
        speakers = {s.speaker_label for s in segments}
        metadata = raw_response.get("metadata", {})

        return TranscriptionResult(
            raw_response=raw_response,
            text=render_segments(segments),
            model_meta={
                "model": "speechmatics-batch",
                "job_id": job_id,
                "language": language,
                "operating_point": metadata.get("transcription_config", {}).get(
                    "operating_point"
                ),
                "speaker_count": len(speakers),
                "average_confidence": confidence,
                "low_confidence": confidence is not None
                and confidence < LOW_CONFIDENCE_THRESHOLD,
            },
        )
