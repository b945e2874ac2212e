"""Tests for SpeechmaticsProvider Batch API client."""

import json
from unittest.mock import patch

import httpx
import pytest

from media_pipeline.asr.interface import ASRProvider, TranscriptionResult
from media_pipeline.asr.speechmatics import SpeechmaticsProvider
from media_pipeline.utils.errors import ProviderError


def _make_response(
    status_code: int = 200,
    json_data: dict | None = None,
    text: str = "",
) -> httpx.Response:
    """Build a mock httpx.Response with proper content encoding."""
    if json_data is not None:
        content = json.dumps(json_data).encode("utf-8")
        headers = {"content-type": "application/json"}
    else:
        content = text.encode("utf-8")
        headers = {"content-type": "text/plain"}
    return httpx.Response(
        status_code=status_code,
        content=content,
        headers=headers,
        request=httpx.Request("GET", "https://mock"),
    )


# -- Speechmatics response fixtures --

SUBMIT_RESPONSE = {"id": "job-abc-123"}

STATUS_RUNNING = {"job": {"status": "running"}}
STATUS_DONE = {"job": {"status": "done"}}
STATUS_REJECTED = {"job": {"status": "rejected"}}
STATUS_DELETED = {"job": {"status": "deleted"}}

SINGLE_SPEAKER_TRANSCRIPT = {
    "metadata": {"transcription_config": {"operating_point": "enhanced"}},
    "results": [
        {
            "type": "word",
            "start_time": 0.5,
            "end_time": 0.9,
            "alternatives": [{"content": "hello", "confidence": 0.95, "speaker": "S1"}],
        },
        {
            "type": "word",
            "start_time": 1.0,
            "end_time": 1.4,
            "alternatives": [{"content": "world", "confidence": 0.85, "speaker": "S1"}],
        },
        {
            "type": "punctuation",
            "start_time": 1.4,
            "end_time": 1.4,
            "alternatives": [{"content": ".", "confidence": 1.0, "speaker": "S1"}],
        },
    ],
}

MULTI_SPEAKER_TRANSCRIPT = {
    "results": [
        {
            "type": "word",
            "start_time": 0.5,
            "end_time": 0.9,
            "alternatives": [{"content": "hello", "confidence": 0.95, "speaker": "S1"}],
        },
        {
            "type": "word",
            "start_time": 1.0,
            "end_time": 1.4,
            "alternatives": [{"content": "hi", "confidence": 0.90, "speaker": "S2"}],
        },
        {
            "type": "word",
            "start_time": 1.5,
            "end_time": 2.0,
            "alternatives": [{"content": "there", "confidence": 0.85, "speaker": "S2"}],
        },
        {
            "type": "word",
            "start_time": 2.1,
            "end_time": 2.5,
            "alternatives": [{"content": "great", "confidence": 0.92, "speaker": "S1"}],
        },
    ]
}

LOW_CONFIDENCE_TRANSCRIPT = {
    "results": [
        {
            "type": "word",
            "start_time": 0.0,
            "end_time": 0.4,
            "alternatives": [{"content": "mumble", "confidence": 0.3, "speaker": "S1"}],
        },
    ]
}

EMPTY_TRANSCRIPT = {"results": []}


def _build_mock_client(handler) -> httpx.AsyncClient:
    """Create an AsyncClient backed by a MockTransport handler."""
    transport = httpx.MockTransport(handler)
    return httpx.AsyncClient(transport=transport)


class TestSpeechmaticsProviderConstruction:
    """Tests for SpeechmaticsProvider initialization."""

    def test_requires_api_key(self) -> None:
        with pytest.raises(ValueError, match="api_key is required"):
            SpeechmaticsProvider(api_key="")

    def test_default_timeout(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key")
        assert provider._timeout == 600

    def test_custom_timeout(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key", timeout=120)
        assert provider._timeout == 120

    def test_isinstance_asr_provider(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key")
        assert isinstance(provider, ASRProvider)
        assert provider.name == "speechmatics"


class TestSubmitJob:
    """Tests for job submission to Speechmatics Batch API."""

    async def test_submit_sends_audio_and_config(self) -> None:
        """Submission carries the audio bytes, language and diarization."""
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")
        call_log: list[httpx.Request] = []

        def mock_handler(request: httpx.Request) -> httpx.Response:
            call_log.append(request)
            return _make_response(201, SUBMIT_RESPONSE)

        client = _build_mock_client(mock_handler)

        job_id = await provider._submit_job(client, b"fake audio", "audio.mp3", "de")

        assert job_id == "job-abc-123"
        assert len(call_log) == 1
        assert call_log[0].headers["authorization"] == "Bearer test-key"
        content = call_log[0].content.decode("utf-8", errors="replace")
        assert "fake audio" in content
        assert '"language": "de"' in content
        assert '"diarization": "speaker"' in content

    async def test_missing_job_id(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")
        client = _build_mock_client(lambda r: _make_response(201, {}))

        with pytest.raises(ProviderError, match="No job ID") as exc_info:
            await provider._submit_job(client, b"a", "audio.mp3", "en")

        assert exc_info.value.cause == "bad_response"

    async def test_429_is_quota(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")
        client = _build_mock_client(lambda r: _make_response(429, text="Rate limited"))

        with pytest.raises(ProviderError, match="Rate limited") as exc_info:
            await provider._submit_job(client, b"a", "audio.mp3", "en")

        assert exc_info.value.cause == "quota"
        assert exc_info.value.provider == "speechmatics"

    async def test_503_is_unavailable(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")
        client = _build_mock_client(lambda r: _make_response(503, text="down"))

        with pytest.raises(ProviderError, match="unavailable") as exc_info:
            await provider._submit_job(client, b"a", "audio.mp3", "en")

        assert exc_info.value.cause == "unavailable"

    async def test_network_error(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")

        def mock_handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _build_mock_client(mock_handler)

        with pytest.raises(ProviderError) as exc_info:
            await provider._submit_job(client, b"a", "audio.mp3", "en")

        assert exc_info.value.cause == "network"


class TestPollStatus:
    """Tests for job status polling."""

    async def test_poll_running_then_done(self) -> None:
        """Polling continues when status is 'running' and stops at 'done'."""
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")
        poll_count = 0

        def mock_handler(request: httpx.Request) -> httpx.Response:
            nonlocal poll_count
            poll_count += 1
            if poll_count < 3:
                return _make_response(200, STATUS_RUNNING)
            return _make_response(200, STATUS_DONE)

        client = _build_mock_client(mock_handler)

        with patch("media_pipeline.asr.speechmatics.POLL_INTERVAL_SECONDS", 0.01):
            await provider._poll_until_complete(client, "job-abc-123")

        assert poll_count == 3

    async def test_poll_skips_transient_status(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")
        responses = iter([_make_response(503), _make_response(200, STATUS_DONE)])
        client = _build_mock_client(lambda r: next(responses))

        with patch("media_pipeline.asr.speechmatics.POLL_INTERVAL_SECONDS", 0.01):
            await provider._poll_until_complete(client, "job-abc-123")

    @pytest.mark.parametrize("status", [STATUS_REJECTED, STATUS_DELETED])
    async def test_poll_terminal_status_raises(self, status: dict) -> None:
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")
        client = _build_mock_client(lambda r: _make_response(200, status))

        with pytest.raises(ProviderError, match=status["job"]["status"]) as exc_info:
            await provider._poll_until_complete(client, "job-abc-123")

        assert exc_info.value.cause == "rejected"

    async def test_poll_timeout(self) -> None:
        provider = SpeechmaticsProvider(
            api_key="test-key", base_url="https://mock-api", timeout=0
        )
        client = _build_mock_client(lambda r: _make_response(200, STATUS_RUNNING))

        with pytest.raises(ProviderError, match="timed out") as exc_info:
            await provider._poll_until_complete(client, "job-abc-123")

        assert exc_info.value.cause == "timeout"


class TestConvertResponse:
    """Tests for conversion to TranscriptionResult."""

    def test_single_speaker_text(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key")

        result = provider._convert_response(SINGLE_SPEAKER_TRANSCRIPT, "job-1", "en")

        assert isinstance(result, TranscriptionResult)
        assert result.text == "Speaker 1: hello world."
        assert result.raw_response == SINGLE_SPEAKER_TRANSCRIPT

    def test_multi_speaker_turns(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key")

        result = provider._convert_response(MULTI_SPEAKER_TRANSCRIPT, "job-1", "en")

        assert result.text == (
            "Speaker 1: hello\n"
            "Speaker 2: hi there\n"
            "Speaker 1: great"
        )
        assert result.model_meta["speaker_count"] == 2

    def test_model_meta(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key")

        meta = provider._convert_response(
            SINGLE_SPEAKER_TRANSCRIPT, "job-1", "en"
        ).model_meta

        assert meta["model"] == "speechmatics-batch"
        assert meta["job_id"] == "job-1"
        assert meta["operating_point"] == "enhanced"
        # punctuation confidence is excluded from the average
        assert meta["average_confidence"] == pytest.approx(0.9)
        assert meta["low_confidence"] is False

    def test_low_confidence_flag(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key")

        meta = provider._convert_response(LOW_CONFIDENCE_TRANSCRIPT, "j", "en").model_meta

        assert meta["low_confidence"] is True

    def test_empty_response(self) -> None:
        provider = SpeechmaticsProvider(api_key="test-key")

        result = provider._convert_response(EMPTY_TRANSCRIPT, "j", "en")

        assert result.text == ""
        assert result.model_meta["average_confidence"] is None
        assert result.model_meta["low_confidence"] is False


class TestTranscribe:
    """End-to-end transcribe() against mocked HTTP."""

    async def test_full_flow(self, httpx_mock) -> None:
        httpx_mock.add_response(
            method="POST", url="https://mock-api/jobs/", status_code=201,
            json=SUBMIT_RESPONSE,
        )
        httpx_mock.add_response(
            method="GET", url="https://mock-api/jobs/job-abc-123", json=STATUS_DONE
        )
        httpx_mock.add_response(
            method="GET",
            url="https://mock-api/jobs/job-abc-123/transcript?format=json-v2",
            json=MULTI_SPEAKER_TRANSCRIPT,
        )
        provider = SpeechmaticsProvider(api_key="test-key", base_url="https://mock-api")

        result = await provider.transcribe(b"mp3", {"language": "fr"})

        assert result.text.startswith("Speaker 1: hello")
        assert result.model_meta["language"] == "fr"
        assert result.model_meta["job_id"] == "job-abc-123"
