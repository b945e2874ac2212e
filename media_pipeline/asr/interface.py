"""Speech recognition provider contract.

Every backend implements ASRProvider.transcribe() and returns a
TranscriptionResult. The ASR stage handler only ever sees this contract,
so adding a backend never touches the handler or the job state machine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TranscriptWord:
    """A single word with timing and confidence information."""

    text: str
    start_time: float
    end_time: float
    confidence: float


@dataclass
class TranscriptSegment:
    """A run of speech attributed to one speaker."""

    speaker_label: str
    words: list[TranscriptWord]


@dataclass
class TranscriptionResult:
    """Uniform output of every provider.

    Attributes:
        raw_response: The provider's response body, stored verbatim.
        text: Cleaned plain-text transcript.
        model_meta: Provider diagnostics (model id, confidence and
            verification flags). Copied into the Transcript row.
    """

    raw_response: dict[str, Any]
    text: str
    model_meta: dict[str, Any] = field(default_factory=dict)


class ASRProvider(ABC):
    """Abstract base class for speech-to-text backends.

    Subclasses set ``name`` and implement transcribe(). Failures of any
    kind (network, timeout, quota, rejected job) must surface as
    ProviderError.
    """

    name: str = ""

    @abstractmethod
    async def transcribe(
        self, audio: bytes, options: dict[str, Any]
    ) -> TranscriptionResult:
        """Transcribe compressed audio bytes.

        Args:
            audio: Audio file contents (the transcode stage's MP3 artifact).
            options: Per-call hints such as ``language`` or ``file_name``.

        Returns:
            TranscriptionResult with raw response, text and model metadata.

        Raises:
            ProviderError: On any backend failure.
        """
