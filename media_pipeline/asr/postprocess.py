"""Plain-text rendering of provider output.

Speaker-diarized providers render one line per speaker turn; providers
that return flat text are normalised so both produce the same shape of
artifact.
"""

import re

from media_pipeline.asr.interface import TranscriptSegment

# Punctuation that attaches to the previous word without a space
_ATTACHED_PUNCTUATION = frozenset(".,!?;:%)")
_WHITESPACE = re.compile(r"[ \t\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")

LOW_CONFIDENCE_THRESHOLD = 0.6


def _join_words(words: list[str]) -> str:
    text = ""
    for word in words:
        if text and word and word[0] not in _ATTACHED_PUNCTUATION:
            text += " "
        text += word
    return text


def render_segments(segments: list[TranscriptSegment]) -> str:
    """Render speaker turns as ``Speaker N: text`` lines.

    Consecutive segments from the same speaker are merged into one line.
    Empty input produces an empty string.
    """
    lines: list[str] = []
    prev_speaker: str | None = None

    for segment in segments:
        if not segment.words:
            continue
        text = _join_words([w.text for w in segment.words])
        if segment.speaker_label == prev_speaker and lines:
            lines[-1] = _join_words([lines[-1], text])
        else:
            lines.append(f"{segment.speaker_label}: {text}")
            prev_speaker = segment.speaker_label

    return "\n".join(lines)


def clean_text(text: str) -> str:
    """Collapse runs of spaces, trim each line and drop excess blank lines."""
    if not text:
        return ""
    lines = [_WHITESPACE.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


def average_confidence(segments: list[TranscriptSegment]) -> float | None:
    """Mean word confidence across all segments, or None with no words."""
    scores = [w.confidence for s in segments for w in s.words]
    if not scores:
        return None
    return sum(scores) / len(scores)
