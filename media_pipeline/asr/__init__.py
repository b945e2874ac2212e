"""Speech recognition providers."""

from media_pipeline.asr.registry import get_asr_provider

__all__ = ["get_asr_provider"]
