"""ASR provider registry with configuration-driven selection.

Maps provider name strings to provider classes. The worker calls
get_asr_provider() once at startup and keeps the instance for the
lifetime of the process.
"""

from media_pipeline.asr.interface import ASRProvider
from media_pipeline.asr.openai_whisper import OpenAIWhisperProvider
from media_pipeline.asr.speechmatics import SpeechmaticsProvider
from media_pipeline.utils.errors import ConfigError

ASR_PROVIDERS: dict[str, type[ASRProvider]] = {
    "speechmatics": SpeechmaticsProvider,
    "openai": OpenAIWhisperProvider,
}


def get_asr_provider(provider: str, **kwargs: object) -> ASRProvider:
    """Create an ASR provider instance by name.

    Args:
        provider: Provider name (e.g., "speechmatics").
        **kwargs: Provider-specific configuration passed to the constructor.

    Returns:
        An initialized ASRProvider instance.

    Raises:
        ConfigError: If the provider name is not registered or the
            provider rejects its configuration.
    """
    provider_cls = ASR_PROVIDERS.get(provider)
    if not provider_cls:
        available = ", ".join(sorted(ASR_PROVIDERS.keys()))
        raise ConfigError(
            f"Unknown ASR provider: '{provider}'. Available: {available}"
        )
    try:
        return provider_cls(**kwargs)
    except ValueError as exc:
        raise ConfigError(f"Invalid configuration for '{provider}': {exc}") from exc
