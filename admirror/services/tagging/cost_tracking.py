"""
Cost tracking for tagging API usage.

Token pricing for the Anthropic vision model and per-hour pricing for Groq
Whisper transcription.
"""

# Claude Sonnet pricing, USD per 1M tokens
INPUT_COST_PER_MILLION = 3.0
OUTPUT_COST_PER_MILLION = 15.0

# Groq whisper-large-v3-turbo, USD per audio hour
WHISPER_COST_PER_HOUR = 0.04

# MP3 at ~128kbps
MP3_BYTES_PER_SECOND = 16_000


def calculate_cost(input_tokens: int, output_tokens: int) -> float:
    """
    Calculate model cost from token usage.

    Example:
        >>> calculate_cost(1_000_000, 100_000)
        4.5
    """
    return (input_tokens * INPUT_COST_PER_MILLION + output_tokens * OUTPUT_COST_PER_MILLION) / 1_000_000


def estimate_audio_seconds(file_size_bytes: int) -> float:
    """Rough audio length from an mp3's size (never below one second)."""
    return max(1.0, file_size_bytes / MP3_BYTES_PER_SECOND)


def calculate_transcription_cost(audio_seconds: float) -> float:
    return (audio_seconds / 3600) * WHISPER_COST_PER_HOUR
