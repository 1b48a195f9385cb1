"""
TranscriptionService - speech-to-text for video ads via Groq Whisper.

Posts the extracted mp3 to Groq's OpenAI-compatible transcription endpoint.
Failures are returned in ``TranscriptionResult.error``; this service never
raises for API or file errors.
"""

import logging
import time
from pathlib import Path
from typing import Optional

import httpx

from ...core.config import Config
from ..helpers import elapsed_ms
from ..models import TranscriptionResult
from .cost_tracking import calculate_transcription_cost, estimate_audio_seconds

logger = logging.getLogger(__name__)

GROQ_WHISPER_URL = "https://api.groq.com/openai/v1/audio/transcriptions"
TRANSCRIBE_TIMEOUT = 120.0


class TranscriptionService:
    """Groq Whisper transcription."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else Config.GROQ_API_KEY
        self.model_name = model or Config.WHISPER_MODEL
        self.http = http_client or httpx.AsyncClient(timeout=TRANSCRIBE_TIMEOUT)

    async def transcribe_audio(self, audio_path: str) -> TranscriptionResult:
        """
        Transcribe an audio file.

        Args:
            audio_path: Path to an mp3 file

        Returns:
            TranscriptionResult with transcript, word count and estimated cost
        """
        start = time.monotonic()

        if not self.api_key:
            return TranscriptionResult(duration_ms=elapsed_ms(start), error="GROQ_API_KEY not configured")

        path = Path(audio_path)
        try:
            audio = path.read_bytes()
        except OSError as e:
            logger.error(f"Cannot read audio {audio_path}: {e}")
            return TranscriptionResult(duration_ms=elapsed_ms(start), error=str(e))

        audio_seconds = estimate_audio_seconds(len(audio))

        try:
            response = await self.http.post(
                GROQ_WHISPER_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files={"file": ("audio.mp3", audio, "audio/mpeg")},
                data={"model": self.model_name, "response_format": "json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Transcription request failed: {e}")
            return TranscriptionResult(
                duration_ms=elapsed_ms(start),
                audio_seconds=audio_seconds,
                error=str(e) or "Unknown transcription error",
            )

        if response.status_code >= 400:
            return TranscriptionResult(
                duration_ms=elapsed_ms(start),
                audio_seconds=audio_seconds,
                error=f"Groq API error: {response.status_code} {response.text}",
            )

        try:
            transcript = (response.json().get("text") or "").strip()
        except ValueError:
            return TranscriptionResult(
                duration_ms=elapsed_ms(start),
                audio_seconds=audio_seconds,
                error="Failed to parse transcription response",
            )
        return TranscriptionResult(
            transcript=transcript,
            word_count=len(transcript.split()) if transcript else 0,
            duration_ms=elapsed_ms(start),
            audio_seconds=audio_seconds,
            estimated_cost_usd=calculate_transcription_cost(audio_seconds),
        )

    async def aclose(self) -> None:
        await self.http.aclose()
