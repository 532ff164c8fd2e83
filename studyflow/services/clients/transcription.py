"""OpenAI Whisper API transcription for narrated audio."""

from typing import Optional

from openai import AsyncOpenAI

from studyflow.core.config import settings
from studyflow.core.errors import ConfigurationError, PermanentExternalError
from studyflow.core.logging import get_logger
from studyflow.core.retry import RetryPolicy

logger = get_logger(__name__)

SUPPORTED_AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".mp4", ".ogg", ".webm")


class WhisperTranscriber:
    """
    Transcription via the Whisper API.

    Max file size: 25 MB per request. Larger files cannot succeed on retry
    and are rejected as a permanent error before any request is made.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_bytes: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        if client is None and not self.api_key:
            raise ConfigurationError("OpenAI API key is required. Set OPENAI_API_KEY in environment.")

        self.model = model or settings.WHISPER_MODEL
        self.max_bytes = max_bytes or settings.WHISPER_MAX_BYTES
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.client = client or AsyncOpenAI(api_key=self.api_key)

    async def transcribe(self, data: bytes, file_name: str, language: Optional[str] = None) -> str:
        if len(data) > self.max_bytes:
            raise PermanentExternalError(
                f"Audio file is {len(data) / (1024 * 1024):.1f} MB; "
                f"the transcription limit is {self.max_bytes / (1024 * 1024):.0f} MB",
                provider_name="whisper",
            )

        request = {"model": self.model, "file": (file_name, data)}
        if language:
            request["language"] = language

        response = await self.retry_policy.call(self.client.audio.transcriptions.create, **request)
        text = (response.text or "").strip()

        logger.info("whisper_transcription_complete", file_name=file_name, size=len(data), chars=len(text))
        return text
