"""
Completion client using the Claude API.

Narrow interface used by the stage handlers:

- ``complete_text(prompt)``   plain text answer
- ``complete_json(prompt)``   parsed JSON, repaired when truncated/fenced
- ``extract_text_from_pdf(data)`` / ``extract_text_from_image(data, ...)``
  transcription of a document or photo through Claude vision

Every request goes through the shared ``RetryPolicy``: rate limits and
server errors are retried with backoff, other API errors surface at once.
"""

import base64
from typing import Any, Optional

from anthropic import AsyncAnthropic

from studyflow.core.config import settings
from studyflow.core.errors import ConfigurationError, PermanentExternalError
from studyflow.core.logging import get_logger
from studyflow.core.retry import RetryPolicy
from studyflow.services.processors.json_repair import repair_truncated_json

logger = get_logger(__name__)

IMAGE_MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

EXTRACTION_SYSTEM_PROMPT = (
    "You transcribe study material. Output only the text found in the material, "
    "in its original language and reading order, keeping headings, lists and table "
    "contents. Do not summarize, translate or add commentary."
)

PDF_EXTRACTION_PROMPT = (
    "Extract all of the text in this PDF, from every page, including text inside "
    "scanned images, tables and figures. Do not skip or shorten anything."
)

IMAGE_EXTRACTION_PROMPT = (
    "Extract all text visible in this photo of study notes. If there is no readable "
    "text, answer with an empty response."
)


def image_media_type(file_name: str) -> str:
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return IMAGE_MEDIA_TYPES.get(extension, "image/jpeg")


class CompletionClient:
    """
    Claude-backed text, JSON and vision completions.

    Usage:
    ------
    client = CompletionClient()
    outline = await client.complete_json("Split this book into lectures ...")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        """
        Args:
            api_key: Anthropic API key (defaults to settings.ANTHROPIC_API_KEY)
            model: Claude model (defaults to settings.ANTHROPIC_MODEL)
            max_tokens: Output ceiling per request
            temperature: Sampling temperature
            retry_policy: Shared backoff policy
            client: Pre-built SDK client (tests)
        """
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        if client is None and not self.api_key:
            raise ConfigurationError("Anthropic API key is required. Set ANTHROPIC_API_KEY in environment.")

        self.model = model or settings.ANTHROPIC_MODEL
        self.max_tokens = max_tokens or settings.ANTHROPIC_MAX_TOKENS
        self.temperature = temperature
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.client = client or AsyncAnthropic(api_key=self.api_key)

    async def _create(
        self,
        content: Any,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system:
            request["system"] = system

        response = await self.retry_policy.call(self.client.messages.create, **request)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        logger.debug(
            "completion_received",
            model=self.model,
            chars=len(text),
            stop_reason=getattr(response, "stop_reason", None),
        )
        return text.strip()

    async def complete_text(self, prompt: str, system: Optional[str] = None, max_tokens: Optional[int] = None) -> str:
        return await self._create(prompt, system=system, max_tokens=max_tokens)

    async def complete_json(self, prompt: str, system: Optional[str] = None, max_tokens: Optional[int] = None) -> Any:
        """
        Request a JSON answer.

        Raises:
            PermanentExternalError: the answer is not recoverable JSON
        """
        raw = await self._create(prompt, system=system, max_tokens=max_tokens)
        parsed = repair_truncated_json(raw)
        if parsed is None:
            logger.warning("completion_json_unparseable", preview=raw[:200])
            raise PermanentExternalError("Completion did not return valid JSON", provider_name="anthropic")
        return parsed

    async def extract_text_from_pdf(self, data: bytes) -> str:
        content = [
            {
                "type": "document",
                "source": {
                    "type": "base64",
                    "media_type": "application/pdf",
                    "data": base64.standard_b64encode(data).decode("ascii"),
                },
            },
            {"type": "text", "text": PDF_EXTRACTION_PROMPT},
        ]
        return await self._create(content, system=EXTRACTION_SYSTEM_PROMPT)

    async def extract_text_from_image(self, data: bytes, file_name: str = "") -> str:
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image_media_type(file_name),
                    "data": base64.standard_b64encode(data).decode("ascii"),
                },
            },
            {"type": "text", "text": IMAGE_EXTRACTION_PROMPT},
        ]
        return await self._create(content, system=EXTRACTION_SYSTEM_PROMPT)
