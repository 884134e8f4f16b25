"""Receipt extraction using an OpenAI vision model.

The stored upload is normalised (PDF first page, EXIF orientation,
grayscale, bounded size), sent as a base64 data URL with a JSON
response format, and validated against
:class:`~fuelrefund.models.schemas.ReceiptTranscription`. Any empty or
malformed answer raises :class:`~fuelrefund.core.errors.ExtractionFailure`
so the worker can fail the receipt instead of storing garbage.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Optional, Protocol

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError as PydanticValidationError

from fuelrefund.core.config import settings
from fuelrefund.core.errors import ExtractionFailure
from fuelrefund.models.schemas import ReceiptTranscription
from fuelrefund.utils.image_processing import prepare_for_extraction
from fuelrefund.utils.prompts import get_default_extraction_prompt

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    async def extract(self, data: bytes, mime_type: str) -> ReceiptTranscription: ...


class ExtractionService:
    """Calls the vision model and returns a validated transcription."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None) -> None:
        self.model = model or settings.EXTRACTION_MODEL
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    async def extract(self, data: bytes, mime_type: str) -> ReceiptTranscription:
        try:
            image = await asyncio.to_thread(prepare_for_extraction, data, mime_type)
        except ValueError as exc:
            raise ExtractionFailure(f"Could not render upload: {exc}") from exc
        data_url = "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")
        logger.info("[extraction] request model=%s bytes=%d", self.model, len(image))
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": get_default_extraction_prompt()},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
                response_format={"type": "json_object"},
                max_completion_tokens=1000,
            )
        except OpenAIError as exc:
            raise ExtractionFailure(f"Extraction service error: {exc}") from exc
        content = response.choices[0].message.content if response.choices else None
        return parse_transcription(content)


def parse_transcription(content: Optional[str]) -> ReceiptTranscription:
    """Validate the model's JSON answer."""
    if not content:
        raise ExtractionFailure("No response from extraction model")
    try:
        return ReceiptTranscription.model_validate(json.loads(content))
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        logger.warning("[extraction] invalid model output: %s", exc)
        raise ExtractionFailure("Invalid extraction response format") from exc
