"""
VisionTaggingService - creative tagging with Anthropic's vision models.

Handles the image side of tagging:
- Fetching ad thumbnails
- Asking the model for one value per taxonomy dimension
- Parsing and validating the JSON answer
- Reporting tokens, cost and latency for the cost ledger

Rate limits are reported as ``error="RATE_LIMITED"`` rather than raised so
that the pipeline can back off instead of treating them as bad content.
"""

import base64
import hashlib
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Union

import anthropic
import httpx
from pydantic import ValidationError

from ...core.config import Config
from ..helpers import elapsed_ms
from ..models import TaggingResult
from .cost_tracking import calculate_cost
from .taxonomy import DIMENSION_KEYS, build_tagging_prompt, parse_json_response, validate_tag_set

logger = logging.getLogger(__name__)

SUPPORTED_MEDIA_TYPES = ('image/jpeg', 'image/png', 'image/gif', 'image/webp')
IMAGE_FETCH_TIMEOUT = 30.0
RATE_LIMITED = 'RATE_LIMITED'


class AnthropicVisionBase:
    """Shared Anthropic client handling for the image and video collaborators."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        """
        Args:
            api_key: Anthropic API key (if None, uses Config.ANTHROPIC_API_KEY)
            model: Model name (if None, uses Config.TAGGING_MODEL)
            client: Pre-built async client (tests, shared connection pools)

        Raises:
            ValueError: If no API key and no client are available
        """
        self.model_name = model or Config.TAGGING_MODEL
        if client is None:
            key = api_key or Config.ANTHROPIC_API_KEY
            if not key:
                raise ValueError("ANTHROPIC_API_KEY not found in environment")
            client = anthropic.AsyncAnthropic(api_key=key)
        self.client = client

    async def _create(self, content: Union[str, List[Dict[str, Any]]], max_tokens: int = 512):
        return await self.client.messages.create(
            model=self.model_name,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": content}],
        )

    @staticmethod
    def _image_block(data: bytes, media_type: str = "image/jpeg") -> Dict[str, Any]:
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": media_type,
                "data": base64.b64encode(data).decode("ascii"),
            },
        }

    @staticmethod
    def _response_text(response) -> Optional[str]:
        for block in response.content:
            if getattr(block, "type", None) == "text":
                return block.text
        return None

    async def aclose(self) -> None:
        await self.client.close()

    async def _tag_with_prompt(
        self,
        content: Union[str, List[Dict[str, Any]]],
        validate,
        keys: Sequence[str] = DIMENSION_KEYS,
        result_cls=TaggingResult,
        transform=None,
    ) -> TaggingResult:
        """Call the model, parse its JSON and validate it.

        Only the taxonomy ``keys`` are kept; anything else the model adds to
        its answer is dropped.

        Args:
            content: Message content (text or blocks)
            validate: Taxonomy validator returning TagValidation
            keys: Dimension keys to keep from the validated answer
            result_cls: Result model to build
            transform: Optional hook applied to the parsed dict before validation
        """
        start = time.monotonic()
        try:
            response = await self._create(content)
        except anthropic.RateLimitError:
            logger.warning("Vision API rate limited")
            return result_cls(duration_ms=elapsed_ms(start), error=RATE_LIMITED)
        except anthropic.APIError as e:
            logger.error(f"Vision API error: {e}")
            return result_cls(duration_ms=elapsed_ms(start), error=str(e) or "Unknown vision API error")

        usage = {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
            "estimated_cost_usd": calculate_cost(response.usage.input_tokens, response.usage.output_tokens),
            "duration_ms": elapsed_ms(start),
        }

        text = self._response_text(response)
        if text is None:
            return result_cls(**usage, error="No text in response")

        try:
            parsed = parse_json_response(text)
        except ValueError:
            return result_cls(**usage, error="Failed to parse JSON response")

        if transform is not None and isinstance(parsed, dict):
            parsed = transform(parsed)

        validation = validate(parsed)
        if not validation.valid:
            return result_cls(**usage, error=f"Validation failed: {'; '.join(validation.errors)}")

        try:
            return result_cls(**usage, tags={key: parsed[key] for key in keys})
        except (KeyError, ValidationError) as e:
            logger.warning(f"Invalid tag payload: {e}")
            return result_cls(**usage, error="Invalid tag payload")


class VisionTaggingService(AnthropicVisionBase):
    """Tags ad thumbnails against the 12-dimension image taxonomy."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(api_key=api_key, model=model, client=client)
        self.http = http_client or httpx.AsyncClient(timeout=IMAGE_FETCH_TIMEOUT, follow_redirects=True)
        logger.info(f"VisionTaggingService initialized with model: {self.model_name}")

    async def fetch_image(self, url: str) -> Optional[Dict[str, Any]]:
        """
        Download an image.

        Returns:
            {"data": bytes, "media_type": str} or None on any HTTP failure
        """
        try:
            response = await self.http.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Error fetching image {url}: {e}")
            return None
        if response.status_code >= 400:
            logger.warning(f"Image fetch returned HTTP {response.status_code}: {url}")
            return None

        media_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        if media_type not in SUPPORTED_MEDIA_TYPES:
            media_type = "image/jpeg"
        return {"data": response.content, "media_type": media_type}

    async def hash_image(self, url: str) -> Optional[str]:
        """SHA-256 of the image bytes, or None if it can't be fetched."""
        image = await self.fetch_image(url)
        if image is None:
            return None
        return hashlib.sha256(image["data"]).hexdigest()

    async def tag_ad_image(self, image_url: str) -> TaggingResult:
        """
        Tag one ad image.

        Args:
            image_url: Thumbnail URL

        Returns:
            TaggingResult with validated tags, or an ``error`` describing
            the fetch/parse/validation/API failure
        """
        start = time.monotonic()
        image = await self.fetch_image(image_url)
        if image is None:
            return TaggingResult(duration_ms=elapsed_ms(start), error="Failed to fetch image")

        content = [
            self._image_block(image["data"], image["media_type"]),
            {"type": "text", "text": build_tagging_prompt()},
        ]
        result = await self._tag_with_prompt(content, validate_tag_set)
        result.duration_ms = elapsed_ms(start)
        return result

    async def aclose(self) -> None:
        await self.http.aclose()
        await super().aclose()
