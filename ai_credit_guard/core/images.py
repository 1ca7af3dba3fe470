"""
Image attachment token costs per provider.

Providers bill images by their own formulas: OpenAI by 512px tiles,
Anthropic by pixel area and Google by a near-fixed count. Dimensions come
from attachment metadata, or are guessed from file size when missing.
"""

import math
from typing import Any, Iterable, Mapping, Optional, Tuple

import structlog

from .token_counter import round_half_up

logger = structlog.get_logger()

DEFAULT_DIMENSIONS = (512, 512)
DEFAULT_IMAGE_TOKENS = 85

OPENAI_BASE_TOKENS = 85
OPENAI_TILE_TOKENS = 170
OPENAI_LOW_DETAIL_TOKENS = 65
GOOGLE_BASE_TOKENS = 258

# Rough pixels per byte of compressed image data
PIXELS_PER_BYTE = (("jpeg", 15), ("jpg", 15), ("png", 5), ("webp", 18))
DEFAULT_PIXELS_PER_BYTE = 10


def is_image_attachment(attachment: Any) -> bool:
    """True for attachment metadata that describes an image."""
    if not isinstance(attachment, Mapping):
        return False
    if str(attachment.get("type") or "").startswith("image"):
        return True
    if attachment.get("width") and attachment.get("height"):
        return True
    return str(attachment.get("data") or "").startswith("data:image/")


class ImageTokenCalculator:
    """Provider-specific image token calculations."""

    supported_providers = ("openai", "anthropic", "google")

    def calculate_tokens(self, attachment: Any, provider: str, model: str) -> int:
        if not attachment:
            return 0
        if provider not in self.supported_providers:
            logger.debug("Unsupported provider for image tokens", provider=provider)
            return DEFAULT_IMAGE_TOKENS

        width, height = self.image_dimensions(attachment)
        model = (model or "").lower()
        if provider == "openai":
            return self._openai_tokens(width, height, model)
        if provider == "anthropic":
            return self._anthropic_tokens(width, height, model)
        return self._google_tokens(width, height, model)

    def calculate_multiple(self, attachments: Iterable[Any], provider: str, model: str) -> int:
        return sum(self.calculate_tokens(a, provider, model) for a in attachments or ())

    def image_dimensions(self, attachment: Any) -> Tuple[int, int]:
        """Width and height from metadata, file size, or the 512x512 default."""
        if isinstance(attachment, Mapping):
            width = _positive_int(attachment.get("width"))
            height = _positive_int(attachment.get("height"))
            if width and height:
                return width, height

            size = _positive_int(attachment.get("size"))
            if size:
                return self.dimensions_from_file_size(size, attachment.get("type"))

        logger.debug("Could not determine image dimensions, using defaults")
        return DEFAULT_DIMENSIONS

    @staticmethod
    def dimensions_from_file_size(size_bytes: int, mime_type: Optional[str]) -> Tuple[int, int]:
        mime_type = (mime_type or "").lower()
        ratio = next((r for token, r in PIXELS_PER_BYTE if token in mime_type), DEFAULT_PIXELS_PER_BYTE)
        # Assume a square image
        side = round_half_up(math.sqrt(size_bytes * ratio))
        return side, side

    def _openai_tokens(self, width: int, height: int, model: str) -> int:
        if "gpt-4" in model:
            return OPENAI_BASE_TOKENS + self._openai_high_detail_tokens(width, height)
        return OPENAI_BASE_TOKENS + OPENAI_LOW_DETAIL_TOKENS

    @staticmethod
    def _openai_high_detail_tokens(width: int, height: int) -> int:
        # Fit within 2048x2048, scale the shortest side to 768, then count 512px tiles
        scale = min(2048 / width, 2048 / height, 1)
        scaled_width = round_half_up(width * scale)
        scaled_height = round_half_up(height * scale)

        final_scale = max(768 / scaled_width, 768 / scaled_height)
        final_width = round_half_up(scaled_width * final_scale)
        final_height = round_half_up(scaled_height * final_scale)

        tiles = math.ceil(final_width / 512) * math.ceil(final_height / 512)
        return tiles * OPENAI_TILE_TOKENS

    @staticmethod
    def _anthropic_tokens(width: int, height: int, model: str) -> int:
        tokens = math.ceil(width * height / 750)
        if "claude-opus" in model or "claude-4" in model:
            tokens = math.ceil(tokens * 1.1)
        elif "haiku" in model:
            tokens = math.ceil(tokens * 0.9)
        return max(tokens, 10)

    @staticmethod
    def _google_tokens(width: int, height: int, model: str) -> int:
        tokens = GOOGLE_BASE_TOKENS
        pixels = width * height
        if pixels > 1024 * 1024:
            tokens = math.ceil(tokens * 1.5)
        elif pixels < 256 * 256:
            tokens = math.ceil(tokens * 0.8)

        if "gemini-2.5-pro" in model:
            tokens = math.ceil(tokens * 1.2)
        elif "flash" in model or "lite" in model:
            tokens = math.ceil(tokens * 0.9)
        return max(tokens, 50)


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None
