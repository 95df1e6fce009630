"""
Illustrator contract and OpenAI image adapter.

Illustrations are optional decoration: any failure here leaves the round
text-only and never fails the round itself.
"""

import base64
import binascii
from abc import ABC, abstractmethod
from typing import Optional

import openai
from openai import AsyncOpenAI

from arena.config import Config


class IllustrationError(Exception):
    """Raised when an image could not be produced"""
    pass


class Illustrator(ABC):
    """Renders a prompt into image bytes."""

    @abstractmethod
    async def render_image(self, prompt: str) -> bytes:
        """Return encoded image bytes or raise IllustrationError"""


class OpenAIIllustrator(Illustrator):
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        size: str = "1024x1024",
        client: Optional[AsyncOpenAI] = None
    ):
        self.model = model or Config.OPENAI_IMAGE_MODEL
        self.size = size
        self.client = client or AsyncOpenAI(
            api_key=api_key or Config.OPENAI_API_KEY,
            timeout=Config.OPENAI_TIMEOUT_SECONDS
        )

    async def render_image(self, prompt: str) -> bytes:
        if not prompt or not prompt.strip():
            raise IllustrationError("Empty illustration prompt")
        try:
            response = await self.client.images.generate(
                model=self.model,
                prompt=prompt,
                size=self.size,
                n=1
            )
        except openai.OpenAIError as e:
            raise IllustrationError(f"Image generation failed: {e}") from e

        if not response.data or not response.data[0].b64_json:
            raise IllustrationError("Image generation returned no image data")
        try:
            return base64.b64decode(response.data[0].b64_json)
        except (binascii.Error, ValueError) as e:
            raise IllustrationError(f"Image data could not be decoded: {e}") from e
