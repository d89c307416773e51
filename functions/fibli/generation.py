"""
Client for the text-to-image service that produces temporary image URLs.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 120  # seconds


class ImageGenerationError(Exception):
    """Raised when the generation service does not return an image URL."""


class ImageGenerator(Protocol):
    def generate(self, prompt: str) -> str:
        ...


@dataclass
class DeepAIImageGenerator:
    api_key: str
    endpoint: str = "https://api.deepai.org/api/text2img"
    timeout: float = REQUEST_TIMEOUT

    def generate(self, prompt: str) -> str:
        try:
            response = requests.post(
                self.endpoint,
                headers={"api-key": self.api_key},
                json={
                    "text": prompt,
                    "width": "1024",
                    "height": "768",
                    "genius_preference": "anime",
                    "image_generator_version": "hd",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ImageGenerationError(str(exc)) from exc

        output_url = payload.get("output_url")
        if not output_url:
            raise ImageGenerationError(
                payload.get("err") or "Image generation returned no output_url"
            )
        logger.info("Generated image %s", output_url)
        return output_url


@dataclass
class InMemoryImageGenerator:
    """Returns fake temporary URLs and remembers the prompts it saw."""

    base_url: str = "https://gen.example.test"
    prompts: list[str] = field(default_factory=list)

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return f"{self.base_url}/{uuid.uuid4().hex}.png"
