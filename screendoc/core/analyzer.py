"""Vision-model analysis of captured screenshots."""

import io
import os
import time
from typing import Any, Callable, Optional

from loguru import logger
from PIL import Image

from .configs import LLMConfig
from .errors import AnalysisFailure


class VisionAnalyzer:
    """Describes screenshots with a Gemini vision model.

    Instances are callable with ``(screenshot_id, image_bytes)`` so they can
    be handed to the capture scheduler as its analysis callback.
    """

    def __init__(self, config: LLMConfig, model: Any = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        """Initialize analyzer.

        Args:
            config: LLM configuration
            model: Pre-built model exposing ``generate_content`` (built from config if None)
            sleep: Backoff sleep function
        """
        self.config = config
        self._sleep = sleep
        self._client = model
        if self._client is None:
            self._init_client()

    def _init_client(self) -> None:
        """Initialize the Gemini client."""
        try:
            import google.generativeai as genai

            api_key = os.getenv(self.config.api_key_env)
            if not api_key:
                raise ValueError(f"{self.config.api_key_env} environment variable not set")

            genai.configure(api_key=api_key)
            self._client = genai.GenerativeModel(self.config.model)

            logger.info(f"Gemini vision client initialized ({self.config.model})")

        except ImportError:
            logger.error("google-generativeai package not installed. Install with: pip install google-generativeai")
            raise
        except Exception as e:
            logger.error(f"Failed to initialize Gemini client: {e}")
            raise

    def __call__(self, screenshot_id: Any, image_bytes: bytes) -> str:
        return self.describe(image_bytes, screenshot_id=screenshot_id)

    def describe(self, image_bytes: bytes, screenshot_id: Any = None, prompt: Optional[str] = None) -> str:
        """Describe one screenshot.

        Args:
            image_bytes: Encoded image data
            screenshot_id: Id used in logs and errors
            prompt: Overrides the configured prompt

        Returns:
            Model description text

        Raises:
            AnalysisFailure: If every attempt failed
        """
        prompt = prompt or self.config.prompt
        max_retries = self.config.max_retries
        last_error: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                text = self._make_gemini_request(prompt, image_bytes)
                logger.debug(f"Screenshot {screenshot_id} described in {attempt + 1} attempt(s)")
                return text.strip()
            except Exception as e:
                last_error = e
                logger.warning(f"Vision request attempt {attempt + 1}/{max_retries} failed: {e}")
                if attempt < max_retries - 1:
                    self._sleep(2 ** attempt)  # Exponential backoff

        raise AnalysisFailure(f"Vision model unavailable: {last_error}", screenshot_id=screenshot_id)

    def _make_gemini_request(self, prompt: str, image_bytes: bytes) -> str:
        if not self._client:
            raise RuntimeError("Gemini client not initialized")

        image = Image.open(io.BytesIO(image_bytes))
        response = self._client.generate_content(
            contents=[prompt, image],
            generation_config={
                "max_output_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
            },
        )

        if response.candidates and len(response.candidates) > 0:
            candidate = response.candidates[0]
            if candidate.content and candidate.content.parts:
                return candidate.content.parts[0].text

        raise ValueError("No valid response from Gemini API")
