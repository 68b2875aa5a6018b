"""
Text generation using the OpenAI chat completions API.

Used for drafting follow-up emails and for reading business cards.
Callers get the reply text or a GenerationError; nothing is retried here.
"""

import base64
import logging
from typing import Any, Optional

from openai import OpenAI

from .config import config
from .errors import GenerationError

logger = logging.getLogger(__name__)


class TextGenerator:
    """Thin wrapper around the OpenAI client with a fixed response contract."""
    
    def __init__(
        self,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        vision_model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        self.client = client or OpenAI(api_key=config.OPENAI_API_KEY)
        self.model = model or config.OPENAI_MODEL
        self.vision_model = vision_model or config.OPENAI_VISION_MODEL
        self.max_tokens = max_tokens or config.OPENAI_MAX_TOKENS
    
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        """
        Generate text from a system and a user instruction.
        
        Returns:
            The generated text, verbatim.
        
        Raises:
            GenerationError: if the call fails or the reply has no message.
        """
        return self._chat(
            self.model,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
    
    def describe_image(
        self,
        system_prompt: str,
        user_prompt: str,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
    ) -> str:
        """Same contract as complete(), with an inline image in the user turn."""
        encoded = base64.b64encode(image_bytes).decode("ascii")
        return self._chat(
            self.vision_model,
            [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                        },
                        {"type": "text", "text": user_prompt},
                    ],
                },
            ],
        )
    
    def _chat(self, model: str, messages: list[dict]) -> str:
        logger.info(f"Requesting completion from {model}")
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            logger.error(f"OpenAI API error: {e}")
            raise GenerationError(f"OpenAI API error: {e}") from e
        
        choices = getattr(response, "choices", None)
        if not choices or getattr(choices[0], "message", None) is None:
            logger.error(f"Invalid response structure from OpenAI: {response!r}")
            raise GenerationError("Failed to generate text: invalid response from OpenAI")
        
        content = choices[0].message.content
        if content is None:
            raise GenerationError("Failed to generate text: empty response from OpenAI")
        
        logger.info("OpenAI response received")
        return content
