"""
LLM client utilities.

Completion and embedding calls against any OpenAI-compatible endpoint
(OpenAI itself, or a local Ollama server through OPENAI_BASE_URL).
"""

import json
import logging
from typing import Dict, List, Optional

from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential

from sophia.config import settings
from sophia.utils.error_handling import LLMError

logger = logging.getLogger(__name__)


class LLMClient:
    """
    Thin async wrapper around the OpenAI client with retry logic.

    Used as the embedding service of the tool registry and as the completion
    service of the workflow suggestion engine.
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, embedding_model: Optional[str] = None):
        self.model = model or settings.openai_model
        self.embedding_model = embedding_model or settings.openai_embedding_model
        self.client = AsyncOpenAI(
            api_key=api_key or settings.openai_api_key or "not-needed",
            base_url=base_url or settings.openai_base_url
        )

    async def get_completion(
        self,
        prompt: str,
        system_message: str = "You are a helpful AI assistant.",
        temperature: float = settings.openai_temperature,
        max_tokens: int = settings.openai_max_tokens,
        stop: Optional[List[str]] = None,
    ) -> str:
        """
        Get a completion from the LLM.

        Args:
            prompt: The user prompt
            system_message: The system message
            temperature: Controls randomness (0-1)
            max_tokens: Maximum number of tokens to generate
            stop: Optional stop sequences

        Returns:
            The generated text
        """
        try:
            return await self._chat(prompt, system_message, temperature, max_tokens, stop, json_mode=False)
        except Exception as e:
            logger.error(f"Error calling LLM API: {e}")
            raise LLMError(f"LLM completion failed: {e}", component="openai_client") from e

    async def get_json_completion(
        self,
        prompt: str,
        system_message: str = "You are a helpful AI assistant. Respond with JSON only.",
        temperature: float = settings.openai_temperature,
        max_tokens: int = settings.openai_max_tokens,
    ) -> Dict:
        """
        Get a JSON completion from the LLM.

        Returns:
            The generated JSON as a Python dictionary
        """
        try:
            content = await self._chat(prompt, system_message, temperature, max_tokens, None, json_mode=True)
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"LLM returned invalid JSON: {e}")
            raise LLMError(f"LLM returned invalid JSON: {e}", component="openai_client") from e
        except Exception as e:
            logger.error(f"Error calling LLM API for JSON completion: {e}")
            raise LLMError(f"LLM JSON completion failed: {e}", component="openai_client") from e

    async def get_embedding(self, text: str) -> List[float]:
        """
        Get an embedding for a piece of text.

        Args:
            text: The text to embed

        Returns:
            The embedding as a list of floats
        """
        try:
            return await self._embed(text)
        except Exception as e:
            logger.error(f"Error getting embedding: {e}")
            raise LLMError(f"Embedding generation failed: {e}", component="openai_client") from e

    @retry(wait=wait_exponential(min=1, max=60), stop=stop_after_attempt(5), reraise=True)
    async def _chat(self, prompt: str, system_message: str, temperature: float,
                    max_tokens: int, stop: Optional[List[str]], json_mode: bool) -> str:
        params = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_message},
                {"role": "user", "content": prompt}
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if stop:
            params["stop"] = stop
        if json_mode:
            params["response_format"] = {"type": "json_object"}

        response = await self.client.chat.completions.create(**params)
        return response.choices[0].message.content or ""

    @retry(wait=wait_exponential(min=1, max=60), stop=stop_after_attempt(5), reraise=True)
    async def _embed(self, text: str) -> List[float]:
        response = await self.client.embeddings.create(model=self.embedding_model, input=text)
        return response.data[0].embedding
