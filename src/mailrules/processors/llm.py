"""LLM client backends used by the rule classifier and job plugins."""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any

from mailrules.config import LLMConfig

logger = logging.getLogger(__name__)


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    def chat(self, messages: list[dict[str, str]], max_tokens: int, temperature: float) -> str:
        """Send a chat completion request and return the response text."""
        ...


class AnthropicClient(LLMClient):
    """Anthropic API client."""

    def __init__(self, api_key: str, model: str) -> None:
        import anthropic

        self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model

    def chat(self, messages: list[dict[str, str]], max_tokens: int, temperature: float) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=messages,
        )
        return "".join(block.text for block in response.content if block.type == "text")


class OllamaClient(LLMClient):
    """Ollama client using the native ollama library."""

    def __init__(self, base_url: str, model: str, context_length: int = 8192) -> None:
        import ollama

        self.client = ollama.Client(host=base_url)
        self.model = model
        self.context_length = context_length

    def chat(
        self,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        retries: int = 2,
    ) -> str:
        content = ""
        # Freshly loaded models sometimes answer with an empty message
        for attempt in range(retries + 1):
            response = self.client.chat(
                model=self.model,
                messages=messages,  # type: ignore
                options={
                    "num_ctx": self.context_length,
                    "num_predict": max_tokens,
                    "temperature": temperature,
                },
            )
            content = response["message"]["content"] or ""
            if content.strip():
                return content
            if attempt < retries:
                logger.debug(f"Empty response from {self.model}, retrying")
                time.sleep(0.3)
        return content


def create_llm_client(config: LLMConfig, api_key: str | None = None) -> LLMClient:
    """Factory function to create the configured LLM client."""
    if config.provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic API key required")
        return AnthropicClient(api_key=api_key, model=config.model)
    elif config.provider == "ollama":
        return OllamaClient(
            base_url=config.ollama_base_url,
            model=config.model,
            context_length=config.ollama_context_length,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {config.provider}")


def parse_json_response(text: str) -> dict[str, Any] | list[Any]:
    """Parse JSON from an LLM response, tolerating markdown fences and chatter."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    code_block = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if code_block:
        try:
            return json.loads(code_block.group(1))
        except json.JSONDecodeError:
            pass

    json_match = re.search(r"(\{[\s\S]*\}|\[[\s\S]*\])", text)
    if json_match:
        try:
            return json.loads(json_match.group(1))
        except json.JSONDecodeError:
            pass

    raise ValueError(f"Could not parse JSON from response: {text[:200]}")
