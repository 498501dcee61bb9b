"""
Chat completion clients for answer synthesis.

Two backends share one async interface:
- Ollama (/api/chat, non-streaming)
- OpenAI-compatible APIs (/chat/completions)

Each call is bounded by LLM_TIMEOUT. Transport failures, non-2xx replies and
empty completions all surface as LLMError so the orchestrator can map them
to a single error code.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Dict, Optional, Tuple

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_LLM_TIMEOUT = 60


@dataclass
class LLMMessage:
    """One turn of the prompt."""
    role: str  # "system", "user", or "assistant"
    content: str


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None


class LLMError(Exception):
    """Raised when a completion cannot be obtained."""
    pass


class BaseLLMClient(ABC):
    """
    Template for chat backends.

    Subclasses describe how to build the HTTP request and how to read the
    completion text out of the reply; posting and error mapping live here.
    """

    provider = "LLM"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = float(timeout or getattr(settings, 'LLM_TIMEOUT', DEFAULT_LLM_TIMEOUT))

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass

    @abstractmethod
    def build_request(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> Tuple[str, dict, Optional[dict]]:
        """Return (url, json payload, headers) for one completion."""

    @abstractmethod
    def parse_reply(self, data: dict) -> LLMResponse:
        """Extract the completion from a decoded reply."""

    async def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> LLMResponse:
        """
        Send a chat completion request.

        Args:
            messages: Prompt turns, system first
            temperature: Sampling temperature (0-1)
            max_tokens: Upper bound on generated tokens

        Returns:
            LLMResponse with non-empty content

        Raises:
            LLMError: On transport failure, HTTP error or empty completion
        """
        logger.info(f"Calling {self.provider} chat: model={self.model_name}, temp={temperature}")
        url, payload, headers = self.build_request(
            [{"role": m.role, "content": m.content} for m in messages],
            temperature,
            max_tokens,
        )
        response = self.parse_reply(await self._post(url, payload, headers))
        if not response.content:
            raise LLMError(f"Empty response from {self.provider}")

        logger.info(f"{self.provider} response: {len(response.content)} chars")
        return response

    async def _post(self, url: str, payload: dict, headers: Optional[dict]) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"{self.provider} HTTP error: {e}")
            raise LLMError(f"{self.provider} service error: {e.response.status_code}")
        except httpx.TimeoutException:
            logger.error(f"{self.provider} request timed out")
            raise LLMError(f"{self.provider} service timed out")
        except httpx.RequestError as e:
            logger.error(f"{self.provider} connection error: {e}")
            raise LLMError(f"Could not connect to {self.provider}")
        except ValueError as e:
            logger.error(f"{self.provider} reply was not JSON: {e}")
            raise LLMError(f"Invalid response from {self.provider}")


class OllamaClient(BaseLLMClient):
    provider = "Ollama"

    def __init__(self, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.base_url = getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')

    @property
    def model_name(self) -> str:
        return self.model

    def build_request(self, messages, temperature, max_tokens):
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        return f"{self.base_url}/api/chat", payload, None

    def parse_reply(self, data: dict) -> LLMResponse:
        content = (data.get("message") or {}).get("content", "")
        return LLMResponse(content=content, model=self.model)


class OpenAICompatibleClient(BaseLLMClient):
    """
    Client for OpenAI-style chat completion endpoints.

    OPENAI_BASE_URL may point at any server speaking the same protocol.
    """

    provider = "OpenAI"

    def __init__(self, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.api_key = getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1').rstrip('/')
        self.model = getattr(settings, 'OPENAI_MODEL', 'gpt-4o-mini')

        if not self.api_key:
            raise LLMError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def build_request(self, messages, temperature, max_tokens):
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        return f"{self.base_url}/chat/completions", payload, headers

    def parse_reply(self, data: dict) -> LLMResponse:
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("No choices in OpenAI response")
        content = (choices[0].get("message") or {}).get("content") or ""
        return LLMResponse(content=content, model=self.model, usage=data.get("usage"))


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[BaseLLMClient] = None


def get_llm_client() -> BaseLLMClient:
    """Return the process-wide client selected by LLM_PROVIDER ("ollama" or "openai")."""
    global _client_instance

    if _client_instance is None:
        provider = getattr(settings, 'LLM_PROVIDER', 'ollama').lower()
        _client_instance = OpenAICompatibleClient() if provider == 'openai' else OllamaClient()
        logger.info(f"LLM provider: {_client_instance.provider} ({_client_instance.model_name})")

    return _client_instance


def reset_llm_client():
    global _client_instance
    _client_instance = None
