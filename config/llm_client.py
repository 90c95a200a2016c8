"""
LLM Client Abstraction Layer
Supports multiple LLM providers: OpenAI (cloud), Ollama (local), Anthropic (cloud), Groq (cloud)

Every client answers a prompt with raw text; callers that expect JSON use
extract_json() on the result.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    """Supported LLM providers"""
    OPENAI = "openai"
    OLLAMA = "ollama"
    ANTHROPIC = "anthropic"
    GROQ = "groq"


class BaseLLMClient:
    """Base class for LLM clients"""

    def chat(self, prompt: str, max_tokens: int = 1500, temperature: float = 0.3) -> str:
        """Send a chat request and return the response text"""
        raise NotImplementedError

    def complete(self, prompt: str) -> str:
        """Request a JSON answer for prompt; returns the raw response text"""
        return self.chat(prompt, max_tokens=1500, temperature=0.3)

    def extract_json(self, response_text: str) -> dict:
        """Extract JSON from LLM response, handling markdown wrappers"""
        text = (response_text or "").strip()

        # Remove markdown code blocks if present
        if text.startswith("```"):
            parts = text.split("```")
            if len(parts) >= 2:
                text = parts[1]
                if text.startswith("json"):
                    text = text[4:]
                text = text.strip()

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Fallback: first {...} block
            match = re.search(r'\{.*\}', text, re.DOTALL)
            if match:
                try:
                    return json.loads(match.group())
                except json.JSONDecodeError:
                    pass

            logger.warning("Failed to parse JSON from response: %s...", text[:200])
            raise ValueError("Could not parse JSON from response")

    def describe(self) -> Dict[str, Any]:
        return {'provider': type(self).__name__}


class OpenAIClient(BaseLLMClient):
    """OpenAI chat completions client"""

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-3.5-turbo", timeout: float = 300.0):
        if not api_key:
            raise ValueError("OPENAI_API_KEY not found in environment")

        from openai import OpenAI
        self.client = OpenAI(api_key=api_key, timeout=timeout)
        self.model = model

    def chat(self, prompt: str, max_tokens: int = 1500, temperature: float = 0.3) -> str:
        """Send request to OpenAI API"""
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""

    def describe(self) -> Dict[str, Any]:
        return {'provider': LLMProvider.OPENAI.value, 'model': self.model}


class OllamaClient(BaseLLMClient):
    """Ollama client for local LLM inference"""

    def __init__(self, base_url: str = "http://localhost:11434", model: str = "qwen2.5:7b",
                 timeout: float = 300.0):
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout

    def chat(self, prompt: str, max_tokens: int = 1500, temperature: float = 0.3) -> str:
        """Send request to Ollama API"""
        try:
            response = requests.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "format": "json",
                    "options": {
                        "num_predict": max_tokens,
                        "temperature": temperature
                    }
                },
                timeout=self.timeout
            )
        except requests.exceptions.ConnectionError as e:
            raise ConnectionError(
                f"Could not connect to Ollama at {self.base_url}. Make sure Ollama is running "
                f"and the model is pulled: ollama pull {self.model}"
            ) from e

        if response.status_code != 200:
            raise RuntimeError(f"Ollama API error: {response.status_code} - {response.text}")

        return response.json().get('response', '')

    def check_health(self) -> Dict[str, Any]:
        """Check if Ollama is running and the model is available"""
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
        except requests.RequestException as e:
            return {
                'status': 'error',
                'message': f'Cannot reach Ollama: {e}',
                'instructions': 'Make sure Ollama is installed and running'
            }

        if response.status_code != 200:
            return {
                'status': 'error',
                'message': 'Ollama server not responding'
            }

        model_names = [m['name'] for m in response.json().get('models', [])]
        if self.model not in model_names:
            return {
                'status': 'warning',
                'message': f'Missing model: {self.model}',
                'available_models': model_names,
                'instructions': f'Run: ollama pull {self.model}'
            }

        return {
            'status': 'ok',
            'message': 'Ollama is ready',
            'model': self.model
        }

    def describe(self) -> Dict[str, Any]:
        return {'provider': LLMProvider.OLLAMA.value, 'model': self.model}


class AnthropicClient(BaseLLMClient):
    """Anthropic Claude client"""

    def __init__(self, api_key: Optional[str] = None, model: str = "claude-3-5-haiku-20241022",
                 timeout: float = 300.0):
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY not found in environment")

        from anthropic import Anthropic
        self.client = Anthropic(api_key=api_key, timeout=timeout)
        self.model = model

    def chat(self, prompt: str, max_tokens: int = 1500, temperature: float = 0.3) -> str:
        """Send request to Claude API"""
        response = self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}]
        )
        return response.content[0].text

    def describe(self) -> Dict[str, Any]:
        return {'provider': LLMProvider.ANTHROPIC.value, 'model': self.model}


class GroqClient(BaseLLMClient):
    """Groq client for fast cloud inference"""

    def __init__(self, api_key: Optional[str] = None, model: str = "llama-3.1-70b-versatile",
                 timeout: float = 300.0):
        if not api_key:
            raise ValueError("GROQ_API_KEY not found in environment")

        from groq import Groq
        self.client = Groq(api_key=api_key, timeout=timeout)
        self.model = model

    def chat(self, prompt: str, max_tokens: int = 1500, temperature: float = 0.3) -> str:
        """Send request to Groq API"""
        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""

    def describe(self) -> Dict[str, Any]:
        return {'provider': LLMProvider.GROQ.value, 'model': self.model}


def get_llm_client(settings) -> BaseLLMClient:
    """
    Get LLM client based on settings.llm_provider

    - openai (default): OpenAI API
    - ollama: Local Ollama instance
    - anthropic: Claude API
    - groq: Groq API
    """
    import os

    provider = settings.llm_provider
    timeout = settings.insight_call_timeout

    if provider == LLMProvider.OPENAI.value:
        return OpenAIClient(settings.openai_api_key, model=settings.openai_model, timeout=timeout)

    elif provider == LLMProvider.OLLAMA.value:
        return OllamaClient(settings.ollama_base_url, model=settings.ollama_model, timeout=timeout)

    elif provider == LLMProvider.ANTHROPIC.value:
        return AnthropicClient(os.getenv('ANTHROPIC_API_KEY'), model=settings.anthropic_model, timeout=timeout)

    elif provider == LLMProvider.GROQ.value:
        return GroqClient(os.getenv('GROQ_API_KEY'), model=settings.groq_model, timeout=timeout)

    else:
        raise ValueError(
            f"Unknown LLM provider: {provider}. "
            f"Valid options: openai, ollama, anthropic, groq"
        )


def check_llm_status(client: Optional[BaseLLMClient], provider: str) -> Dict[str, Any]:
    """Check the status of the configured LLM provider"""
    if client is None:
        return {
            'status': 'error',
            'message': 'LLM client is not configured',
            'provider': provider
        }

    # Only Ollama has a health check currently
    if isinstance(client, OllamaClient):
        return client.check_health()

    status = {'status': 'ok', 'message': f'Using {type(client).__name__}'}
    status.update(client.describe())
    return status
