"""
Chat-completion client shared by generation, the agentic planner and the
AI reviewer. OpenAI and Groq expose the same ``chat.completions`` surface,
so one wrapper covers both.

Calls are synchronous (the SDK clients are); async callers go through
``complete_json_async`` which runs the call in a worker thread.
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional

import config
from utils.logging_utils import retry_on_rate_limit

logger = logging.getLogger("campaigns.llm")


def get_llm_client(provider: str = None, model: str = None):
    """Return ``(client, model, provider)`` for the configured or explicit provider."""
    if provider is None:
        provider = config.LLM_PROVIDER

    if provider == 'groq':
        from groq import Groq
        if model is None:
            model = config.GROQ_MODEL
        return Groq(api_key=config.GROQ_API_KEY), model, 'groq'
    else:
        from openai import OpenAI
        if model is None:
            model = config.OPENAI_MODEL
        return OpenAI(api_key=config.OPENAI_API_KEY), model, 'openai'


class LLMResponseError(Exception):
    """The model answered, but not with usable JSON."""


class LLMClient:
    def __init__(self, client=None, model: str = None, provider: str = None):
        if client is None:
            client, model, provider = get_llm_client(provider, model)
        self.client = client
        self.model = model
        self.provider = provider or "openai"

    @retry_on_rate_limit(max_retries=3, initial_delay=5.0)
    def complete(self, messages: List[Dict[str, str]], temperature: float = 0.7,
                 json_mode: bool = False) -> str:
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = self.client.chat.completions.create(**kwargs)
        content = response.choices[0].message.content
        if not content:
            raise LLMResponseError(f"{self.provider} ({self.model}) returned an empty response")
        return content

    def complete_json(self, system_prompt: str, user_prompt: str, temperature: float = 0.3,
                      history: Optional[List[Dict[str, str]]] = None) -> Dict:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": user_prompt})

        content = self.complete(messages, temperature=temperature, json_mode=True)
        try:
            result = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"llm_invalid_json: {content[:200]}")
            raise LLMResponseError(f"invalid JSON from {self.model}: {e}") from e
        if not isinstance(result, dict):
            raise LLMResponseError(f"expected a JSON object from {self.model}")
        return result

    async def complete_json_async(self, system_prompt: str, user_prompt: str,
                                  temperature: float = 0.3,
                                  history: Optional[List[Dict[str, str]]] = None) -> Dict:
        return await asyncio.to_thread(
            self.complete_json, system_prompt, user_prompt, temperature, history
        )
