"""
Provider-agnostic completion client for the task classifier.

Supports Anthropic, OpenAI, and Google Gemini behind one text-generation
interface. The SDK calls are blocking; `agenerate` runs them on a worker
thread under a hard deadline so a hung provider cannot stall a Job.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Optional

from .config import LLMConfig

logger = logging.getLogger("triage.common.llm_client")

SUPPORTED_PROVIDERS = ("anthropic", "openai", "google")


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self._client = None
        self._google_models = {}

        if self.provider not in SUPPORTED_PROVIDERS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return

        if not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        try:
            self._client = self._init_provider(api_key)
        except ImportError:
            logger.warning("%s SDK package not installed", self.provider)
        except Exception as e:
            logger.warning("Failed to initialize %s client: %s", self.provider, e)

    @classmethod
    def from_config(cls, config: LLMConfig) -> "LLMClient":
        keys = {
            "anthropic": config.anthropic_api_key,
            "openai": config.openai_api_key,
            "google": config.google_api_key,
        }
        return cls(
            provider=config.provider,
            model=config.model,
            api_key=keys.get((config.provider or "").lower()),
        )

    def _init_provider(self, api_key: str):
        if self.provider == "anthropic":
            import anthropic

            return anthropic.Anthropic(api_key=api_key)

        if self.provider == "openai":
            from openai import OpenAI

            return OpenAI(api_key=api_key)

        import google.generativeai as genai

        genai.configure(api_key=api_key)
        return genai  # module; models are built per system prompt

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 2048,
        timeout: float = 60.0,
    ) -> str:
        """Blocking completion of ``prompt``; returns stripped response text."""
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

        complete = {
            "anthropic": self._complete_anthropic,
            "openai": self._complete_openai,
            "google": self._complete_google,
        }[self.provider]
        return complete(prompt, system, max_tokens, timeout).strip()

    def _complete_anthropic(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        extra = {"system": system} if system else {}
        response = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
            **extra,
        )
        return response.content[0].text

    def _complete_openai(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=messages,
            timeout=timeout,
        )
        return response.choices[0].message.content or ""

    def _complete_google(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        # Gemini binds the system instruction to the model object
        key = hashlib.sha1((system or "").encode()).hexdigest()
        model = self._google_models.get(key)
        if model is None:
            options = {"model_name": self.model}
            if system:
                options["system_instruction"] = system
            model = self._google_models[key] = self._client.GenerativeModel(**options)
        response = model.generate_content(
            prompt,
            generation_config={"max_output_tokens": max_tokens},
            request_options={"timeout": timeout},
        )
        return response.text

    async def agenerate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 2048,
        timeout: float = 60.0,
    ) -> str:
        """Async wrapper around `generate`; raises asyncio.TimeoutError past `timeout`."""
        return await asyncio.wait_for(
            asyncio.to_thread(
                self.generate,
                prompt,
                system=system,
                max_tokens=max_tokens,
                timeout=timeout,
            ),
            timeout=timeout,
        )
