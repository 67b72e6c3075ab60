from __future__ import annotations

import os
import time
from pathlib import Path
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Sequence

from loguru import logger
from langchain_openai import ChatOpenAI
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from dotenv import load_dotenv

from .errors import GenerationFailure


# Load env from the repo root, then the working directory
for _env_path in (Path(__file__).resolve().parents[1] / ".env", Path.cwd() / ".env"):
    if _env_path.is_file():
        load_dotenv(dotenv_path=str(_env_path), override=False)
        break


SUPPORTED_PROVIDERS = ("openai",)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name}; using {default}")
        return default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}; using {default}")
        return default


@lru_cache(maxsize=8)
def get_openai_chat(
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> Optional[ChatOpenAI]:
    """Return a cached LangChain ChatOpenAI client using env configuration.

    Env vars:
      - OPENAI_API_KEY (required)
      - OPENAI_MODEL (optional; default: gpt-4o-mini)
      - OPENAI_TEMPERATURE, OPENAI_MAX_TOKENS, OPENAI_BASE_URL (optional)
    """
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        logger.error("OPENAI_API_KEY not set; cannot initialize OpenAI chat client")
        return None
    mdl = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    if temperature is None:
        temperature = _env_float("OPENAI_TEMPERATURE", 0.7)
    if max_tokens is None:
        max_tokens = _env_int("OPENAI_MAX_TOKENS", 160)
    logger.debug(f"Initializing OpenAI chat model={mdl} temperature={temperature} max_tokens={max_tokens}")
    kwargs: Dict[str, Any] = {"model": mdl, "temperature": temperature, "api_key": api_key}
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    base_url = os.getenv("OPENAI_BASE_URL")
    if base_url:
        kwargs["base_url"] = base_url
    return ChatOpenAI(**kwargs)


class TextGenerator(Protocol):
    """Opaque text-generation capability. Both calls may raise GenerationFailure."""

    async def generate_text(self, prompt: str, **options: Any) -> str: ...

    async def chat_completion(self, messages: Sequence[Dict[str, str]], **options: Any) -> str: ...


def to_langchain_messages(messages: Sequence[Dict[str, str]]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for m in messages:
        role = (m.get("role") or "user").lower()
        content = m.get("content") or ""
        if role == "system":
            out.append(SystemMessage(content=content))
        elif role == "assistant":
            out.append(AIMessage(content=content))
        else:
            out.append(HumanMessage(content=content))
    return out


class OpenAIGenerator:
    """TextGenerator backed by ChatOpenAI.

    Options accepted by both calls: ``max_tokens``, ``temperature``, ``model``,
    ``provider`` (only ``openai``) and ``request_json``.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def generate_text(self, prompt: str, **options: Any) -> str:
        return await self.chat_completion([{"role": "user", "content": prompt}], **options)

    async def chat_completion(
        self,
        messages: Sequence[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
        request_json: bool = False,
        **_: Any,
    ) -> str:
        if provider and provider.lower() not in SUPPORTED_PROVIDERS:
            logger.warning(f"llm_provider_unsupported | provider={provider} falling back to openai")
        llm = get_openai_chat(
            model or self.model,
            temperature if temperature is not None else self.temperature,
            max_tokens or self.max_tokens,
        )
        if llm is None:
            raise GenerationFailure("openai chat client not initialized; set OPENAI_API_KEY")
        runnable = llm.bind(response_format={"type": "json_object"}) if request_json else llm
        t0 = time.perf_counter()
        try:
            result = await runnable.ainvoke(to_langchain_messages(messages))
        except Exception as e:
            raise GenerationFailure(f"{type(e).__name__}: {e}") from e
        dt = time.perf_counter() - t0
        text = (result.content or "").strip() if isinstance(result.content, str) else ""
        logger.debug(f"llm_call | model={llm.model_name} json={request_json} dt={dt:.2f}s chars={len(text)}")
        if not text:
            raise GenerationFailure("empty response from model")
        return text
