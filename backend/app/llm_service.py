"""
LLM client for insight generation.

One call per `ask`: a chat completion through the OpenAI SDK under a hard
wall-clock timeout, its text parsed as a JSON object and validated into the
requested insight model. Nothing here retries and nothing raises; every
outcome is an LLMResult whose value is always shaped like the schema.
"""

import json
import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Type

import openai
from pydantic import ValidationError

from app.insight_models import InsightValue
from app.settings import Settings, log_config_missing_once

logger = logging.getLogger(__name__)


class LLMConfig:
    """Configuration for the LLM client."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or Settings()
        self.api_key = settings.llm_api_key
        self.model = settings.llm_model_fast
        self.api_base = settings.llm_api_base
        self.timeout = settings.llm_timeout
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens
        self.available = bool(self.api_key)

        if not self.available:
            log_config_missing_once("LLM_API_KEY")


@dataclass
class Prompt:
    system: str
    user: str


class LLMErrorKind(str, Enum):
    TIMEOUT = "timeout"
    UPSTREAM_STATUS = "upstream_status"
    PARSE_FAILURE = "parse_failure"
    MISSING_CREDENTIAL = "missing_credential"


@dataclass
class LLMError:
    kind: LLMErrorKind
    status_code: Optional[int] = None
    detail: str = ""

    def label(self) -> str:
        if self.kind == LLMErrorKind.UPSTREAM_STATUS and self.status_code is not None:
            return f"{self.kind.value}({self.status_code})"
        return self.kind.value


@dataclass
class LLMResult:
    value: InsightValue
    error: Optional[LLMError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.S)


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` (or bare ```) wrapper around the payload."""
    text = (text or "").strip()
    m = _FENCE_RE.match(text)
    if m:
        return m.group(1).strip()
    if "```json" in text:
        return text.split("```json", 1)[1].split("```", 1)[0].strip()
    if text.count("```") >= 2:
        return text.split("```", 1)[1].split("```", 1)[0].strip()
    return text


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Best-effort: the fenced payload, else the first {...} blob. None if neither parses."""
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        m = re.search(r"\{.*\}", cleaned, re.S)
        if not m:
            return None
        try:
            parsed = json.loads(m.group(0))
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


class LLMClient:
    """Single-call chat-completion wrapper returning schema-shaped results."""

    def __init__(self, config: LLMConfig, client: Any = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self):
        if self._client is None:
            kwargs = {"api_key": self.config.api_key, "max_retries": 0}
            if self.config.api_base:
                kwargs["base_url"] = self.config.api_base
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def ask(self, prompt: Prompt, schema: Type[InsightValue], budget: Optional[float] = None) -> LLMResult:
        if not self.config.available:
            return LLMResult(schema.degraded_value(), LLMError(LLMErrorKind.MISSING_CREDENTIAL))

        timeout = budget if budget is not None else self.config.timeout
        logger.info(f"Calling LLM model={self.config.model} schema={schema.__name__} timeout={timeout}s")
        try:
            response = await asyncio.wait_for(
                self._get_client().chat.completions.create(
                    model=self.config.model,
                    messages=[
                        {"role": "system", "content": prompt.system},
                        {"role": "user", "content": prompt.user},
                    ],
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"LLM call timed out after {timeout}s")
            return LLMResult(schema.degraded_value(), LLMError(LLMErrorKind.TIMEOUT))
        except openai.APITimeoutError:
            logger.warning("LLM provider reported a timeout")
            return LLMResult(schema.degraded_value(), LLMError(LLMErrorKind.TIMEOUT))
        except openai.APIStatusError as e:
            logger.warning(f"LLM provider responded HTTP {e.status_code}")
            return LLMResult(schema.degraded_value(),
                             LLMError(LLMErrorKind.UPSTREAM_STATUS, status_code=e.status_code))
        except openai.APIConnectionError as e:
            logger.warning(f"LLM provider unreachable: {e}")
            return LLMResult(schema.degraded_value(),
                             LLMError(LLMErrorKind.UPSTREAM_STATUS, detail=type(e).__name__))

        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError):
            logger.error("LLM response had no message content")
            return LLMResult(schema.degraded_value(), LLMError(LLMErrorKind.PARSE_FAILURE, detail="no content"))

        return self.parse(text, schema)

    def parse(self, text: str, schema: Type[InsightValue]) -> LLMResult:
        payload = parse_json_object(text)
        if payload is None:
            logger.error(f"Failed to parse LLM response as JSON; raw text: {text[:400]}")
            best_effort = strip_code_fences(text)[:2000] or None
            return LLMResult(schema.degraded_value(best_effort), LLMError(LLMErrorKind.PARSE_FAILURE))
        try:
            return LLMResult(schema.model_validate(payload))
        except ValidationError as e:
            logger.error(f"LLM JSON did not match {schema.__name__}: {e.error_count()} errors")
            return LLMResult(schema.degraded_value(str(payload.get("analysis") or "") or None),
                             LLMError(LLMErrorKind.PARSE_FAILURE, detail="schema mismatch"))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None
