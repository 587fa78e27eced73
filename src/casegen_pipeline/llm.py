"""Chat-model access for the LLM-backed activities.

Every call goes through a ``StructuredOutputAdapter`` bound to one draft
schema. Failures surface as ``StructuredOutputError`` carrying a
``retryable`` flag, which ``ActivityExecutor`` uses to decide between another
attempt and an immediate ``ActivityFailure``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

import openai
from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import StructuredOutputError
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DraftT = TypeVar("DraftT", bound=BaseModel)

# Only these 4xx statuses are worth another attempt.
_RETRYABLE_STATUS = frozenset({408, 409, 429})


class SupportsInvoke(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: A002,ANN401
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[DraftT]):
    """One draft schema bound to a structured-output runnable."""

    schema: type[DraftT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> DraftT:
        try:
            raw_output = self.runnable.invoke(prompt)
        except openai.APIStatusError as exc:
            raise StructuredOutputError(
                self.schema.__name__,
                f"model call failed with HTTP {exc.status_code}: {exc.message}",
                retryable=exc.status_code in _RETRYABLE_STATUS or exc.status_code >= 500,
            ) from exc
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when it exists.

    Raises:
        RuntimeError: If no key is configured.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required when CASEGEN_USE_LLM is enabled")
    return key


def chat_model_for(settings: RuntimeSettings, *, repo_root: Path | None = None) -> ChatOpenAI:
    """Build the chat client from the runtime settings.

    ``llm_client_retries`` covers transport-level retries inside the client;
    activity-level retries stay with ``ActivityExecutor``.
    """
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=settings.model_name,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout_seconds,
        max_retries=settings.llm_client_retries,
    )


def structured_model_for(
    settings: RuntimeSettings,
    schema: type[DraftT],
    *,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[DraftT]:
    runnable = chat_model_for(settings, repo_root=repo_root).with_structured_output(
        schema,
        method="function_calling",
        include_raw=True,
        strict=True,
    )
    logger.debug("Structured model %s bound to %s", settings.model_name, schema.__name__)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def normalize_structured_output(*, raw_output: Any, schema: type[DraftT]) -> DraftT:
    """Turn a model response into a validated *schema* instance.

    Accepts the ``include_raw=True`` envelope, a pydantic model or a plain
    mapping. A response the model got wrong (unparseable, missing, failing
    validation) is retryable; a payload of a type no schema can hold is not.

    Raises:
        StructuredOutputError: If no valid *schema* instance can be produced.
    """
    name = schema.__name__
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise StructuredOutputError(name, f"unparseable response: {parsing_error!r}", retryable=True)
        payload = payload.get("parsed")
        if payload is None:
            raise StructuredOutputError(name, "response carried no parsed payload", retryable=True)

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise StructuredOutputError(name, f"unsupported payload type {type(payload).__name__}", retryable=False)

    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise StructuredOutputError(name, f"response failed validation: {exc}", retryable=True) from exc
