from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, AsyncIterator

from dotenv import load_dotenv
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..prompt.render_prompt import render_template
from .contexts import to_template_context
from .json_utils import parse_structured, validate_structured
from .provider import (
    AgentQuotaError,
    AgentResult,
    APICallError,
    ImagePart,
    Message,
    StreamEvent,
    StreamEventType,
    TextPart,
    Usage,
)

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, str] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content-filter",
    "RECITATION": "content-filter",
    "BLOCKLIST": "content-filter",
    "PROHIBITED_CONTENT": "content-filter",
    "SPII": "content-filter",
    "IMAGE_SAFETY": "content-filter",
    "MALFORMED_FUNCTION_CALL": "error",
}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


class GeminiAgent:
    """A named agent backed by the Gemini async client.

    The system instruction is rendered per call from ``system_template`` and the
    call's typed context. A literal ``system_prompt`` may be given instead.
    """

    MODEL = "gemini-2.5-flash"
    MAX_THINKING_BUDGET = 24576

    def __init__(
        self,
        name: str,
        *,
        system_template: str | None = None,
        system_prompt: str | None = None,
        client: genai.Client | None = None,
        model: str | None = None,
        dotenv_path: str | Path | None = None,
        min_request_interval: float | None = None,
        max_retries: int | None = None,
    ) -> None:
        if system_template is None and system_prompt is None:
            raise ValueError("Either system_template or system_prompt is required.")
        self.name = name
        self._system_template = system_template
        self._system_prompt = system_prompt

        if dotenv_path is not None:
            load_dotenv(dotenv_path=Path(dotenv_path))
        else:
            load_dotenv()
        self._client = client or genai.Client()
        self._model = model or os.environ.get("GEMINI_MODEL") or self.MODEL

        if min_request_interval is None:
            min_request_interval = _env_float("GEMINI_MIN_REQUEST_INTERVAL", 0.0)
        self._min_request_interval = max(0.0, min_request_interval)
        if max_retries is None:
            max_retries = _env_int("GEMINI_MAX_RETRIES", 0)
        self._max_retries = max(0, max_retries)

        self._last_request_time = 0.0
        self._rate_lock = asyncio.Lock()

    @property
    def model(self) -> str:
        return self._model

    def system_instruction(self, context: Any = None) -> str:
        if self._system_prompt is not None:
            return self._system_prompt
        assert self._system_template is not None
        return render_template(self._system_template, to_template_context(context))

    async def generate(
        self,
        message: Message,
        *,
        output: Any = None,
        context: Any = None,
        abort_signal: Any = None,
    ) -> AgentResult:
        config_kwargs: dict[str, Any] = dict(
            system_instruction=self.system_instruction(context),
            thinking_config=types.ThinkingConfig(thinking_budget=self.MAX_THINKING_BUDGET),
            temperature=0.2,
        )
        if output is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = output
        config = types.GenerateContentConfig(**config_kwargs)

        response = await self._call_with_retries(
            lambda: self._client.aio.models.generate_content(
                model=self._model,
                contents=self._to_contents(message),
                config=config,
            )
        )

        text = self._response_text(response)
        finish_reason = self._finish_reason(response)
        parsed: Any = None
        if output is not None and finish_reason in ("stop", "other"):
            raw_parsed = getattr(response, "parsed", None)
            if raw_parsed is not None:
                if hasattr(raw_parsed, "model_dump"):
                    raw_parsed = raw_parsed.model_dump()
                elif isinstance(raw_parsed, list):
                    raw_parsed = [
                        item.model_dump() if hasattr(item, "model_dump") else item
                        for item in raw_parsed
                    ]
                parsed = validate_structured(raw_parsed, output, response_text=text)
            else:
                parsed = parse_structured(text, output)

        return AgentResult(
            object=parsed,
            finish_reason=finish_reason,
            text=text,
            usage=self._usage(response),
        )

    async def stream(
        self,
        message: Message,
        *,
        context: Any = None,
        abort_signal: Any = None,
    ) -> AsyncIterator[StreamEvent]:
        config = types.GenerateContentConfig(
            system_instruction=self.system_instruction(context),
            temperature=0.2,
        )
        chunks = await self._call_with_retries(
            lambda: self._client.aio.models.generate_content_stream(
                model=self._model,
                contents=self._to_contents(message),
                config=config,
            )
        )
        finish_reason = "other"
        usage = Usage()
        async for chunk in chunks:
            if abort_signal is not None and abort_signal.aborted:
                break
            delta = self._response_text(chunk)
            if delta:
                yield StreamEvent(StreamEventType.TEXT_DELTA, text=delta)
            if getattr(chunk, "candidates", None):
                reason = self._finish_reason(chunk)
                if reason != "other":
                    finish_reason = reason
            if getattr(chunk, "usage_metadata", None) is not None:
                usage = self._usage(chunk)
        yield StreamEvent(
            StreamEventType.STEP_FINISH, finish_reason=finish_reason, usage=usage
        )
        yield StreamEvent(StreamEventType.FINISH, finish_reason=finish_reason, usage=usage)

    async def _call_with_retries(self, call: Any) -> Any:
        for attempt in range(self._max_retries + 1):
            await self._enforce_rate_limit()
            try:
                result = await call()
                self._last_request_time = time.time()
                return result
            except genai_errors.APIError as exc:
                self._last_request_time = time.time()
                if exc.code == 429:
                    if attempt < self._max_retries:
                        backoff = (self._min_request_interval or 0.1) * 2**attempt
                        logger.info(
                            "Gemini rate limited (%s); retrying in %.1fs", self.name, backoff
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise AgentQuotaError(
                        "Gemini provider: rate limited (exhausted retries)"
                    ) from exc
                body = json.dumps(exc.details, ensure_ascii=False) if exc.details else None
                raise APICallError(
                    f"Gemini API error {exc.code}: {exc.message}",
                    status_code=exc.code,
                    response_body=body,
                ) from exc
        raise AgentQuotaError("Gemini provider: rate limited (exhausted retries)")

    async def _enforce_rate_limit(self) -> None:
        if self._min_request_interval <= 0:
            return
        async with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._min_request_interval:
                await asyncio.sleep(self._min_request_interval - elapsed)
            self._last_request_time = time.time()

    @staticmethod
    def _to_contents(message: Message) -> list[types.Content]:
        parts: list[types.Part] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                parts.append(types.Part.from_text(text=part.text))
            elif isinstance(part, ImagePart):
                parts.append(
                    types.Part.from_bytes(
                        data=_decode_base64(part.data), mime_type=part.mime_type
                    )
                )
        return [types.Content(role=message.role, parts=parts)]

    @staticmethod
    def _response_text(response: Any) -> str:
        try:
            return response.text or ""
        except (AttributeError, ValueError):
            return ""

    @staticmethod
    def _finish_reason(response: Any) -> str:
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            feedback = getattr(response, "prompt_feedback", None)
            if feedback is not None and getattr(feedback, "block_reason", None):
                return "content-filter"
            return "other"
        reason = getattr(candidates[0], "finish_reason", None)
        if reason is None:
            return "other"
        name = getattr(reason, "name", str(reason))
        return _FINISH_REASONS.get(name, "other")

    @staticmethod
    def _usage(response: Any) -> Usage:
        metadata = getattr(response, "usage_metadata", None)
        if metadata is None:
            return Usage()
        return Usage(
            prompt_tokens=getattr(metadata, "prompt_token_count", None) or 0,
            completion_tokens=getattr(metadata, "candidates_token_count", None) or 0,
        )


def _decode_base64(data: str) -> bytes:
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    return base64.b64decode(data)
