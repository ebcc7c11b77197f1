"""Async wrapper around the Anthropic Messages API used by every model-backed stage."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anthropic

from .errors import AnalysisError, ErrorCode
from .schemas import Frame
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# USD per million (input, output) tokens by model family
_PRICING: Dict[str, Tuple[float, float]] = {
    "opus": (15.0, 75.0),
    "sonnet": (3.0, 15.0),
    "haiku": (0.8, 4.0),
}

LabelledImage = Tuple[str, Frame]


def clean_json_response(response_text: str) -> str:
    """Extract the JSON document from a model reply.

    Handles markdown fences (```json and plain ```), preamble text before the JSON and
    trailing text after it.
    """

    if not response_text:
        return response_text

    cleaned = response_text.strip()

    if "```json" in cleaned:
        parts = cleaned.split("```json")
        if len(parts) > 1:
            cleaned = parts[1].split("```")[0].strip()
    elif "```" in cleaned:
        parts = cleaned.split("```")
        if len(parts) >= 3:
            cleaned = parts[1].strip()

    cleaned = cleaned.strip()

    json_start = -1
    for char in ("{", "["):
        pos = cleaned.find(char)
        if pos != -1 and (json_start == -1 or pos < json_start):
            json_start = pos

    json_end = -1
    for char in ("}", "]"):
        pos = cleaned.rfind(char)
        if pos != -1 and pos > json_end:
            json_end = pos

    if json_start != -1 and json_end != -1 and json_end > json_start:
        cleaned = cleaned[json_start : json_end + 1]

    return cleaned


def parse_json_response(response_text: str) -> Optional[Any]:
    """Parse a model reply as JSON, returning None instead of raising."""

    cleaned = clean_json_response(response_text)
    if not cleaned:
        return None
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        return None


def _image_block(frame: Frame) -> Dict[str, Any]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": frame.media_type,
            "data": frame.payload,
        },
    }


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    family = next((name for name in _PRICING if name in model), "sonnet")
    in_price, out_price = _PRICING[family]
    return input_tokens / 1_000_000 * in_price + output_tokens / 1_000_000 * out_price


class InferenceResult:
    """Outcome of one model call. ``data`` is None when the reply could not be parsed."""

    def __init__(
        self,
        data: Optional[Any],
        text: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
        elapsed: float = 0.0,
    ):
        self.data = data
        self.text = text
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.elapsed = elapsed

    @property
    def parsed(self) -> bool:
        return self.data is not None


class InferenceClient:
    """One instance per analysis run; accumulates token usage across calls."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        cfg = settings or default_settings
        key = api_key or cfg.anthropic_api_key
        if not key:
            raise AnalysisError(ErrorCode.INVALID_API_KEY, "ANTHROPIC_API_KEY is not configured")
        self.model = model or cfg.PERCEPTION_MODEL
        self.max_retries = max(0, int(cfg.INFERENCE_MAX_RETRIES))
        self.backoff_base = float(cfg.INFERENCE_BACKOFF_BASE_SEC)
        self._client = anthropic.AsyncAnthropic(
            api_key=key,
            timeout=cfg.INFERENCE_TIMEOUT_SEC,
            max_retries=0,
        )
        self.calls = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cost_usd = 0.0

    async def aclose(self) -> None:
        await self._client.close()

    def usage(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "estimated_cost_usd": round(self.cost_usd, 4),
        }

    def _record_usage(self, model: str, response: Any) -> Tuple[int, int]:
        usage = getattr(response, "usage", None)
        in_tokens = int(getattr(usage, "input_tokens", 0) or 0)
        out_tokens = int(getattr(usage, "output_tokens", 0) or 0)
        self.calls += 1
        self.input_tokens += in_tokens
        self.output_tokens += out_tokens
        self.cost_usd += estimate_cost(model, in_tokens, out_tokens)
        return in_tokens, out_tokens

    async def _create(self, label: str, **kwargs: Any) -> Any:
        """Call the Messages API, retrying rate limits and transient upstream errors."""

        attempt = 0
        while True:
            try:
                return await self._client.messages.create(**kwargs)
            except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as exc:
                raise AnalysisError(ErrorCode.INVALID_API_KEY, f"{label}: {exc}") from exc
            except anthropic.RateLimitError as exc:
                code, last_exc = ErrorCode.RATE_LIMITED, exc
            except (anthropic.APIConnectionError, anthropic.InternalServerError) as exc:
                code, last_exc = ErrorCode.UPSTREAM_UNAVAILABLE, exc
            except anthropic.APIStatusError as exc:
                if exc.status_code < 500:
                    raise AnalysisError(ErrorCode.ANALYSIS_ERROR, f"{label}: {exc}") from exc
                code, last_exc = ErrorCode.UPSTREAM_UNAVAILABLE, exc

            if attempt >= self.max_retries:
                raise AnalysisError(code, f"{label}: {last_exc}") from last_exc

            delay = self.backoff_base * (2 ** attempt)
            sleep_for = delay + random.uniform(0, delay * 0.25)
            attempt += 1
            logger.warning(
                "inference_retry",
                extra={"label": label, "attempt": attempt, "sleep": round(sleep_for, 2), "error": str(last_exc)},
            )
            await asyncio.sleep(sleep_for)

    async def complete_json(
        self,
        system: str,
        prompt: str,
        images: Sequence[LabelledImage] = (),
        max_tokens: int = 2000,
        label: str = "inference",
        model: Optional[str] = None,
    ) -> InferenceResult:
        """Free-form JSON call with labelled images ahead of the prompt text."""

        content: List[Dict[str, Any]] = []
        for caption, frame in images:
            content.append({"type": "text", "text": caption})
            content.append(_image_block(frame))
        content.append({"type": "text", "text": prompt})

        use_model = model or self.model
        start = time.time()
        response = await self._create(
            label,
            model=use_model,
            max_tokens=max_tokens,
            temperature=0.0,
            system=system,
            messages=[{"role": "user", "content": content}],
        )
        elapsed = time.time() - start
        in_tokens, out_tokens = self._record_usage(use_model, response)

        text = ""
        for block in response.content:
            if getattr(block, "type", None) == "text":
                text += block.text
        data = parse_json_response(text)
        if data is None:
            logger.warning(f"[{label.upper()}] unparseable reply ({len(text)} chars): {text[:200]!r}")
        logger.debug(
            f"[{label.upper()}] {use_model} in={in_tokens} out={out_tokens} {elapsed:.1f}s images={len(images)}"
        )
        return InferenceResult(data, text, in_tokens, out_tokens, elapsed)

    async def complete_structured(
        self,
        system: str,
        prompt: str,
        schema_name: str,
        schema: Dict[str, Any],
        max_tokens: int = 4096,
        label: str = "structured",
        model: Optional[str] = None,
    ) -> InferenceResult:
        """Force a single tool call whose input must satisfy ``schema``."""

        use_model = model or self.model
        start = time.time()
        response = await self._create(
            label,
            model=use_model,
            max_tokens=max_tokens,
            temperature=0.0,
            system=system,
            tools=[
                {
                    "name": schema_name,
                    "description": f"Submit the {schema_name.replace('_', ' ')}.",
                    "input_schema": schema,
                }
            ],
            tool_choice={"type": "tool", "name": schema_name},
            messages=[{"role": "user", "content": prompt}],
        )
        elapsed = time.time() - start
        in_tokens, out_tokens = self._record_usage(use_model, response)

        data: Optional[Any] = None
        text = ""
        for block in response.content:
            block_type = getattr(block, "type", None)
            if block_type == "tool_use" and getattr(block, "name", None) == schema_name:
                data = block.input
            elif block_type == "text":
                text += block.text
        if data is None and text:
            data = parse_json_response(text)
        logger.info(f"[{label.upper()}] {use_model} in={in_tokens} out={out_tokens} {elapsed:.1f}s")
        return InferenceResult(data, text, in_tokens, out_tokens, elapsed)


def build_inference_client(settings: Optional[Settings] = None) -> InferenceClient:
    return InferenceClient(settings=settings)
