"""Helper functions shared by the planner, the bridges and the controller.

This module provides:
- extract_json_from_response: Pull a JSON object out of free-form model output
- MODEL_PRICING / build_cost_record: Turn token usage into a CostRecord
- backoff_delay: Exponential backoff used by retry loops
- format_elapsed: Human-readable durations for session summaries
"""

import json
import re
from typing import Any

from models.schemas import CostRecord, TokenUsage

# USD per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-opus-4-6": (15.0, 75.0),
    "claude-haiku-4-5": (0.8, 4.0),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-3-5-sonnet-20241022": (3.0, 15.0),
    "claude-3-5-haiku-20241022": (0.8, 4.0),
    "claude-3-haiku-20240307": (0.25, 1.25),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4-turbo": (10.0, 30.0),
}
DEFAULT_PRICING: tuple[float, float] = (3.0, 15.0)

MAX_BACKOFF_SECONDS = 4.0


def price_for(model: str) -> tuple[float, float]:
    """Return (input, output) USD per 1M tokens; provider prefixes are ignored."""
    bare = model.rsplit("/", 1)[-1]
    return MODEL_PRICING.get(bare, DEFAULT_PRICING)


def build_cost_record(session_id: str, usage: TokenUsage) -> CostRecord:
    """Price a turn's token usage.

    When the transport reported its own total cost (the native CLI does), that
    figure wins over the pricing table and is split by token share.
    """
    input_rate, output_rate = price_for(usage.model)
    input_cost = usage.input_tokens / 1_000_000 * input_rate
    output_cost = usage.output_tokens / 1_000_000 * output_rate
    total_cost = input_cost + output_cost

    if usage.cost_usd is not None:
        total_cost = usage.cost_usd
        if usage.total_tokens:
            input_cost = total_cost * usage.input_tokens / usage.total_tokens
            output_cost = total_cost - input_cost
        else:
            input_cost, output_cost = 0.0, total_cost

    return CostRecord(
        session_id=session_id,
        model=usage.model or "unknown",
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
        input_cost=round(input_cost, 6),
        output_cost=round(output_cost, 6),
        total_cost=round(total_cost, 6),
    )


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before retry ``attempt`` (0-based), doubling and capped at 4s."""
    return min(base * (2**attempt), MAX_BACKOFF_SECONDS)


def format_elapsed(ms: int) -> str:
    """Format a duration: ``850ms``, ``12s``, ``3m 5s``, ``1h 2m``."""
    if ms < 1000:
        return f"{ms}ms"
    seconds = ms // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from model output that may contain extra text.

    Tries, in order: the whole response, fenced ```json blocks, then the
    first balanced ``{...}`` that parses.

    Args:
        response: The full model response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """

    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.finditer(fence_pattern, response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None
