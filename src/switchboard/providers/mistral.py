"""Mistral AI adapter.

Mistral speaks the OpenAI dialect with two differences: a forced tool call is
``tool_choice="any"``, and Magistral reasoning models emit their reasoning
either inline in ``<think>`` tags or as typed ``thinking`` content chunks.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from switchboard.models import Role
from switchboard.providers._openai_compat import OpenAICompatibleAdapter
from switchboard.providers.base import (
    ModelCost,
    ProviderCapabilities,
    ProviderName,
    RateLimits,
)

if TYPE_CHECKING:
    from switchboard.models import Request

_REASONING_MODELS = frozenset({"magistral-small-2506", "magistral-medium-2506"})
_REASONING_PROMPT = (
    "When solving problems, think step-by-step in <think> tags before providing "
    "your final answer. Break down complex problems into smaller steps and show "
    "your reasoning process clearly."
)
_THINK_RE = re.compile(r"^\s*<think>(.*?)</think>\s*", re.DOTALL)

MISTRAL_COSTS: dict[str, ModelCost] = {
    "mistral-large-latest": ModelCost(2e-6, 6e-6),
    "mistral-medium-latest": ModelCost(4e-7, 2e-6),
    "mistral-small-latest": ModelCost(1e-7, 3e-7),
    "open-mistral-nemo": ModelCost(1.5e-7, 1.5e-7),
    "codestral-latest": ModelCost(3e-7, 9e-7),
    "ministral-8b-latest": ModelCost(1e-7, 1e-7),
    "ministral-3b-latest": ModelCost(4e-8, 4e-8),
    "pixtral-large-latest": ModelCost(2e-6, 6e-6),
    "magistral-small-2506": ModelCost(5e-7, 1.5e-6),
    "magistral-medium-2506": ModelCost(2e-6, 5e-6),
    "mistral-embed": ModelCost(1e-7, 0.0),
}


def _is_reasoning_model(model: str) -> bool:
    return model in _REASONING_MODELS or model.startswith("magistral-")


class MistralAdapter(OpenAICompatibleAdapter):
    name = ProviderName.MISTRAL
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, embeddings=True)
    default_base_url = "https://api.mistral.ai/v1"
    cost_table = MISTRAL_COSTS
    default_rate_limits = RateLimits(requests_per_minute=60, tokens_per_minute=500000)
    required_tool_choice = "any"

    def supports_reasoning(self, model: str) -> bool:
        return _is_reasoning_model(model)

    def _wire_messages(self, request: Request) -> list[dict[str, Any]]:
        messages = super()._wire_messages(request)
        if request.uses_reasoning and _is_reasoning_model(request.model):
            messages.insert(0, {"role": Role.SYSTEM.value, "content": _REASONING_PROMPT})
        return messages

    def _apply_reasoning(self, body: dict[str, Any], request: Request) -> None:
        # Reasoning is driven by the system prompt; Mistral has no effort knob.
        return None

    def _split_content(self, content: Any) -> tuple[str | None, str | None]:
        if isinstance(content, list):
            text: list[str] = []
            reasoning: list[str] = []
            for chunk in content:
                if not isinstance(chunk, dict):
                    continue
                if chunk.get("type") == "text":
                    text.append(chunk.get("text", ""))
                elif chunk.get("type") == "thinking":
                    reasoning.extend(
                        part.get("text", "")
                        for part in chunk.get("thinking") or ()
                        if isinstance(part, dict)
                    )
            return ("".join(text) or None), ("".join(reasoning) or None)
        if not isinstance(content, str):
            return None, None
        m = _THINK_RE.match(content)
        if m is None:
            return content, None
        return content[m.end():], m.group(1).strip() or None
