"""LLM client using LiteLLM for model abstraction."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from litellm import completion

from config import settings


@dataclass(frozen=True)
class ToolCallResult:
    """Structured reply from a forced function-calling request."""

    model: str
    tool_name: Optional[str]
    arguments: Optional[Dict[str, Any]]
    raw_arguments: Optional[str]
    usage: Dict[str, int] = field(default_factory=dict)


class LLMClient:
    """Wrapper around LiteLLM for consistent LLM access."""

    def __init__(self, model: Optional[str] = None):
        """Initialize the client with a default model if omitted."""
        self.model = self._normalize_model_name(model or settings.llm.model)

    def _normalize_model_name(self, model: str) -> str:
        """Normalize model name for LiteLLM compatibility.

        LiteLLM expects Anthropic models without the 'anthropic:' prefix.
        For example: 'claude-sonnet-4-20250514', not 'anthropic:claude-sonnet-4-20250514'.
        """
        if model.startswith("anthropic:"):
            return model[len("anthropic:") :]
        return model

    def _litellm_kwargs(self) -> Dict[str, Any]:
        """Build LiteLLM keyword arguments from settings."""
        extra: Dict[str, Any] = {}
        if settings.llm.base_url:
            extra["api_base"] = settings.llm.base_url
        if settings.anthropic_api_key and self._uses_anthropic():
            extra["api_key"] = settings.anthropic_api_key
        return extra

    def _uses_anthropic(self) -> bool:
        """Return True if the configured model is an Anthropic model."""
        model = (self.model or "").lower()
        return "claude" in model or "anthropic" in model

    def complete_tool_call(
        self,
        messages: List[Dict[str, str]],
        *,
        tool_name: str,
        tool_description: str,
        input_schema: Dict[str, Any],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ToolCallResult:
        """Request a single forced tool call and return its parsed arguments.

        Args:
            messages: Chat messages, system prompt first
            tool_name: Name of the only tool offered to the model
            tool_description: Tool description shown to the model
            input_schema: JSON schema for the tool's arguments
            temperature: Sampling temperature, defaults to settings
            max_tokens: Maximum response tokens, defaults to settings

        Returns:
            ToolCallResult; ``tool_name`` is None when the model answered
            without calling the tool, and ``arguments`` is None when the
            arguments were not a JSON object.
        """
        response = completion(
            model=self.model,
            messages=messages,
            temperature=settings.llm.temperature if temperature is None else temperature,
            max_tokens=max_tokens or settings.llm.max_tokens,
            timeout=settings.llm.timeout,
            tools=[
                {
                    "type": "function",
                    "function": {
                        "name": tool_name,
                        "description": tool_description,
                        "parameters": input_schema,
                    },
                }
            ],
            tool_choice={"type": "function", "function": {"name": tool_name}},
            **self._litellm_kwargs(),
        )
        usage = _usage_dict(getattr(response, "usage", None))
        model = getattr(response, "model", None) or self.model
        tool_calls = response.choices[0].message.tool_calls or []
        call = next((tc for tc in tool_calls if tc.function.name == tool_name), None)
        if call is None:
            return ToolCallResult(
                model=model, tool_name=None, arguments=None, raw_arguments=None, usage=usage
            )
        raw = call.function.arguments
        return ToolCallResult(
            model=model,
            tool_name=call.function.name,
            arguments=_parse_arguments(raw),
            raw_arguments=raw if isinstance(raw, str) else json.dumps(raw),
            usage=usage,
        )


def _parse_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode tool arguments, returning None unless they form a JSON object."""
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "")
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _usage_dict(usage: Any) -> Dict[str, int]:
    """Extract token counts from a LiteLLM usage object."""
    if usage is None:
        return {}
    counts: Dict[str, int] = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = getattr(usage, key, None)
        if isinstance(value, int):
            counts[key] = value
    return counts
