"""Schema-enforcing client for the structured-output LLM oracle.

One request is at most two calls: the first attempt, and a single retry that
feeds the validation issues back to the model. A second invalid reply raises
``SchemaViolation``; invalid output is never coerced.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Protocol, Sequence, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from llm import LLMClient, ToolCallResult
from pipeline.errors import OracleCallError, PipelineError, SchemaViolation
from pipeline.prompts import build_retry_message
from pipeline.schemas import tool_input_schema

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class OracleAttempt(str, Enum):
    """States of one oracle request."""

    FIRST_ATTEMPT = "first_attempt"
    RETRY_WITH_ISSUES = "retry_with_issues"
    FAILED = "failed"


class ToolCallingClient(Protocol):
    """LLM client capable of a forced tool call."""

    model: str

    def complete_tool_call(
        self,
        messages: list[dict[str, str]],
        *,
        tool_name: str,
        tool_description: str,
        input_schema: dict[str, Any],
    ) -> ToolCallResult:
        """Issue one forced tool call."""
        ...


@dataclass(frozen=True)
class OracleRequest(Generic[ModelT]):
    """Everything needed to ask the oracle for one structured value."""

    tool_name: str
    tool_description: str
    system_prompt: str
    user_message: str
    output_model: type[ModelT]
    prompt_version: str


@dataclass(frozen=True)
class OracleResult(Generic[ModelT]):
    """Validated oracle output plus call metadata."""

    value: ModelT
    model: str
    prompt_version: str
    attempts: int
    usage: dict[str, int] = field(default_factory=dict)


class OracleClient:
    """Call the oracle and validate its reply against a pydantic model."""

    def __init__(self, llm_client: ToolCallingClient | None = None) -> None:
        self._llm = llm_client or LLMClient()

    @property
    def model(self) -> str:
        return self._llm.model

    def request(self, request: OracleRequest[ModelT]) -> OracleResult[ModelT]:
        """Return a schema-valid value or raise.

        Raises:
            SchemaViolation: If both attempts return invalid output.
            OracleCallError: If a call fails or omits the tool call.
        """
        schema = tool_input_schema(request.output_model)
        message = request.user_message
        usage: dict[str, int] = {}
        issues: list[dict[str, Any]] = []
        attempts = 0

        for state in (OracleAttempt.FIRST_ATTEMPT, OracleAttempt.RETRY_WITH_ISSUES):
            if state is OracleAttempt.RETRY_WITH_ISSUES:
                logger.warning(
                    "oracle output failed validation; retrying with issues",
                    extra={"tool": request.tool_name, "issue_count": len(issues)},
                )
                message = build_retry_message(request.user_message, request.tool_name, issues)

            attempts += 1
            reply = self._call(request, schema, message)
            _accumulate_usage(usage, reply.usage)
            value, issues = _validate(request.output_model, reply)
            if value is not None:
                return OracleResult(
                    value=value,
                    model=reply.model,
                    prompt_version=request.prompt_version,
                    attempts=attempts,
                    usage=usage,
                )

        logger.error(
            "oracle output failed validation after retry",
            extra={"tool": request.tool_name, "state": OracleAttempt.FAILED.value},
        )
        raise SchemaViolation(f"{request.tool_name} output failed schema validation", issues)

    def _call(
        self, request: OracleRequest[Any], schema: dict[str, Any], message: str
    ) -> ToolCallResult:
        messages = [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": message},
        ]
        try:
            reply = self._llm.complete_tool_call(
                messages,
                tool_name=request.tool_name,
                tool_description=request.tool_description,
                input_schema=schema,
            )
        except PipelineError:
            raise
        except Exception as exc:
            raise OracleCallError(
                f"{request.tool_name} call failed: {exc}",
                details={"tool": request.tool_name},
            ) from exc
        if reply.tool_name is None:
            raise OracleCallError(
                f"no {request.tool_name} tool call in oracle response",
                details={"tool": request.tool_name},
            )
        return reply


def _validate(
    model: type[ModelT], reply: ToolCallResult
) -> tuple[ModelT | None, list[dict[str, Any]]]:
    """Validate tool arguments, returning the value or a list of issues.

    Validation runs in strict JSON mode: a number sent as a string, or an
    integer field sent as a float, is an issue rather than a coercion.
    """
    if reply.arguments is None:
        return None, [
            {
                "type": "invalid_json",
                "loc": [],
                "msg": "tool arguments must be a JSON object",
                "input": reply.raw_arguments,
            }
        ]
    try:
        return model.model_validate_json(json.dumps(reply.arguments), strict=True), []
    except PydanticValidationError as exc:
        return None, _json_safe(exc.errors(include_url=False, include_context=False))


def _json_safe(issues: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    return json.loads(json.dumps(list(issues), default=str))


def _accumulate_usage(total: dict[str, int], usage: dict[str, int]) -> None:
    for key, value in usage.items():
        total[key] = total.get(key, 0) + value


__all__ = [
    "OracleAttempt",
    "OracleClient",
    "OracleRequest",
    "OracleResult",
    "ToolCallingClient",
]
