"""
Tool registry: the fixed catalogue of operations the planner may call.

Every call is validated against the tool's input model before its handler
runs, and every outcome comes back as a ToolResult. Handler exceptions are
classified here and never cross the boundary.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from stina.errors import (
    ProviderError,
    SchedulingError,
    ToolExecutionError,
    ValidationError,
)
from stina.infrastructure.audit import AuditLogger
from stina.infrastructure.observability.logging import get_logger
from stina.models.domain.preferences_domain import UserPreferences

logger = get_logger(__name__)

SideEffect = Literal["read", "write"]


@dataclass
class ToolContext:
    """Per-invocation facts handlers may rely on."""

    meeting_request_id: str
    user_email: str | None
    preferences: UserPreferences


Handler = Callable[[Any, ToolContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    side_effect: SideEffect
    handler: Handler

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }


@dataclass
class ToolResult:
    tool_name: str
    success: bool
    output: dict[str, Any] | None = None
    error_kind: str | None = None
    error: str | None = None
    field: str | None = None
    arguments: dict[str, Any] | None = None

    def to_model_payload(self) -> dict[str, Any]:
        """What the planner sees for this call."""
        if self.success:
            return {"success": True, "data": self.output}
        payload = {"success": False, "error_kind": self.error_kind, "error": self.error}
        if self.field:
            payload["field"] = self.field
        return payload

    @classmethod
    def failure(
        cls,
        tool_name: str,
        kind: str,
        error: str,
        field: str | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> "ToolResult":
        return cls(
            tool_name=tool_name,
            success=False,
            error_kind=kind,
            error=error,
            field=field,
            arguments=arguments,
        )


def _first_error_field(error: PydanticValidationError) -> str | None:
    for detail in error.errors():
        location = [str(part) for part in detail.get("loc", ())]
        if location:
            return ".".join(location)
    return None


def canonical_arguments(arguments: dict[str, Any]) -> str:
    """Stable text form of validated arguments, used for write dedup."""
    return json.dumps(arguments, sort_keys=True, separators=(",", ":"), default=str)


class ToolRegistry:
    """Resolved once at startup; lookups are by exact name."""

    def __init__(
        self,
        specs: list[ToolSpec],
        audit_logger: AuditLogger | None = None,
        read_timeout: float = 20.0,
    ):
        names = [spec.name for spec in specs]
        if len(names) != len(set(names)):
            raise ValueError("Tool names must be unique")
        self._specs = {spec.name: spec for spec in specs}
        self.audit_logger = audit_logger or AuditLogger()
        self.read_timeout = read_timeout

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def catalogue(self) -> list[dict[str, Any]]:
        return [spec.to_openai_tool() for spec in self._specs.values()]

    def validate(self, name: str, raw_arguments: str | dict[str, Any]) -> tuple[ToolSpec, BaseModel]:
        """
        Resolve and validate a call.

        Raises:
            ToolExecutionError: unknown tool (kind=unknown_tool)
            ValidationError: arguments are not JSON or violate the input schema
        """
        spec = self._specs.get(name)
        if spec is None:
            raise ToolExecutionError(name, f"Unknown tool {name!r}", kind="unknown_tool")

        if isinstance(raw_arguments, str):
            try:
                raw_arguments = json.loads(raw_arguments or "{}")
            except json.JSONDecodeError as e:
                raise ValidationError(f"Arguments are not valid JSON: {e}") from e
        if not isinstance(raw_arguments, dict):
            raise ValidationError("Arguments must be a JSON object")

        try:
            return spec, spec.input_model.model_validate(raw_arguments)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid input for {name}: {e.errors()[0].get('msg', 'invalid value')}",
                field=_first_error_field(e),
            ) from e

    async def execute(
        self, name: str, raw_arguments: str | dict[str, Any], context: ToolContext
    ) -> ToolResult:
        """Validate, run, classify and audit one tool call."""
        try:
            spec, arguments = self.validate(name, raw_arguments)
        except ToolExecutionError as e:
            result = ToolResult.failure(name, e.kind, e.detail)
            await self._audit(context, name, {}, result)
            return result
        except ValidationError as e:
            result = ToolResult.failure(name, "invalid_input", e.reason, field=e.field)
            await self._audit(context, name, {}, result)
            return result

        dumped = arguments.model_dump(mode="json")
        started = time.perf_counter()
        try:
            output = await self._run(spec, arguments, context)
            result = ToolResult(tool_name=name, success=True, output=output, arguments=dumped)
        except TimeoutError:
            result = ToolResult.failure(
                name, "timeout", f"{name} timed out after {self.read_timeout}s", arguments=dumped
            )
        except ToolExecutionError as e:
            result = ToolResult.failure(name, e.kind, e.detail, arguments=dumped)
        except ProviderError as e:
            result = ToolResult.failure(name, e.kind, str(e), arguments=dumped)
        except ValidationError as e:
            result = ToolResult.failure(
                name, "invalid_input", e.reason, field=e.field, arguments=dumped
            )
        except SchedulingError as e:
            result = ToolResult.failure(name, "failed", e.reason, arguments=dumped)
        except Exception as e:
            logger.exception("Tool handler raised unexpectedly", tool=name)
            result = ToolResult.failure(name, "failed", f"{type(e).__name__}: {e}", arguments=dumped)

        logger.info(
            "Tool call finished",
            tool=name,
            side_effect=spec.side_effect,
            success=result.success,
            error_kind=result.error_kind,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        await self._audit(context, name, dumped, result)
        return result

    async def _run(self, spec: ToolSpec, arguments: BaseModel, context: ToolContext) -> dict[str, Any]:
        if spec.side_effect == "read":
            return await asyncio.wait_for(spec.handler(arguments, context), self.read_timeout)

        # Writes always run to completion so no side effect is orphaned
        started = time.perf_counter()
        output = await spec.handler(arguments, context)
        elapsed = time.perf_counter() - started
        if elapsed > self.read_timeout:
            logger.warning(
                "Write tool exceeded timeout but completed",
                tool=spec.name,
                elapsed_seconds=round(elapsed, 2),
            )
        return output

    async def _audit(
        self, context: ToolContext, name: str, arguments: dict[str, Any], result: ToolResult
    ) -> None:
        await self.audit_logger.log_tool_call(
            meeting_request_id=context.meeting_request_id,
            tool_name=name,
            arguments=arguments,
            success=result.success,
            error_kind=result.error_kind,
        )
