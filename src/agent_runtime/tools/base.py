"""
Base classes for tools.

Every tool goes through the same execution protocol:

1. arguments are validated against the tool's pydantic schema before any
   side effect; failures come back as a ``VALIDATION_ERROR`` result
2. a tool whose turn is already cancelled is not started
3. exceptions raised by the implementation become ``TOOL_EXECUTION_FAILED``
   results, and cancellation becomes a ``CANCELLED`` result

so the agent loop always gets a ``ToolResult`` it can hand back to the model.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from ..cancellation import CancellationToken
from ..errors import AgentRuntimeError, ErrorKind, OperationCancelled
from ..llm.base import ToolDefinition
from ..telemetry import SpanContext

logger = structlog.get_logger()

MetadataCallback = Callable[[dict[str, Any]], None]


class ToolStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Attachment:
    """Binary payload returned alongside a tool's text output."""

    mime_type: str
    data: bytes
    filename: str | None = None


@dataclass(frozen=True)
class ToolResult:
    """Result from a tool execution."""

    title: str
    output: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    attachments: tuple[Attachment, ...] = ()
    status: ToolStatus = ToolStatus.OK
    error_kind: ErrorKind | None = None

    @property
    def success(self) -> bool:
        return self.status is ToolStatus.OK

    @classmethod
    def ok(
        cls,
        title: str,
        output: str,
        metadata: dict[str, Any] | None = None,
        attachments: tuple[Attachment, ...] = (),
    ) -> "ToolResult":
        return cls(title=title, output=output, metadata=metadata or {}, attachments=tuple(attachments))

    @classmethod
    def error(
        cls,
        kind: ErrorKind,
        message: str,
        title: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> "ToolResult":
        return cls(
            title=title or kind.value,
            output=message,
            metadata=metadata or {},
            status=ToolStatus.ERROR,
            error_kind=kind,
        )

    @classmethod
    def cancelled(cls, title: str, message: str = "Tool call cancelled") -> "ToolResult":
        return cls(title=title, output=message, status=ToolStatus.CANCELLED, error_kind=ErrorKind.CANCELLED)

    def to_message_content(self) -> str:
        """Text fed back to the model as the tool-result message."""
        if self.status is ToolStatus.OK:
            return self.output
        kind = self.error_kind.value if self.error_kind else "ERROR"
        return f"Error [{kind}]: {self.output}"


@dataclass
class ToolContext:
    """Per-call context handed to a tool."""

    session_id: str = ""
    turn_id: str = ""
    call_id: str = ""
    span: SpanContext | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    on_metadata: MetadataCallback | None = None

    def emit(self, title: str | None = None, **metadata: Any) -> None:
        """Send an incremental progress/metadata update before the final result."""
        if self.on_metadata is None:
            return
        update = dict(metadata)
        if title is not None:
            update["title"] = title
        self.on_metadata(update)


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as ``field: message`` lines the model can act on."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "arguments"
        lines.append(f"{location}: {item['msg']}")
    return "Invalid arguments:\n" + "\n".join(lines)


async def run_tool(
    name: str,
    schema: type[BaseModel],
    arguments: dict[str, Any] | None,
    context: ToolContext,
    runner: Callable[[BaseModel, ToolContext], Awaitable[Any]],
) -> ToolResult:
    """Validate, check cancellation, run and normalize the outcome of one call."""
    try:
        args = schema.model_validate(arguments or {})
    except ValidationError as e:
        logger.info("Tool arguments rejected", tool_name=name, errors=e.error_count())
        return ToolResult.error(ErrorKind.VALIDATION_ERROR, format_validation_error(e), title=name)

    if context.cancel_token.cancelled:
        return ToolResult.cancelled(name)

    try:
        result = await runner(args, context)
    except OperationCancelled:
        return ToolResult.cancelled(name)
    except asyncio.CancelledError:
        if not context.cancel_token.cancelled:
            raise
        return ToolResult.cancelled(name)
    except AgentRuntimeError as e:
        logger.warning("Tool failed", tool_name=name, kind=e.kind.value, error=e.message)
        return ToolResult.error(e.kind, e.message, title=name, metadata=dict(e.details))
    except Exception as e:
        logger.error("Tool execution error", tool_name=name, error=str(e), exc_info=True)
        return ToolResult.error(ErrorKind.TOOL_EXECUTION_FAILED, f"{type(e).__name__}: {e}", title=name)

    if not isinstance(result, ToolResult):
        result = ToolResult.ok(title=name, output="" if result is None else str(result))
    return result


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


_PARAM_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def build_args_model(name: str, parameters: list[ToolParameter]) -> type[BaseModel]:
    """Create a pydantic model from a list of parameters."""
    fields: dict[str, Any] = {}
    for param in parameters:
        annotation: Any = _PARAM_TYPES.get(param.param_type, Any)
        if param.enum:
            annotation = Literal[tuple(param.enum)]
        if param.required:
            fields[param.name] = (annotation, Field(..., description=param.description))
        else:
            fields[param.name] = (annotation | None, Field(param.default, description=param.description))

    model_name = "".join(part.capitalize() for part in name.replace("-", "_").split("_")) + "Args"
    return create_model(model_name, __config__=ConfigDict(extra="forbid"), **fields)


@dataclass
class Tool:
    """
    Simple tool wrapper that can be created from a function.

    This is an alternative to the class-based BaseTool for simpler tools.
    The handler receives the validated arguments as keyword arguments, plus
    ``context`` when its signature asks for it.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Awaitable[ToolResult]]
    args_model: type[BaseModel] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.args_model = build_args_model(self.name, self.parameters)
        self._wants_context = "context" in inspect.signature(self.handler).parameters

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(name=self.name, description=self.description,
                              parameters=self.get_parameters_schema())

    async def execute(self, arguments: dict[str, Any] | None = None,
                      context: ToolContext | None = None) -> ToolResult:
        """Execute the tool handler through the protocol."""

        async def runner(args: BaseModel, ctx: ToolContext) -> Any:
            kwargs = args.model_dump(exclude_none=True)
            if self._wants_context:
                kwargs["context"] = ctx
            return await self.handler(**kwargs)

        return await run_tool(self.name, self.args_model, arguments, context or ToolContext(), runner)


class EmptyArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BaseTool(ABC):
    """Base class for class-based tools.

    Subclasses set ``name`` and ``description``, declare their parameters as
    a nested pydantic ``Args`` model and implement ``run``.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    Args: ClassVar[type[BaseModel]] = EmptyArgs

    @property
    def parameters(self) -> dict[str, Any]:
        """Get the tool parameters schema (JSON Schema)."""
        return self.Args.model_json_schema()

    @abstractmethod
    async def run(self, args: Any, context: ToolContext) -> ToolResult:
        """Do the work with already validated arguments."""

    async def execute(self, arguments: dict[str, Any] | None = None,
                      context: ToolContext | None = None) -> ToolResult:
        return await run_tool(self.name, self.Args, arguments, context or ToolContext(), self.run)

    def to_definition(self) -> ToolDefinition:
        """Convert to a tool definition for LLM."""
        return ToolDefinition(name=self.name, description=self.description, parameters=self.parameters)
