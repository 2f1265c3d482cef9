"""
Tool registry.

Every tool the server exposes is described once, at startup, by a
ToolDescriptor: a unique name, a description, a parameter schema made of
primitive JSON types, the scope a token needs to use it, and an async handler.

Invocation goes through ToolRegistry.invoke():

    1. look the tool up by name              (UnknownToolError)
    2. validate the arguments against the    (ToolArgumentError, the handler
       schema with a strict pydantic model    is never called)
    3. call the handler with the validated arguments and a fresh ToolContext
    4. turn whatever it returned into MCP content blocks
                                             (ToolInvocationError on failure)

The registry keeps no state between calls. Anything a tool wants to remember
goes through the DataAccess capability in its context.

RegistryTool publishes descriptors to FastMCP, so the MCP transport lists and
calls them like any other tool.
"""

import json
import logging
import types
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from fastmcp.exceptions import ToolError
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import EmbeddedResource, ImageContent, TextContent
from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from src.auth import TokenInfo
from src.datastore import DataAccess

logger = logging.getLogger(__name__)

# The authorized session of the MCP call being served. Set by the auth
# middleware around each tools/call.
current_session: ContextVar[TokenInfo | None] = ContextVar("current_session", default=None)

PARAMETER_TYPES: dict[str, Any] = {
    "string": str,
    "number": int | float,
    "integer": int,
    "boolean": bool,
}

CONTENT_TYPES = (TextContent, ImageContent, EmbeddedResource)


class ToolRegistryError(Exception):
    """Base class for registry failures."""


class DuplicateToolError(ToolRegistryError):
    pass


class UnknownToolError(ToolRegistryError):
    pass


class ToolArgumentError(ToolRegistryError):
    pass


class ToolInvocationError(ToolRegistryError):
    pass


@dataclass(frozen=True)
class Parameter:
    type: str
    required: bool = True
    description: str = ""

    def __post_init__(self):
        if self.type not in PARAMETER_TYPES:
            raise ValueError(
                f"Unsupported parameter type '{self.type}', "
                f"expected one of {sorted(PARAMETER_TYPES)}"
            )


@dataclass(frozen=True)
class ToolContext:
    """What a handler gets besides its arguments: who is calling, and storage."""

    session: TokenInfo
    data: DataAccess


Handler = Callable[[Any, ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameters: Mapping[str, Parameter]
    handler: Handler
    scope: str
    arguments_model: type[BaseModel]

    def input_schema(self) -> dict[str, Any]:
        schema = self.arguments_model.model_json_schema()
        schema.pop("title", None)
        return schema


def build_arguments_model(tool_name: str, parameters: Mapping[str, Parameter]) -> type[BaseModel]:
    fields: dict[str, Any] = {}
    for param_name, param in parameters.items():
        python_type = PARAMETER_TYPES[param.type]
        if param.required:
            fields[param_name] = (python_type, Field(description=param.description or None))
        else:
            fields[param_name] = (
                python_type | None,
                Field(default=None, description=param.description or None),
            )
    model_name = "".join(part.capitalize() for part in tool_name.split("_")) + "Arguments"
    return create_model(
        model_name,
        __config__=ConfigDict(strict=True, extra="forbid"),
        **fields,
    )


def to_content(result: Any) -> list[Any]:
    if isinstance(result, str):
        return [TextContent(type="text", text=result)]
    if isinstance(result, CONTENT_TYPES):
        return [result]
    if isinstance(result, list) and result and all(isinstance(i, CONTENT_TYPES) for i in result):
        return list(result)
    return [TextContent(type="text", text=json.dumps(result, default=str))]


def _describe_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "arguments"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


class ToolRegistry:
    def __init__(self, data: DataAccess):
        self._data = data
        self._tools: dict[str, ToolDescriptor] = {}

    def register(
        self,
        name: str,
        description: str,
        parameters: Mapping[str, Parameter],
        handler: Handler,
        scope: str,
    ) -> ToolDescriptor:
        if name in self._tools:
            raise DuplicateToolError(f"Tool '{name}' is already registered")

        frozen = types.MappingProxyType(dict(parameters))
        descriptor = ToolDescriptor(
            name=name,
            description=description,
            parameters=frozen,
            handler=handler,
            scope=scope,
            arguments_model=build_arguments_model(name, frozen),
        )
        self._tools[name] = descriptor
        logger.debug("Tool registered: %s (scope=%s)", name, scope)
        return descriptor

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def required_scope(self, name: str) -> str | None:
        descriptor = self._tools.get(name)
        return descriptor.scope if descriptor else None

    async def invoke(self, name: str, arguments: Mapping[str, Any] | None, session: TokenInfo) -> list[Any]:
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise UnknownToolError(f"Unknown tool '{name}'")

        try:
            validated = descriptor.arguments_model.model_validate(dict(arguments or {}))
        except ValidationError as e:
            raise ToolArgumentError(
                f"Invalid arguments for '{name}': {_describe_validation_error(e)}"
            ) from e

        context = ToolContext(session=session, data=self._data)
        try:
            result = await descriptor.handler(validated, context)
        except ToolRegistryError:
            raise
        except Exception as e:
            logger.warning(
                "Tool handler failed",
                extra={"auth_data": {"tool": name, "subject": session.subject, "error": str(e)}},
            )
            raise ToolInvocationError(str(e) or f"Tool '{name}' failed") from e

        return to_content(result)

    def publish(self, server: Any) -> None:
        """Add every registered tool to a FastMCP server."""
        for descriptor in self._tools.values():
            server.add_tool(RegistryTool.from_descriptor(descriptor, self))


class RegistryTool(Tool):
    """FastMCP view of a ToolDescriptor; calls are routed back into the registry."""

    registry: Any = Field(default=None, exclude=True)

    @classmethod
    def from_descriptor(cls, descriptor: ToolDescriptor, registry: ToolRegistry) -> "RegistryTool":
        return cls(
            name=descriptor.name,
            description=descriptor.description,
            parameters=descriptor.input_schema(),
            registry=registry,
        )

    async def run(self, arguments: dict[str, Any]) -> ToolResult:
        session = current_session.get()
        if session is None:
            raise ToolError("Not authenticated")
        try:
            content = await self.registry.invoke(self.name, arguments, session)
        except ToolRegistryError as e:
            raise ToolError(str(e)) from e
        return ToolResult(content=content)
