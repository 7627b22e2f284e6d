"""
Base classes for tools.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from ..errors import ToolValidationError

# JSON Schema type name -> python type used for validation
PARAM_TYPES: dict[str, type] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_content(self) -> str:
        """Render the tool-role message content for the model."""
        if self.success:
            return self.output
        return f"Error: {self.error or 'Unknown error'}"


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None
    items: dict[str, Any] | None = None


@dataclass
class Tool:
    """
    Tool wrapper around an async handler function.

    Arguments are validated against a pydantic model generated from
    ``parameters`` before the handler is awaited.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]
    timeout: float | None = None
    read_only: bool = False
    _model: type[BaseModel] | None = field(default=None, init=False, repr=False)

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop: dict[str, Any] = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.items:
                prop["items"] = param.items
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

    @property
    def validation_model(self) -> type[BaseModel]:
        if self._model is None:
            fields: dict[str, Any] = {}
            for param in self.parameters:
                annotation: Any = PARAM_TYPES.get(param.param_type, Any)
                if param.enum:
                    annotation = Literal[tuple(param.enum)]
                if param.required:
                    fields[param.name] = (annotation, ...)
                else:
                    fields[param.name] = (Optional[annotation], param.default)
            self._model = create_model(
                f"{self.name}_arguments",
                __config__=ConfigDict(extra="ignore"),
                **fields,
            )
        return self._model

    def validate(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate ``arguments`` and return the keyword arguments for the handler.

        Raises ToolValidationError naming the first offending field.
        """
        try:
            parsed = self.validation_model.model_validate(arguments)
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(part) for part in first.get("loc", ())) or "arguments"
            raise ToolValidationError(self.name, loc, first.get("msg", "invalid value")) from e
        return parsed.model_dump(exclude_unset=True)

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool handler."""
        return await self.handler(**kwargs)
