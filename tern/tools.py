"""Tool registry: the seam between the agent loop and concrete tool code.

Tools are registered with a name, a description, a JSON-schema for their
parameters, and a handler taking the parsed arguments dict and returning a
string. The registry turns handler exceptions into failed results so a broken
tool never takes the agent loop down with it.
"""

from dataclasses import dataclass, field
from typing import Callable


@dataclass
class Tool:
    name: str
    description: str
    handler: Callable[[dict], str]
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def schema(self) -> dict:
        """OpenAI-style function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolResult:
    name: str
    success: bool
    result: str = ""
    error: str = ""


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def execute(self, name: str, args: dict) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(name=name, success=False, error=f"tool {name!r} not found")
        try:
            output = tool.handler(args)
        except Exception as e:
            return ToolResult(name=name, success=False, error=str(e) or type(e).__name__)
        return ToolResult(name=name, success=True, result=output)

    def schemas(self) -> list[dict]:
        return [tool.schema() for tool in self.list()]

    def __len__(self) -> int:
        return len(self._tools)

    # Defined last: the name shadows the builtin for annotations below it.
    def list(self) -> "list[Tool]":
        """All registered tools, sorted by name."""
        return [self._tools[name] for name in sorted(self._tools)]
