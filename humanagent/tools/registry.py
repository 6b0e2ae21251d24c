"""Immutable tool registry for ``call_tool`` directives."""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any
from typing import Dict
from typing import FrozenSet
from typing import List
from typing import Optional

from langchain_core.tools import StructuredTool


class ToolNotAllowed(LookupError):
    """The agent's allowlist does not include the requested tool."""


@dataclass(frozen=True)
class ImmutableToolRegistry:
    """
    Thread-safe, immutable tool registry.

    Built once, passed to the executor. No global state, no mutations.
    """

    _tools: MappingProxyType
    _names: FrozenSet[str]

    @classmethod
    def build(cls, tool_sources: List[List[StructuredTool]]) -> "ImmutableToolRegistry":
        """
        Build registry from multiple tool sources.

        Raises:
            ValueError: If duplicate tool names are found
        """
        tools: Dict[str, StructuredTool] = {}
        for source in tool_sources:
            for tool in source:
                if tool.name in tools:
                    raise ValueError(
                        f"Duplicate tool name '{tool.name}' found. "
                        f"Existing: {tools[tool.name].description}, "
                        f"New: {tool.description}"
                    )
                tools[tool.name] = tool

        return cls(_tools=MappingProxyType(tools), _names=frozenset(tools.keys()))

    def get(self, name: str) -> Optional[StructuredTool]:
        return self._tools.get(name)

    @staticmethod
    def is_allowed(name: str, allowed: Optional[List[str]]) -> bool:
        """Empty allowlist means every registered tool; ``prefix*`` patterns match by prefix."""
        if not allowed:
            return True
        for pattern in allowed:
            if pattern.endswith("*") and name.startswith(pattern[:-1]):
                return True
            if pattern == name:
                return True
        return False

    def filter_by_allowlist(self, allowed: Optional[List[str]]) -> List[StructuredTool]:
        return [t for n, t in self._tools.items() if self.is_allowed(n, allowed)]

    def list_names(self) -> List[str]:
        return sorted(self._names)

    async def invoke(self, name: str, tool_input: Dict[str, Any], *, allowed: Optional[List[str]] = None) -> Any:
        """Run tool *name* with *tool_input*.

        Raises:
            KeyError: unknown tool
            ToolNotAllowed: tool exists but is outside *allowed*
        """
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(f"Unknown tool '{name}'")
        if not self.is_allowed(name, allowed):
            raise ToolNotAllowed(f"Tool '{name}' is not enabled for this agent")
        return await tool.ainvoke(tool_input)


_default: Optional[ImmutableToolRegistry] = None


def get_tool_registry() -> ImmutableToolRegistry:
    """Process-wide registry of the built-in tools (built on first use)."""
    global _default
    if _default is None:
        from humanagent.tools.builtin import BUILTIN_TOOLS

        _default = ImmutableToolRegistry.build([BUILTIN_TOOLS])
    return _default


__all__ = ["ImmutableToolRegistry", "ToolNotAllowed", "get_tool_registry"]
