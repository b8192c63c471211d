"""Tool-call fragment accumulation and backend quirk compensations."""

from __future__ import annotations

import uuid
from typing import Any

from watsonx_stream.types import FinishReason, ToolCall

REQUIRED_TOOL_CHOICE = "required"


class ToolCallFragment:
    """One tool call being assembled from streaming deltas.

    The backend sends an ``index`` on every delta, the ``id`` and
    ``function.name`` on the first one only, and ``function.arguments`` as
    fragments that must be concatenated.
    """

    def __init__(self, index: int) -> None:
        self.index = index
        self.id: str | None = None
        self.name: str | None = None
        self._arguments: list[str] = []

    @property
    def arguments(self) -> str:
        return "".join(self._arguments)

    def update(self, delta: dict[str, Any]) -> str:
        """Merge one ``tool_calls`` entry; return the arguments delta."""
        if delta.get("id"):
            self.id = delta["id"]
        func = delta.get("function") or {}
        if func.get("name"):
            self.name = func["name"]
        args = func.get("arguments") or ""
        if args:
            self._arguments.append(args)
        return args

    def build(self, *, has_parameters: bool = True) -> ToolCall:
        """Freeze the fragment into a ``ToolCall``."""
        return ToolCall(
            index=self.index,
            id=self.id or ensure_tool_call_id(None),
            name=self.name or "",
            arguments=normalize_arguments(self.arguments, has_parameters),
        )


# ---------------------------------------------------------------------------
# Backend quirk compensations
# ---------------------------------------------------------------------------

def ensure_tool_call_id(tool_call_id: str | None) -> str:
    """Some models stream tool calls without an id; make one up."""
    return tool_call_id or str(uuid.uuid4())


def normalize_arguments(arguments: str, has_parameters: bool = True) -> str:
    """Tools declared without parameters may stream no arguments at all."""
    if not has_parameters or not arguments.strip():
        return "{}"
    return arguments


def tool_has_parameters(tools: list[dict[str, Any]] | None) -> dict[str, bool]:
    """Map each declared tool name to whether it declares parameters."""
    result: dict[str, bool] = {}
    for tool in tools or []:
        func = tool.get("function") or {}
        name = func.get("name")
        if not name:
            continue
        params = func.get("parameters")
        result[name] = isinstance(params, dict) and bool(params.get("properties"))
    return result


def is_mandatory_tool_choice(
    tool_choice_option: str | None, tool_choice: dict[str, Any] | None
) -> bool:
    return tool_choice_option == REQUIRED_TOOL_CHOICE or bool(tool_choice)


def compensate_required_tool_choice(
    finish_reason: str | None,
    *,
    tool_choice_option: str | None,
    tool_choice: dict[str, Any] | None,
    tool_calls: list[ToolCall],
) -> str | None:
    """Report ``tool_calls`` when a forced tool choice produced calls.

    With a mandatory tool choice the backend sometimes finishes with
    ``stop`` even though the message carries tool calls.
    """
    if finish_reason == FinishReason.TOOL_CALLS.value:
        return finish_reason
    if not is_mandatory_tool_choice(tool_choice_option, tool_choice):
        return finish_reason
    if any(tc.name for tc in tool_calls):
        return FinishReason.TOOL_CALLS.value
    return finish_reason
