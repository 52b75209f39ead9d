"""Skill registry: named, schema-described capabilities.

Both the Telegram command handlers and the brain's tool loop dispatch
through the same registry, so a command and a model tool call end up in
the same code path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

log = structlog.get_logger()

SkillHandler = Callable[[dict[str, Any]], Awaitable[str]]

_JSON_TYPES = {"string", "number", "integer", "boolean"}


@dataclass(frozen=True)
class SkillParameter:
    name: str
    type: str
    description: str
    required: bool = False

    def __post_init__(self) -> None:
        if self.type not in _JSON_TYPES:
            raise ValueError(f"Unsupported parameter type for {self.name}: {self.type}")

    def coerce(self, value: Any) -> Any:
        if self.type == "string":
            return str(value)
        if self.type == "number":
            return float(value)
        if self.type == "integer":
            return int(float(value))
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "on", "yes", "1"):
                return True
            if lowered in ("false", "off", "no", "0"):
                return False
            raise ValueError(f"{self.name} must be a boolean, got {value!r}")
        return bool(value)


@dataclass(frozen=True)
class Skill:
    name: str
    description: str
    handler: SkillHandler
    category: str = "utility"
    parameters: tuple[SkillParameter, ...] = field(default_factory=tuple)

    def validate(self, params: dict[str, Any] | None) -> dict[str, Any]:
        """Check required parameters, coerce types, drop unknown keys."""
        params = params or {}
        clean: dict[str, Any] = {}
        for p in self.parameters:
            value = params.get(p.name)
            if value is None or value == "":
                if p.required:
                    raise ValueError(f"missing required parameter '{p.name}'")
                continue
            clean[p.name] = p.coerce(value)
        return clean

    async def execute(self, params: dict[str, Any] | None = None) -> str:
        return await self.handler(self.validate(params))

    def input_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                p.name: {"type": p.type, "description": p.description}
                for p in self.parameters
            },
            "required": [p.name for p in self.parameters if p.required],
        }


class SkillRegistry:
    def __init__(self) -> None:
        self._skills: dict[str, Skill] = {}

    def register(self, skill: Skill) -> None:
        if skill.name in self._skills:
            raise ValueError(f"Skill already registered: {skill.name}")
        self._skills[skill.name] = skill

    def get(self, name: str) -> Skill | None:
        return self._skills.get(name)

    def __len__(self) -> int:
        return len(self._skills)

    def __contains__(self, name: str) -> bool:
        return name in self._skills

    def describe_skills(self) -> str:
        lines = []
        for s in self._skills.values():
            params = ", ".join(
                f"{p.name}{'' if p.required else '?'}: {p.type}" for p in s.parameters
            )
            lines.append(f"- {s.name}({params}) [{s.category}]: {s.description}")
        return "\n".join(lines)

    def to_tool_schemas(self) -> list[dict]:
        """Tool definitions in the Anthropic Messages API shape."""
        return [
            {"name": s.name, "description": s.description, "input_schema": s.input_schema()}
            for s in self._skills.values()
        ]
