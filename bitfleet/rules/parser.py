"""Rule file model and function-call expression parsing.

A rule file is a JSON array of objects:

    {
      "ruleID": "buy-new-gamers",
      "invokeBy": ["cloudNewGamerFeed"],
      "conditions": ["gamerWithinMaxAge(60)", "gamerWinRate(>=, 40)"],
      "action": "buyUpTo(5)"
    }

Each rule carries exactly one of ``conditions`` (all must hold) or
``quantity`` (always evaluated, its result feeds the action).
Expressions are ``name(arg1, arg2, ...)`` with plain string arguments.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from bitfleet.errors import RuleValidationError

_CALL_RE = re.compile(r"^([A-Za-z0-9_]+)\(([^)]*)\)$")
_QUOTED_RE = re.compile(r"""^(['"])(.*)\1$""")


# ── Expressions ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.name}({', '.join(self.args)})"


def _unquote(raw: str) -> str:
    raw = raw.strip()
    match = _QUOTED_RE.match(raw)
    return match.group(2) if match else raw


def parse_expression(expression: str) -> FunctionCall:
    """Parse ``name(a, b)`` into a FunctionCall; arity is checked by the registry."""
    cleaned = _unquote(expression)
    match = _CALL_RE.match(cleaned)
    if not match:
        raise RuleValidationError(f"invalid expression format: {expression!r}")
    raw_args = match.group(2).strip()
    args = tuple(_unquote(a) for a in raw_args.split(",")) if raw_args else ()
    return FunctionCall(name=match.group(1), args=args)


# ── Rule documents ───────────────────────────────────────────────────

class ConditionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")
    expression: str


class RuleDefinition(BaseModel):
    """One entry of a rule file."""
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        json_schema_extra={
            "oneOf": [
                {"required": ["quantity"], "not": {"required": ["conditions"]}},
                {"required": ["conditions"], "not": {"required": ["quantity"]}},
            ],
        },
    )

    rule_id: str = Field(alias="ruleID", min_length=1)
    invoke_by: list[str] = Field(alias="invokeBy", min_length=1)
    quantity: str | None = None
    conditions: list[Union[str, ConditionSpec]] | None = Field(default=None, min_length=1)
    action: str

    @model_validator(mode="after")
    def _quantity_xor_conditions(self) -> "RuleDefinition":
        if (self.quantity is None) == (self.conditions is None):
            raise ValueError("a rule needs exactly one of 'quantity' or 'conditions'")
        return self

    @property
    def condition_expressions(self) -> list[str]:
        return [
            c.expression if isinstance(c, ConditionSpec) else c
            for c in (self.conditions or [])
        ]


_RULE_LIST = TypeAdapter(list[RuleDefinition])


def rule_json_schema() -> dict[str, Any]:
    schema = _RULE_LIST.json_schema(by_alias=True)
    schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
    schema["title"] = "Trade rules"
    return schema


def parse_rule_document(document: Any) -> list[RuleDefinition]:
    try:
        return _RULE_LIST.validate_python(document)
    except ValidationError as e:
        raise RuleValidationError(f"rule document failed validation: {e}") from e


def read_rule_file(path: str | Path) -> list[RuleDefinition]:
    try:
        with open(path) as f:
            document = json.load(f)
    except (OSError, ValueError) as e:
        raise RuleValidationError(f"cannot read rule file {path}: {e}") from e
    return parse_rule_document(document)
