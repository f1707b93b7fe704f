"""Typed registries of rule functions.

Three kinds, kept apart: a name registered as a predicate cannot be
used where a quantity function or an action is expected. Every rule
function is an async callable taking the rule context first, then its
declared string arguments; the declared count is the arity an
expression must match.
"""

from __future__ import annotations

import enum
import inspect
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from bitfleet.errors import RuleValidationError
from bitfleet.rules.parser import FunctionCall, parse_expression

if TYPE_CHECKING:
    from bitfleet.rules.engine import RuleContext

RuleFunction = Callable[..., Awaitable[Any]]


class FunctionKind(str, enum.Enum):
    PREDICATE = "predicate"
    QUANTITY = "quantity"
    ACTION = "action"


def declared_arity(fn: RuleFunction) -> int:
    """Positional parameters after the leading context argument."""
    params = [
        p for p in inspect.signature(fn).parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    if not params:
        raise RuleValidationError(f"{fn!r} must accept the rule context")
    return len(params) - 1


@dataclass(frozen=True)
class RegisteredFunction:
    name: str
    kind: FunctionKind
    fn: RuleFunction
    arity: int


@dataclass(frozen=True)
class BoundCall:
    """A parsed expression resolved against the registry."""
    call: FunctionCall
    function: RegisteredFunction

    async def __call__(self, ctx: RuleContext) -> Any:
        return await self.function.fn(ctx, *self.call.args)

    def __str__(self) -> str:
        return str(self.call)


class FunctionRegistry:
    def __init__(self) -> None:
        self._by_kind: dict[FunctionKind, dict[str, RegisteredFunction]] = {
            kind: {} for kind in FunctionKind
        }

    def add(self, kind: FunctionKind, name: str, fn: RuleFunction) -> RegisteredFunction:
        existing = self._find(name)
        if existing is not None:
            raise RuleValidationError(
                f"{name} is already registered as a {existing.kind.value} function"
            )
        entry = RegisteredFunction(name=name, kind=kind, fn=fn, arity=declared_arity(fn))
        self._by_kind[kind][name] = entry
        return entry

    def predicate(self, name: str, fn: RuleFunction) -> RegisteredFunction:
        return self.add(FunctionKind.PREDICATE, name, fn)

    def quantity(self, name: str, fn: RuleFunction) -> RegisteredFunction:
        return self.add(FunctionKind.QUANTITY, name, fn)

    def action(self, name: str, fn: RuleFunction) -> RegisteredFunction:
        return self.add(FunctionKind.ACTION, name, fn)

    def _find(self, name: str) -> RegisteredFunction | None:
        for entries in self._by_kind.values():
            if name in entries:
                return entries[name]
        return None

    def get(self, kind: FunctionKind, name: str) -> RegisteredFunction:
        entry = self._by_kind[kind].get(name)
        if entry is not None:
            return entry
        other = self._find(name)
        if other is not None:
            raise RuleValidationError(
                f"{name} is a {other.kind.value} function, not a {kind.value} function"
            )
        raise RuleValidationError(f"unknown function: {name}")

    def bind(self, kind: FunctionKind, expression: str) -> BoundCall:
        """Parse ``expression`` and check it against the ``kind`` registry."""
        call = parse_expression(expression)
        entry = self.get(kind, call.name)
        if len(call.args) != entry.arity:
            raise RuleValidationError(
                f"function {call.name} expects {entry.arity} parameters, "
                f"but got {len(call.args)}"
            )
        return BoundCall(call=call, function=entry)

    def names(self, kind: FunctionKind) -> list[str]:
        return sorted(self._by_kind[kind])
