"""Rule compilation and evaluation.

A rule file is compiled once at startup: every expression is parsed
and bound to the registry, so an unknown name or a wrong argument count
stops the process before any evaluation runs.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from bitfleet.errors import InvalidParameterError
from bitfleet.observability.logger import get_logger
from bitfleet.observability.metrics import metrics
from bitfleet.rules.parser import RuleDefinition, read_rule_file
from bitfleet.rules.registry import BoundCall, FunctionKind, FunctionRegistry

log = get_logger(__name__)

# Trigger sources named in a rule's ``invokeBy``.
CHAIN_INDEXER = "chainIndexer"
FULL_SWEEP = "chainHolderInvestmentsFullSweep"
NEW_GAMER_FEED = "cloudNewGamerFeed"


@dataclass
class RuleContext:
    """Mutable evaluation context handed to every rule function."""
    invoked_by: str
    gamer: str | None = None
    holder: str | None = None
    bit_amount: int | None = None
    is_buy: bool | None = None
    block_number: int | None = None
    quantity: int | None = None
    rule: CompiledRule | None = None
    callback: Callable[[], Awaitable[None]] | None = None
    stats: dict[str, Any] = field(default_factory=dict)

    def require(self, *names: str) -> None:
        missing = [n for n in names if getattr(self, n) is None]
        if missing:
            raise InvalidParameterError(
                f"context from {self.invoked_by} is missing {', '.join(missing)}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "invokedBy": self.invoked_by,
            "gamer": self.gamer,
            "holder": self.holder,
            "bitAmount": self.bit_amount,
            "isBuy": self.is_buy,
            "quantity": self.quantity,
        }


@dataclass(frozen=True)
class CompiledRule:
    rule_id: str
    invoke_by: tuple[str, ...]
    action: BoundCall
    conditions: tuple[BoundCall, ...] = ()
    quantity: BoundCall | None = None

    def describe(self) -> dict[str, Any]:
        return {
            "ruleID": self.rule_id,
            "invokeBy": list(self.invoke_by),
            "conditions": [str(c) for c in self.conditions] or None,
            "quantity": str(self.quantity) if self.quantity else None,
            "action": str(self.action),
        }


def compile_rule(definition: RuleDefinition, registry: FunctionRegistry) -> CompiledRule:
    conditions = tuple(
        registry.bind(FunctionKind.PREDICATE, expr)
        for expr in definition.condition_expressions
    )
    quantity = (
        registry.bind(FunctionKind.QUANTITY, definition.quantity)
        if definition.quantity is not None else None
    )
    return CompiledRule(
        rule_id=definition.rule_id,
        invoke_by=tuple(definition.invoke_by),
        action=registry.bind(FunctionKind.ACTION, definition.action),
        conditions=conditions,
        quantity=quantity,
    )


def load_rules(
    path: str | Path,
    role: str | None,
    registry: FunctionRegistry,
) -> list[CompiledRule]:
    """Compile the rules in ``path`` that list ``role`` in ``invokeBy``.

    Every rule is compiled, whatever its role, so a bad entry fails the
    load even when the current role would never run it.
    """
    compiled = [compile_rule(d, registry) for d in read_rule_file(path)]
    selected = [r for r in compiled if role is None or role in r.invoke_by]
    log.info("rules.loaded", path=str(path), role=role, total=len(compiled), selected=len(selected))
    return selected


class RuleEvaluator:
    """Runs rules in file order against one context."""

    async def _gate(self, ctx: RuleContext, rule: CompiledRule) -> bool:
        if rule.conditions:
            results = await asyncio.gather(*(cond(ctx) for cond in rule.conditions))
            if not all(results):
                return False
        if rule.quantity is not None:
            ctx.quantity = int(await rule.quantity(ctx))
        return True

    async def evaluate(self, ctx: RuleContext, rules: list[CompiledRule]) -> int:
        """Evaluate ``rules``; returns how many actions ran.

        Predicate and action errors propagate to the caller.
        """
        fired = 0
        start = time.monotonic()
        for rule in rules:
            # A reset callback belongs to the rule whose predicate set it.
            ctx.callback = None
            if not await self._gate(ctx, rule):
                continue
            ctx.rule = rule
            await rule.action(ctx)
            fired += 1
            metrics.incr("rules.fired", rule_id=rule.rule_id)
            log.debug("rules.fired", rule_id=rule.rule_id, **ctx.to_dict())
            if ctx.callback is not None:
                callback, ctx.callback = ctx.callback, None
                await callback()
        metrics.histogram("rules.evaluate_secs", time.monotonic() - start)
        return fired
