"""Ordered, fail-stop policy evaluation for tool metadata.

A ``PolicyEngine`` holds two append-only lists:

- **policy rules**: cheap predicates over ``tool.name`` /
  ``tool.description``.  Evaluated first, in registration order.
- **prompt shields**: the same shape, typically asynchronous content
  classifiers.  Evaluated only after every rule has passed.

The first predicate returning False vetoes the tool.  Nothing after it
runs and nothing can overturn it.  A predicate that raises counts as a
veto for that tool only.  Each veto is appended to the engine's
rejection log, which lives as long as the engine and is what the
aggregator's ``explain_missing_tools`` tool reports.
"""

from __future__ import annotations

import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, Iterable, Protocol, Union, runtime_checkable

from .errors import PolicyVeto
from .models import PolicyRejection, Tool

logger = logging.getLogger("mcp_lockdown.policy")

_ANONYMOUS = "<anonymous>"

PolicyResult = Union[bool, Awaitable[bool]]


@runtime_checkable
class PolicyRule(Protocol):
    """A named predicate over a tool.  True means the tool may pass."""

    name: str

    def evaluate(self, tool: Tool) -> PolicyResult:
        ...


# Shields share the rule interface; the distinction is evaluation order.
PromptShield = PolicyRule


class FunctionRule:
    """Adapts a plain callable ``(tool) -> bool | Awaitable[bool]``."""

    def __init__(self, fn: Callable[[Tool], PolicyResult], name: str | None = None) -> None:
        self._fn = fn
        fn_name = getattr(fn, "__name__", "")
        if not fn_name or fn_name == "<lambda>":
            fn_name = _ANONYMOUS
        self.name = name or fn_name

    def evaluate(self, tool: Tool) -> PolicyResult:
        return self._fn(tool)

    def __repr__(self) -> str:
        return f"FunctionRule({self.name!r})"


def as_rule(rule: Any) -> PolicyRule:
    """Accept either a ``PolicyRule`` object or a bare callable."""
    if isinstance(rule, PolicyRule):
        return rule
    if callable(rule):
        return FunctionRule(rule)
    raise TypeError(
        f"Policy rules must be callables or expose evaluate(); "
        f"got {type(rule).__name__}"
    )


async def _resolve(result: PolicyResult) -> bool:
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


class PolicyEngine:
    """Evaluates tools against registered rules and shields.

    Usage::

        engine = PolicyEngine()
        engine.register_policies(builtin_policies())
        if await engine.evaluate(tool):
            ...
        engine.list_rejections()
    """

    def __init__(self) -> None:
        self._rules: list[PolicyRule] = []
        self._shields: list[PromptShield] = []
        self._rejections: list[PolicyRejection] = []
        self._lock = threading.Lock()

    # -- registration --------------------------------------------------------

    def register_policies(self, rules: Iterable[Any]) -> None:
        """Append rules.  Registration order is evaluation order."""
        self._rules.extend(as_rule(r) for r in rules)

    def register_shields(self, shields: Iterable[Any]) -> None:
        """Append prompt shields, evaluated after all rules pass."""
        self._shields.extend(as_rule(s) for s in shields)

    @property
    def rules(self) -> list[PolicyRule]:
        return list(self._rules)

    @property
    def shields(self) -> list[PromptShield]:
        return list(self._shields)

    def list(self) -> list[str]:
        """Names of all rules then all shields, in evaluation order."""
        return [r.name for r in self._rules] + [s.name for s in self._shields]

    # -- evaluation ----------------------------------------------------------

    async def evaluate(self, tool: Tool) -> bool:
        """Return True if every rule and shield accepts *tool*.

        Records a rejection and stops at the first failure.
        """
        return await self._first_veto(tool) is None

    async def enforce(self, tool: Tool) -> None:
        """Like ``evaluate`` but raises ``PolicyVeto`` on rejection."""
        rejection = await self._first_veto(tool)
        if rejection is not None:
            raise PolicyVeto(
                rejection.message,
                tool_name=rejection.tool_name,
                rule_name=rejection.rule_name,
            )

    async def _first_veto(self, tool: Tool) -> PolicyRejection | None:
        for rule in self._rules:
            if not await self._accepts(rule, tool):
                return self._record(tool, rule, kind="policy")
        for shield in self._shields:
            if not await self._accepts(shield, tool):
                return self._record(tool, shield, kind="shield")
        return None

    async def _accepts(self, rule: PolicyRule, tool: Tool) -> bool:
        try:
            return await _resolve(rule.evaluate(tool))
        except Exception:
            # Fail closed: an erroring check rejects the tool
            logger.exception(
                "Rule '%s' raised while evaluating tool '%s'",
                getattr(rule, "name", _ANONYMOUS), tool.name,
            )
            return False

    def _record(self, tool: Tool, rule: PolicyRule, kind: str) -> PolicyRejection:
        rejection = PolicyRejection(
            tool_name=tool.name,
            rule_name=getattr(rule, "name", _ANONYMOUS) or _ANONYMOUS,
            kind=kind,
        )
        with self._lock:
            self._rejections.append(rejection)
        logger.warning(rejection.message)
        return rejection

    # -- introspection -------------------------------------------------------

    @property
    def rejections(self) -> list[PolicyRejection]:
        with self._lock:
            return list(self._rejections)

    def list_rejections(self) -> list[str]:
        """All rejection messages so far, in evaluation order."""
        return [r.message for r in self.rejections]

    def last_rejection(self) -> str:
        """Most recent rejection message, or ``""`` if there is none."""
        with self._lock:
            if not self._rejections:
                return ""
            return self._rejections[-1].message
