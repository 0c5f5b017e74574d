"""Tests for the PolicyEngine: ordering, short-circuit, rejection log."""

import asyncio

import pytest

from mcp_lockdown.errors import PolicyVeto
from mcp_lockdown.models import Tool
from mcp_lockdown.policy import FunctionRule, PolicyEngine, as_rule


class _Rule:
    """Named rule that records how often it ran."""

    def __init__(self, name, result=True):
        self.name = name
        self.result = result
        self.calls = 0

    def evaluate(self, tool):
        self.calls += 1
        return self.result


class _AsyncShield(_Rule):
    async def evaluate(self, tool):
        self.calls += 1
        await asyncio.sleep(0)
        return self.result


def _evaluate(engine, tool):
    return asyncio.run(engine.evaluate(tool))


TOOL = Tool(name="add", description="adds numbers")


class TestEvaluation:
    def test_empty_engine_accepts(self):
        engine = PolicyEngine()
        assert _evaluate(engine, TOOL)
        assert engine.list_rejections() == []
        assert engine.last_rejection() == ""

    def test_all_pass(self):
        engine = PolicyEngine()
        engine.register_policies([_Rule("one"), _Rule("two")])
        assert _evaluate(engine, TOOL)
        assert engine.list_rejections() == []

    def test_first_failure_short_circuits(self):
        engine = PolicyEngine()
        first, failing, never = _Rule("first"), _Rule("blocker", False), _Rule("never")
        engine.register_policies([first, failing, never])
        assert not _evaluate(engine, TOOL)
        assert first.calls == 1
        assert failing.calls == 1
        assert never.calls == 0
        assert engine.list_rejections() == ["policy veto: add (blocker)"]

    def test_shields_run_after_rules(self):
        engine = PolicyEngine()
        shield = _AsyncShield("shield")
        engine.register_shields([shield])
        engine.register_policies([_Rule("blocker", False)])
        assert not _evaluate(engine, TOOL)
        assert shield.calls == 0

    def test_async_shield_veto(self):
        engine = PolicyEngine()
        engine.register_policies([_Rule("ok")])
        engine.register_shields([_AsyncShield("classifier", False)])
        assert not _evaluate(engine, TOOL)
        assert engine.last_rejection() == "prompt shield veto: add"
        assert engine.rejections[0].kind == "shield"

    def test_async_shield_pass(self):
        engine = PolicyEngine()
        engine.register_shields([_AsyncShield("classifier", True)])
        assert _evaluate(engine, TOOL)

    def test_rejections_accumulate_in_order(self):
        engine = PolicyEngine()
        engine.register_policies([FunctionRule(lambda t: t.name != "bad", "noBad")])
        for name in ("bad", "good", "bad"):
            _evaluate(engine, Tool(name=name, description="x"))
        assert engine.list_rejections() == [
            "policy veto: bad (noBad)",
            "policy veto: bad (noBad)",
        ]
        assert engine.last_rejection() == "policy veto: bad (noBad)"

    def test_rejection_is_logged(self, caplog):
        engine = PolicyEngine()
        engine.register_policies([_Rule("blocker", False)])
        with caplog.at_level("WARNING", logger="mcp_lockdown.policy"):
            _evaluate(engine, TOOL)
        assert "policy veto: add (blocker)" in caplog.text


class _FailingShield:
    """Shield whose classifier backend is down."""

    name = "classifier"

    async def evaluate(self, tool):
        raise RuntimeError("classifier unavailable")


class TestFailingChecks:
    def test_raising_rule_vetoes_tool(self, caplog):
        def broken(tool):
            raise ValueError("bad pattern")

        engine = PolicyEngine()
        after = _Rule("after")
        engine.register_policies([broken, after])
        with caplog.at_level("ERROR", logger="mcp_lockdown.policy"):
            assert _evaluate(engine, TOOL) is False
        assert engine.list_rejections() == ["policy veto: add (broken)"]
        assert after.calls == 0
        assert "bad pattern" in caplog.text

    def test_raising_shield_vetoes_tool(self):
        engine = PolicyEngine()
        engine.register_shields([_FailingShield()])
        assert _evaluate(engine, TOOL) is False
        assert engine.last_rejection() == "prompt shield veto: add"

    def test_enforce_turns_failure_into_veto(self):
        engine = PolicyEngine()
        engine.register_shields([_FailingShield()])
        with pytest.raises(PolicyVeto) as exc:
            asyncio.run(engine.enforce(TOOL))
        assert exc.value.rule_name == "classifier"

    def test_next_tool_still_evaluated(self):
        calls = []

        def flaky(tool):
            calls.append(tool.name)
            if tool.name == "add":
                raise RuntimeError("boom")
            return True

        engine = PolicyEngine()
        engine.register_policies([flaky])
        assert _evaluate(engine, TOOL) is False
        assert _evaluate(engine, Tool(name="sub", description="subtracts")) is True
        assert calls == ["add", "sub"]


class TestEnforce:
    def test_raises_policy_veto(self):
        engine = PolicyEngine()
        engine.register_policies([_Rule("blocker", False)])
        with pytest.raises(PolicyVeto) as exc:
            asyncio.run(engine.enforce(TOOL))
        assert str(exc.value) == "policy veto: add (blocker)"
        assert exc.value.tool_name == "add"
        assert exc.value.rule_name == "blocker"
        assert exc.value.exit_code == 4

    def test_passes_silently(self):
        engine = PolicyEngine()
        engine.register_policies([_Rule("ok")])
        asyncio.run(engine.enforce(TOOL))
        assert engine.rejections == []


class TestRegistration:
    def test_list_rules_then_shields(self):
        engine = PolicyEngine()
        engine.register_shields([_AsyncShield("s1")])
        engine.register_policies([_Rule("r1"), _Rule("r2")])
        assert engine.list() == ["r1", "r2", "s1"]

    def test_plain_function_named_after_function(self):
        def no_secrets(tool):
            return "secret" not in tool.description

        rule = as_rule(no_secrets)
        assert rule.name == "no_secrets"

    def test_lambda_is_anonymous(self):
        assert as_rule(lambda t: True).name == "<anonymous>"

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            as_rule(42)

    def test_rules_property_is_a_copy(self):
        engine = PolicyEngine()
        engine.register_policies([_Rule("r1")])
        engine.rules.clear()
        assert engine.list() == ["r1"]
