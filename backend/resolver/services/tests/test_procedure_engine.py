"""Tests for procedure matching and execution."""

import json
from unittest.mock import patch

import httpx
import pytest

from resolver.schemas.procedures import Procedure, ProcedureContext, StepType
from resolver.services import procedure_engine
from resolver.services.procedure_engine import (
    evaluate_condition,
    execute_procedure,
    find_matching_procedure,
    interpolate,
    matches,
)

_RealAsyncClient = httpx.AsyncClient


@pytest.fixture(autouse=True)
def mock_emit():
    with patch("resolver.services.procedure_engine.emit") as m:
        yield m


def _procedure(steps: list[dict], trigger: dict | None = None, **kwargs) -> Procedure:
    return Procedure(
        id=kwargs.pop("id", "proc-1"),
        tenant_id="tenant-1",
        name=kwargs.pop("name", "Refund"),
        trigger=trigger or {"type": "keyword", "condition": "refund, money back"},
        steps=steps,
        **kwargs,
    )


def _context(**variables) -> ProcedureContext:
    return ProcedureContext(
        tenant_id="tenant-1",
        conversation_id="conv-1",
        variables=variables,
    )


# ── interpolate ──────────────────────────────────────────────────────


class TestInterpolate:
    def test_nested_paths(self):
        result = interpolate("Hi {{ user.name }}, order {{order.id}}", {"user": {"name": "Ana"}, "order": {"id": 42}})
        assert result == "Hi Ana, order 42"

    def test_unknown_placeholder_kept(self):
        assert interpolate("Hello {{user.missing}}", {"user": {}}) == "Hello {{user.missing}}"

    def test_none_becomes_empty(self):
        assert interpolate("[{{user.id}}]", {"user": {"id": None}}) == "[]"


# ── evaluate_condition ───────────────────────────────────────────────


class TestEvaluateCondition:
    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("{{order.total}} > 100", True),
            ("{{order.total}} < 100", False),
            ("{{order.total}} >= 150", True),
            ("{{order.total}} <= 149", False),
            ("{{order.total}} == 150", True),
            ("{{order.total}} != 150", False),
            ("{{order.status}} == shipped", True),
            ("{{order.status}} != shipped", False),
            ("{{order.status}} > shipped", False),
            ("no operator here", False),
        ],
    )
    def test_expressions(self, expression, expected):
        variables = {"order": {"total": 150, "status": "shipped"}}
        assert evaluate_condition(expression, variables) is expected


# ── matching ─────────────────────────────────────────────────────────


class TestMatches:
    def test_keyword_any(self):
        assert matches(_procedure([]), "I want my MONEY BACK")

    def test_keyword_no_match(self):
        assert not matches(_procedure([]), "reset my password")

    def test_intent_phrase(self):
        procedure = _procedure([], trigger={"type": "intent", "condition": "cancel subscription"})
        assert matches(procedure, "Please cancel subscription today")

    def test_manual_never_matches(self):
        procedure = _procedure([], trigger={"type": "manual", "condition": "refund"})
        assert not matches(procedure, "refund")

    def test_json_string_trigger(self):
        procedure = _procedure([], trigger=json.dumps({"type": "keyword", "condition": "refund"}))
        assert matches(procedure, "refund please")


class TestFindMatchingProcedure:
    @pytest.mark.asyncio
    async def test_returns_first_match(self, mock_supabase):
        mock_supabase.table("procedures").execute.return_value.data = [
            {"id": "p-manual", "tenant_id": "tenant-1", "name": "Manual", "trigger": {"type": "manual", "condition": "refund"}, "steps": []},
            {"id": "p-broken", "tenant_id": "tenant-1", "name": "Broken", "trigger": "{oops", "steps": []},
            {"id": "p-refund", "tenant_id": "tenant-1", "name": "Refund", "trigger": {"type": "keyword", "condition": "refund"}, "steps": "[]"},
        ]
        with patch("resolver.services.procedure_engine.get_supabase_client", return_value=mock_supabase):
            procedure = await find_matching_procedure("tenant-1", "I need a refund")

        assert procedure.id == "p-refund"
        mock_supabase._tables["procedures"].eq.assert_any_call("enabled", True)

    @pytest.mark.asyncio
    async def test_no_match(self, mock_supabase):
        with patch("resolver.services.procedure_engine.get_supabase_client", return_value=mock_supabase):
            assert await find_matching_procedure("tenant-1", "hello") is None


# ── execution ────────────────────────────────────────────────────────


class TestExecuteProcedure:
    @pytest.mark.asyncio
    async def test_message_steps_last_message_wins(self, mock_emit):
        procedure = _procedure(
            [
                {"id": "s1", "type": "message", "config": {"template": "Hi {{user.id}}"}, "next_step": "s2"},
                {"id": "s2", "type": "message", "config": {"message": "Your refund is on its way, {{user.id}}."}},
            ]
        )
        result = await execute_procedure(procedure, _context(user={"id": "u-9"}))

        assert result.success
        assert result.final_message == "Your refund is on its way, u-9."
        assert [s.step_id for s in result.steps] == ["s1", "s2"]
        events = [c.args[1] for c in mock_emit.call_args_list]
        assert events == ["procedure.triggered", "procedure.completed"]

    @pytest.mark.asyncio
    async def test_conditional_branches(self):
        procedure = _procedure(
            [
                {
                    "id": "check",
                    "type": "conditional",
                    "config": {"condition": "{{order.total}} > 100", "true_step": "big", "false_step": "small"},
                },
                {"id": "big", "type": "message", "config": {"template": "Needs review"}},
                {"id": "small", "type": "message", "config": {"template": "Refund approved"}},
            ]
        )
        small = await execute_procedure(procedure, _context(order={"total": 20}))
        big = await execute_procedure(procedure, _context(order={"total": 500}))

        assert small.final_message == "Refund approved"
        assert big.final_message == "Needs review"

    @pytest.mark.asyncio
    async def test_camel_case_step_keys(self):
        procedure = _procedure(
            [
                {
                    "id": "check",
                    "type": "conditional",
                    "config": {"condition": "{{order.status}} == shipped", "trueStep": "shipped", "falseStep": "pending"},
                },
                {"id": "shipped", "type": "message", "config": {"template": "On its way"}, "nextStep": "done"},
                {"id": "pending", "type": "message", "config": {"template": "Not shipped yet"}},
                {"id": "done", "type": "message", "config": {"template": "Anything else?"}},
            ]
        )
        result = await execute_procedure(procedure, _context(order={"status": "shipped"}))

        assert [s.step_id for s in result.steps] == ["check", "shipped", "done"]
        assert result.final_message == "Anything else?"

    @pytest.mark.asyncio
    async def test_no_steps(self):
        result = await execute_procedure(_procedure([]), _context())
        assert not result.success
        assert result.final_message is None

    @pytest.mark.asyncio
    async def test_step_limit(self):
        procedure = _procedure([{"id": "loop", "type": "message", "config": {"template": "again"}, "next_step": "loop"}])
        result = await execute_procedure(procedure, _context())
        assert result.success
        assert len(result.steps) == procedure_engine.MAX_STEP_ITERATIONS

    @pytest.mark.asyncio
    async def test_approval_auto_granted(self):
        procedure = _procedure(
            [
                {"id": "approve", "type": "approval", "config": {"message": "Manager sign-off"}, "next_step": "done"},
                {"id": "done", "type": "message", "config": {"template": "Approved"}},
            ]
        )
        result = await execute_procedure(procedure, _context())
        assert result.steps[0].type == StepType.APPROVAL
        assert result.steps[0].output["approved"] is True
        assert result.final_message == "Approved"


class TestApiCallStep:
    @pytest.mark.asyncio
    async def test_maps_response_into_variables(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/orders/A-1"
            assert request.url.params["expand"] == "status"
            return httpx.Response(200, json={"order": {"status": "shipped"}})

        procedure = _procedure(
            [
                {
                    "id": "lookup",
                    "type": "data_lookup",
                    "config": {
                        "url": "https://shop.example.com/orders/{{order.id}}",
                        "params": {"expand": "status"},
                        "responseMapping": {"order.status": "order.status"},
                    },
                    "next_step": "reply",
                },
                {"id": "reply", "type": "message", "config": {"template": "Your order is {{order.status}}."}},
            ]
        )

        with patch(
            "resolver.services.procedure_engine.httpx.AsyncClient",
            side_effect=lambda **kw: _RealAsyncClient(transport=httpx.MockTransport(handler), **kw),
        ):
            result = await execute_procedure(procedure, _context(order={"id": "A-1"}))

        assert result.success
        assert result.final_message == "Your order is shipped."

    @pytest.mark.asyncio
    async def test_http_error_fails_procedure(self, mock_emit):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={})

        procedure = _procedure(
            [
                {"id": "call", "type": "api_call", "config": {"url": "https://api.example.com/refund", "method": "POST"}, "next_step": "reply"},
                {"id": "reply", "type": "message", "config": {"template": "Done"}},
            ]
        )

        with patch(
            "resolver.services.procedure_engine.httpx.AsyncClient",
            side_effect=lambda **kw: _RealAsyncClient(transport=httpx.MockTransport(handler), **kw),
        ):
            result = await execute_procedure(procedure, _context())

        assert not result.success
        assert "503" in result.error
        assert result.final_message is None
        assert mock_emit.call_args_list[-1].args[1] == "procedure.failed"

    @pytest.mark.asyncio
    async def test_dry_run_skips_http(self):
        procedure = _procedure(
            [
                {"id": "call", "type": "api_call", "config": {"url": "https://api.example.com/refund"}, "next_step": "reply"},
                {"id": "reply", "type": "message", "config": {"template": "Done"}},
            ]
        )
        context = _context()
        context.dry_run = True

        with patch("resolver.services.procedure_engine.httpx.AsyncClient") as mock_client:
            result = await execute_procedure(procedure, context)

        mock_client.assert_not_called()
        assert result.success
        assert result.steps[0].output["dry_run"] is True

    @pytest.mark.asyncio
    async def test_dry_run_leaves_no_audit_trail(self, mock_emit):
        procedure = _procedure(
            [
                {"id": "approve", "type": "approval", "config": {"message": "Refund over limit"}, "next_step": "reply"},
                {"id": "reply", "type": "message", "config": {"template": "Refund approved"}},
            ]
        )
        context = _context()
        context.dry_run = True

        result = await execute_procedure(procedure, context)

        assert result.success
        assert result.final_message == "Refund approved"
        mock_emit.assert_not_called()

    @pytest.mark.asyncio
    async def test_live_run_audits_approval(self, mock_emit):
        procedure = _procedure([{"id": "approve", "type": "approval", "config": {"message": "Refund over limit"}}])

        await execute_procedure(procedure, _context())

        payloads = [c.args[2] for c in mock_emit.call_args_list]
        assert [c.args[1] for c in mock_emit.call_args_list] == [
            "procedure.triggered",
            "procedure.triggered",
            "procedure.completed",
        ]
        assert payloads[1]["type"] == "approval_request"
        assert all(p["conversation_id"] == "conv-1" for p in payloads)

    @pytest.mark.asyncio
    async def test_missing_url(self):
        procedure = _procedure([{"id": "call", "type": "api_call", "config": {}}])
        result = await execute_procedure(procedure, _context())
        assert not result.success
