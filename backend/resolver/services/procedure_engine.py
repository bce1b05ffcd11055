"""Procedure engine: matches scripted workflows to messages and runs them.

A procedure is a small state machine of steps (message, api_call,
data_lookup, conditional, approval). Execution starts at the first step and
follows ``next_step`` links, or the branch picked by a conditional step.
"""

import asyncio
import logging
import re
from typing import Any

import httpx
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from ..core.config import get_settings
from ..core.supabase_client import get_supabase_client
from ..schemas.procedures import (
    Procedure,
    ProcedureContext,
    ProcedureResult,
    ProcedureStep,
    StepResult,
    StepType,
    TriggerType,
)
from .audit import AuditEvent, emit

logger = logging.getLogger(__name__)

MAX_STEP_ITERATIONS = 50

_PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
_CONDITION_RE = re.compile(r"^(.+?)\s*(>=|<=|!=|==|>|<)\s*(.+?)$")


# ── Templates and conditions ─────────────────────────────────────────


def _lookup(variables: dict[str, Any], path: str) -> Any:
    value: Any = variables
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            raise KeyError(path)
    return value


def interpolate(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{{key}}`` and ``{{nested.key}}`` placeholders.

    Unknown placeholders are left as written.
    """

    def _replace(match: re.Match) -> str:
        path = match.group(1).strip()
        try:
            value = _lookup(variables, path)
        except KeyError:
            return match.group(0)
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_replace, template)


def _set_path(variables: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    target = variables
    for key in parents:
        target = target.setdefault(key, {})
    target[leaf] = value


def evaluate_condition(expression: str, variables: dict[str, Any]) -> bool:
    """Evaluate a comparison like ``{{order.total}} > 100``.

    Numeric operands support > < >= <= == !=; other operands only == and !=.
    """
    match = _CONDITION_RE.match(interpolate(expression, variables).strip())
    if not match:
        return False
    left, operator, right = (part.strip() for part in match.groups())

    try:
        lhs, rhs = float(left), float(right)
    except ValueError:
        if operator == "==":
            return left == right
        if operator == "!=":
            return left != right
        return False

    return {
        ">": lhs > rhs,
        "<": lhs < rhs,
        ">=": lhs >= rhs,
        "<=": lhs <= rhs,
        "==": lhs == rhs,
        "!=": lhs != rhs,
    }[operator]


def _option(step: ProcedureStep, name: str) -> Any:
    """Read a step config key written in snake_case or camelCase."""
    if name in step.config:
        return step.config[name]
    return step.config.get(to_camel(name))


def _audit(context: ProcedureContext, event: AuditEvent, payload: dict[str, Any]) -> None:
    """Record a procedure lifecycle event; dry runs leave no audit trail."""
    if context.dry_run:
        return
    emit(context.tenant_id, event, {**payload, "conversation_id": context.conversation_id})


# ── Step executors ───────────────────────────────────────────────────


async def _run_message(step: ProcedureStep, context: ProcedureContext) -> StepResult:
    template = step.config.get("template") or step.config.get("message") or ""
    return StepResult(
        step_id=step.id,
        type=step.type,
        success=True,
        output={"message": interpolate(template, context.variables)},
    )


async def _run_http(step: ProcedureStep, context: ProcedureContext, method: str) -> StepResult:
    """Call an external HTTP endpoint and map its JSON response into variables.

    Step config: ``url`` (templated), ``params`` (templated values, sent as
    query string for GET and JSON body otherwise), ``headers`` and
    ``response_mapping`` (dotted response path to variable name).
    """
    if context.dry_run:
        return StepResult(
            step_id=step.id,
            type=step.type,
            success=True,
            output={"dry_run": True, "message": "API call skipped (dry run)"},
        )

    url = step.config.get("url")
    if not url:
        return StepResult(step_id=step.id, type=step.type, success=False, error="Missing url in step config")

    params = {k: interpolate(str(v), context.variables) for k, v in (step.config.get("params") or {}).items()}
    headers = {k: interpolate(str(v), context.variables) for k, v in (step.config.get("headers") or {}).items()}

    try:
        async with httpx.AsyncClient(timeout=get_settings().procedure_http_timeout) as client:
            response = await client.request(
                method,
                interpolate(url, context.variables),
                params=params if method == "GET" else None,
                json=params if method != "GET" and params else None,
                headers=headers,
            )
        try:
            body = response.json()
        except ValueError:
            body = {}
    except httpx.HTTPError as e:
        return StepResult(step_id=step.id, type=step.type, success=False, error=f"API call failed: {e}")

    mapped: dict[str, Any] = {}
    for json_path, var_name in (_option(step, "response_mapping") or {}).items():
        try:
            value = _lookup(body, json_path)
        except KeyError:
            continue
        mapped[var_name] = value
        _set_path(context.variables, var_name, value)

    return StepResult(
        step_id=step.id,
        type=step.type,
        success=response.is_success,
        output={"status": response.status_code, "mapped": mapped},
        error=None if response.is_success else f"API returned {response.status_code}",
    )


async def _run_api_call(step: ProcedureStep, context: ProcedureContext) -> StepResult:
    return await _run_http(step, context, str(step.config.get("method", "GET")).upper())


async def _run_data_lookup(step: ProcedureStep, context: ProcedureContext) -> StepResult:
    return await _run_http(step, context, "GET")


async def _run_conditional(step: ProcedureStep, context: ProcedureContext) -> StepResult:
    condition = step.config.get("condition", "")
    result = evaluate_condition(condition, context.variables)
    return StepResult(
        step_id=step.id,
        type=step.type,
        success=True,
        output={
            "condition": condition,
            "result": result,
            "next_step": _option(step, "true_step" if result else "false_step"),
        },
    )


async def _run_approval(step: ProcedureStep, context: ProcedureContext) -> StepResult:
    # Approvals are granted immediately; there is no pending-approval queue yet
    message = step.config.get("message", "Approval required")
    _audit(
        context,
        AuditEvent.PROCEDURE_TRIGGERED,
        {"type": "approval_request", "message": message, "approvers": step.config.get("approvers")},
    )
    return StepResult(
        step_id=step.id,
        type=step.type,
        success=True,
        output={"approved": True, "auto_approved": True, "message": message},
    )


_EXECUTORS = {
    StepType.MESSAGE: _run_message,
    StepType.API_CALL: _run_api_call,
    StepType.DATA_LOOKUP: _run_data_lookup,
    StepType.CONDITIONAL: _run_conditional,
    StepType.APPROVAL: _run_approval,
}


# ── Execution ────────────────────────────────────────────────────────


async def execute_procedure(procedure: Procedure, context: ProcedureContext) -> ProcedureResult:
    """Run ``procedure`` step by step.

    The last message step's text becomes the final message. A failing step
    stops execution with ``success=False``. At most 50 steps are executed.
    """
    if not procedure.steps:
        return ProcedureResult(
            procedure_id=procedure.id,
            procedure_name=procedure.name,
            success=False,
            error="Procedure has no steps",
        )

    steps_by_id = {step.id: step for step in procedure.steps}
    current: ProcedureStep | None = procedure.steps[0]
    results: list[StepResult] = []
    final_message: str | None = None

    _audit(
        context,
        AuditEvent.PROCEDURE_TRIGGERED,
        {"procedure_id": procedure.id, "procedure_name": procedure.name},
    )

    while current is not None and len(results) < MAX_STEP_ITERATIONS:
        result = await _EXECUTORS[current.type](current, context)
        results.append(result)

        if not result.success:
            _audit(
                context,
                AuditEvent.PROCEDURE_FAILED,
                {"procedure_id": procedure.id, "step_id": current.id, "error": result.error},
            )
            return ProcedureResult(
                procedure_id=procedure.id,
                procedure_name=procedure.name,
                success=False,
                steps=results,
                error=f'Step "{current.id}" failed: {result.error}',
            )

        if current.type == StepType.MESSAGE and result.output.get("message"):
            final_message = result.output["message"]

        if current.type == StepType.CONDITIONAL:
            next_id = result.output.get("next_step")
        else:
            next_id = current.next_step
        current = steps_by_id.get(next_id) if next_id else None

    _audit(
        context,
        AuditEvent.PROCEDURE_COMPLETED,
        {"procedure_id": procedure.id, "procedure_name": procedure.name, "steps_executed": len(results)},
    )

    return ProcedureResult(
        procedure_id=procedure.id,
        procedure_name=procedure.name,
        success=True,
        steps=results,
        final_message=final_message,
    )


# ── Matching ─────────────────────────────────────────────────────────


def matches(procedure: Procedure, text: str) -> bool:
    """Whether the procedure's trigger fires for ``text``. Manual triggers never do."""
    trigger = procedure.trigger
    if trigger is None or not trigger.condition.strip():
        return False

    lowered = text.lower()
    if trigger.type == TriggerType.KEYWORD:
        keywords = [k.strip().lower() for k in trigger.condition.split(",")]
        return any(k and k in lowered for k in keywords)
    if trigger.type == TriggerType.INTENT:
        return trigger.condition.strip().lower() in lowered
    return False


def _fetch_procedure_rows(tenant_id: str) -> list[dict]:
    result = (
        get_supabase_client()
        .table("procedures")
        .select("*")
        .eq("tenant_id", tenant_id)
        .eq("enabled", True)
        .limit(100)
        .execute()
    )
    return result.data or []


async def find_matching_procedure(tenant_id: str, text: str) -> Procedure | None:
    """Return the first enabled procedure of the tenant whose trigger matches ``text``."""
    rows = await asyncio.to_thread(_fetch_procedure_rows, tenant_id)
    for row in rows:
        try:
            procedure = Procedure.model_validate(row)
        except (ValidationError, ValueError):
            logger.warning("Skipping malformed procedure %s for tenant %s", row.get("id"), tenant_id)
            continue
        if matches(procedure, text):
            return procedure
    return None
