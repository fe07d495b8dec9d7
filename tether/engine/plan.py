"""Run plan state: created by set_plan, mutated by update_plan_step.

A plan lives on the Session only. It is discarded on reset and never
persisted.
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, Field

PlanStatus = Literal["pending", "running", "done", "blocked"]

PLAN_STATUSES: tuple[str, ...] = ("pending", "running", "done", "blocked")
MAX_PLAN_STEPS = 8

SET_PLAN = "set_plan"
UPDATE_PLAN_STEP = "update_plan_step"


class PlanError(ValueError):
    """A plan tool call could not be applied."""


class PlanStep(BaseModel):
    id: str
    title: str
    status: PlanStatus = "pending"
    notes: str | None = None


class RunPlan(BaseModel):
    steps: list[PlanStep] = Field(default_factory=list)
    created_at: float
    updated_at: float

    def find(self, step_id: str | None = None, index: int | None = None) -> PlanStep | None:
        """Locate a step by id or by 1-based position."""
        if step_id:
            for step in self.steps:
                if step.id == step_id:
                    return step
        if index is not None and 1 <= index <= len(self.steps):
            return self.steps[index - 1]
        return None

    @property
    def finished(self) -> bool:
        return bool(self.steps) and all(s.status in ("done", "blocked") for s in self.steps)


def normalize_plan_status(value: Any) -> PlanStatus:
    """Case-insensitive status; anything unknown is 'pending'."""
    if not isinstance(value, str):
        return "pending"
    lowered = value.strip().lower()
    return lowered if lowered in PLAN_STATUSES else "pending"  # type: ignore[return-value]


def normalize_plan_steps(raw: Any, max_steps: int = MAX_PLAN_STEPS) -> list[PlanStep]:
    """Accept strings or {title, status, notes} dicts; drop untitled; clamp."""
    steps: list[PlanStep] = []
    for item in raw if isinstance(raw, list) else []:
        title, status, notes = "", "pending", None
        if isinstance(item, str):
            title = item.strip()
        elif isinstance(item, dict):
            if isinstance(item.get("title"), str):
                title = item["title"].strip()
            status = normalize_plan_status(item.get("status"))
            if isinstance(item.get("notes"), str) and item["notes"].strip():
                notes = item["notes"].strip()
        if not title:
            continue
        steps.append(PlanStep(id=f"step-{len(steps) + 1}", title=title, status=status, notes=notes))
        if len(steps) >= max_steps:
            break
    return steps


def build_run_plan(raw_steps: Any, existing: RunPlan | None = None, now: float | None = None) -> RunPlan:
    """New plan from raw steps; created_at survives from an existing plan."""
    now = time.time() if now is None else now
    steps = _mark_running(normalize_plan_steps(raw_steps))
    return RunPlan(steps=steps, created_at=existing.created_at if existing else now, updated_at=now)


def update_plan_step(
    plan: RunPlan,
    step_id: str | None = None,
    index: int | None = None,
    status: Any = None,
    notes: str | None = None,
    now: float | None = None,
) -> RunPlan:
    """Return a copy of plan with one step updated. Raises PlanError if not found."""
    target = plan.find(step_id, index)
    if target is None:
        raise PlanError(f"No plan step matches id={step_id!r} index={index!r}")

    steps = []
    for step in plan.steps:
        if step.id == target.id:
            changes: dict[str, Any] = {}
            if status is not None:
                changes["status"] = normalize_plan_status(status)
            if isinstance(notes, str) and notes.strip():
                changes["notes"] = notes.strip()
            step = step.model_copy(update=changes)
        steps.append(step)
    return plan.model_copy(
        update={"steps": _mark_running(steps), "updated_at": time.time() if now is None else now}
    )


def _mark_running(steps: list[PlanStep]) -> list[PlanStep]:
    """The first unfinished step is implicitly running when nothing else is."""
    if any(s.status == "running" for s in steps):
        return steps
    out = list(steps)
    for i, step in enumerate(out):
        if step.status == "pending":
            out[i] = step.model_copy(update={"status": "running"})
            break
    return out


def apply_plan_tool(plan: RunPlan | None, name: str, args: dict[str, Any]) -> tuple[RunPlan | None, dict[str, Any]]:
    """Execute set_plan / update_plan_step. Returns (new plan, tool result)."""
    if name == SET_PLAN:
        new_plan = build_run_plan(args.get("steps"), existing=plan)
        if not new_plan.steps:
            return plan, {"success": False, "error": "set_plan requires at least one titled step"}
        return new_plan, {"success": True, "plan": new_plan.model_dump()}

    if name == UPDATE_PLAN_STEP:
        if plan is None:
            return None, {"success": False, "error": "No plan yet. Call set_plan first."}
        index = args.get("index")
        try:
            updated = update_plan_step(
                plan,
                step_id=args.get("step_id") or args.get("id"),
                index=int(index) if index is not None else None,
                status=args.get("status"),
                notes=args.get("notes"),
            )
        except (PlanError, TypeError, ValueError) as e:
            return plan, {"success": False, "error": str(e)}
        return updated, {"success": True, "plan": updated.model_dump()}

    raise PlanError(f"Not a plan tool: {name}")


def plan_prompt(plan: RunPlan | None) -> str:
    """System-prompt section describing the plan state."""
    if plan is None or not plan.steps:
        return (
            "Before your first browser action, call set_plan with up to "
            f"{MAX_PLAN_STEPS} short steps. Mark progress with update_plan_step "
            "(status: running, done or blocked)."
        )
    lines = ["Current plan:"]
    for i, step in enumerate(plan.steps, 1):
        line = f"{i}. [{step.status}] {step.title} (id: {step.id})"
        if step.notes:
            line += f" - {step.notes}"
        lines.append(line)
    lines.append("Update steps with update_plan_step as you make progress.")
    return "\n".join(lines)


PLAN_TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": SET_PLAN,
        "description": f"Create or replace the run plan (at most {MAX_PLAN_STEPS} steps).",
        "input_schema": {
            "type": "object",
            "properties": {
                "steps": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "title": {"type": "string"},
                            "status": {"type": "string", "enum": list(PLAN_STATUSES)},
                            "notes": {"type": "string"},
                        },
                        "required": ["title"],
                    },
                }
            },
            "required": ["steps"],
        },
    },
    {
        "name": UPDATE_PLAN_STEP,
        "description": "Update the status or notes of one plan step, by step_id or 1-based index.",
        "input_schema": {
            "type": "object",
            "properties": {
                "step_id": {"type": "string"},
                "index": {"type": "integer", "minimum": 1},
                "status": {"type": "string", "enum": list(PLAN_STATUSES)},
                "notes": {"type": "string"},
            },
            "required": ["status"],
        },
    },
]
