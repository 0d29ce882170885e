"""
Step dependency resolution.

Pure functions over step-like objects exposing ``id``, ``status``,
``is_parallel``, ``dependency_mode`` and ``dependency_ids`` (WorkflowStep
rows satisfy this). No database access; callers load the ticket's step set
once and pass it in.

Rules:
    - A step with ``is_parallel`` set is not sequence-gated: it may always proceed.
    - A prerequisite counts as satisfied when it is COMPLETED or CLOSED.
    - ``all``: every prerequisite satisfied.  ``any``: at least one satisfied.
    - Zero prerequisites always passes, in either mode.
    - Ids that are not in the ticket's step set are ignored.

Usage:
    from ticketflow.services.dependency_resolver import evaluate_step_dependencies

    check = evaluate_step_dependencies(step, ticket.steps)
    if not check.can_proceed:
        ...
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from ticketflow.models.ticket import STEP_DONE_STATUSES


@dataclass(frozen=True)
class DependencyCheck:
    """Outcome of evaluating one step's prerequisites."""

    step_id: int
    can_proceed: bool
    satisfied: int
    total: int
    mode: str
    incomplete_step_ids: tuple[int, ...] = field(default_factory=tuple)
    exempt: bool = False

    @property
    def message(self) -> str:
        if self.exempt or self.total == 0 or self.can_proceed:
            return ""
        if self.mode == "any":
            return f"At least one of {self.total} dependencies must be completed."
        remaining = self.total - self.satisfied
        return f"All {self.total} dependencies must be completed. {remaining} remaining."

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "can_proceed": self.can_proceed,
            "satisfied": self.satisfied,
            "total": self.total,
            "mode": self.mode,
            "incomplete_step_ids": list(self.incomplete_step_ids),
            "exempt": self.exempt,
            "message": self.message,
            "summary": format_dependency_status(self),
        }


def evaluate_step_dependencies(step, all_steps: Iterable) -> DependencyCheck:
    """Decide whether ``step`` may proceed given its ticket's step set."""
    mode = step.dependency_mode or "all"

    if step.is_parallel:
        return DependencyCheck(
            step_id=step.id, can_proceed=True, satisfied=0, total=0, mode=mode, exempt=True,
        )

    by_id = {s.id: s for s in all_steps}
    referenced = [by_id[dep_id] for dep_id in step.dependency_ids if dep_id in by_id]

    total = len(referenced)
    done = [s for s in referenced if s.status in STEP_DONE_STATUSES]
    incomplete = tuple(s.id for s in referenced if s.status not in STEP_DONE_STATUSES)

    if total == 0:
        can_proceed = True
    elif mode == "any":
        can_proceed = len(done) > 0
    else:
        can_proceed = len(done) == total

    return DependencyCheck(
        step_id=step.id,
        can_proceed=can_proceed,
        satisfied=len(done),
        total=total,
        mode=mode,
        incomplete_step_ids=incomplete,
    )


def all_steps_completed(steps: Iterable) -> bool:
    """True when every step is COMPLETED (CLOSED does not count). Empty → True."""
    return all(s.status == "COMPLETED" for s in steps)


def format_dependency_status(check: DependencyCheck) -> str:
    """Short status line shown to requesters, e.g. ``1/2 dependencies completed``."""
    if check.exempt:
        return "Runs in parallel"
    if check.total == 0:
        return "No dependencies"
    text = f"{check.satisfied}/{check.total} dependencies completed"
    if check.mode == "any":
        text += " (any one required)"
    return text


def would_create_cycle(
    step_id: int,
    new_dependency_ids: Iterable[int],
    edges: Mapping[int, Iterable[int]],
) -> bool:
    """
    Check whether making ``step_id`` depend on ``new_dependency_ids`` closes a loop.

    ``edges`` maps step id → ids it already depends on; the current edges of
    ``step_id`` itself are replaced by ``new_dependency_ids``. Uses iterative
    DFS from each new prerequisite, walking its own prerequisite chains.
    """
    graph = {k: list(v) for k, v in edges.items()}
    graph[step_id] = list(new_dependency_ids)

    for start in graph[step_id]:
        if start == step_id:
            return True
        visited = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current == step_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            stack.extend(graph.get(current, ()))
    return False
