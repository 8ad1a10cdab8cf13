"""Dependency graph over the steps of one workflow.

Steps live in an arena indexed by id; edges are kept as explicit adjacency
lists in both directions so eligibility and skip propagation are simple
lookups.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable

from treeflow.core.models import StepStatus, WorkflowStep

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Invalid step graph."""

    pass


class CyclicDependencyError(SchedulerError):
    """Circular dependency detected in the step graph."""

    def __init__(self, members: list[str]):
        self.members = members
        super().__init__(
            f"Circular dependency detected among steps: {members}. "
            f"Check depends_on configuration for these steps."
        )


class DependencyNotFoundError(SchedulerError):
    """A declared dependency does not exist."""

    pass


class DuplicateStepError(SchedulerError):
    """Two steps share an id."""

    pass


class StepGraph:
    """Validated DAG of workflow steps.

    Construction raises on duplicate ids, unknown dependencies, or cycles,
    so an instance is always executable.
    """

    def __init__(self, steps: Iterable[WorkflowStep]):
        self._steps: dict[str, WorkflowStep] = {}
        # step -> steps that depend on it
        self._dependents: dict[str, list[str]] = {}
        # step -> its dependencies
        self._dependencies: dict[str, list[str]] = {}

        for step in steps:
            if step.id in self._steps:
                raise DuplicateStepError(f"Duplicate step id: '{step.id}'")
            self._steps[step.id] = step
            self._dependents[step.id] = []
            self._dependencies[step.id] = []

        for step in self._steps.values():
            for dep_id in dict.fromkeys(step.depends_on):
                if dep_id not in self._steps:
                    raise DependencyNotFoundError(
                        f"Step '{step.id}' depends on '{dep_id}' which doesn't exist. "
                        f"Available steps: {sorted(self._steps)}"
                    )
                self._dependents[dep_id].append(step.id)
                self._dependencies[step.id].append(dep_id)

        self._order = self._topological_order()
        logger.debug(
            f"Built step graph: {len(self._steps)} steps, "
            f"{sum(len(deps) for deps in self._dependencies.values())} edges"
        )

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm; raises CyclicDependencyError if no order exists."""
        in_degree = {node: len(deps) for node, deps in self._dependencies.items()}
        queue = deque(node for node, deg in in_degree.items() if deg == 0)
        order: list[str] = []

        while queue:
            node = queue.popleft()
            order.append(node)
            for dependent in self._dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(self._steps):
            raise CyclicDependencyError(sorted(n for n, deg in in_degree.items() if deg > 0))
        return order

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, step_id: str) -> WorkflowStep:
        return self._steps[step_id]

    def topological_order(self) -> list[str]:
        return list(self._order)

    def dependencies(self, step_id: str) -> list[str]:
        return list(self._dependencies[step_id])

    def dependents(self, step_id: str) -> list[str]:
        return list(self._dependents[step_id])

    def ready(self) -> list[WorkflowStep]:
        """Pending steps whose dependencies have all completed, in topological order."""
        return [
            self._steps[step_id]
            for step_id in self._order
            if self._steps[step_id].status == StepStatus.PENDING
            and all(
                self._steps[dep].status == StepStatus.COMPLETED
                for dep in self._dependencies[step_id]
            )
        ]

    def transitive_dependents(self, step_id: str) -> list[str]:
        """Every step that depends on step_id directly or indirectly (BFS order)."""
        seen: set[str] = set()
        result: list[str] = []
        queue = deque(self._dependents[step_id])
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            result.append(node)
            queue.extend(self._dependents[node])
        return result
