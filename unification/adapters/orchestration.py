"""Orchestration adapter: coordinates several existing orchestrators."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from unification.adapters.base import BaseAdapter
from unification.config import AdapterSettings
from unification.events import maybe_await
from unification.logger import logger
from unification.ports import (
    CapabilityKind,
    SupportsCanHandle,
    SupportsExecute,
    SupportsTaskTypes,
    task_type,
    wrapped_health,
)


DEFAULT_PRIORITY = 10


@dataclass
class CoordinationRule:
    rule_id: str
    condition: Callable[[Any], bool]
    action: Optional[Callable[[Any], Any]] = None
    applied: int = 0


class OrchestrationAdapter(BaseAdapter):
    """Routes tasks to registered orchestrators by priority.

    Lower priority numbers win. Orchestrators are never modified; they are
    asked whether they can handle a task and asked to execute it.
    """

    kind = CapabilityKind.ORCHESTRATOR

    def __init__(self, name: str = "orchestration", settings: Optional[AdapterSettings] = None):
        super().__init__(name=name, settings=settings)
        self.coordination_rules: Dict[str, CoordinationRule] = {}
        self.coordinations: List[Dict[str, Any]] = []

    @property
    def default_events(self):
        return self.settings.orchestration_events

    def _initial_metrics(self) -> Dict[str, Any]:
        return {
            "tasks_coordinated": 0,
            "executions_combined": 0,
            "conflicts_resolved": 0,
            "rules_applied": 0,
            "events_observed": 0,
            "errors": 0,
        }

    def _reset_state(self) -> None:
        self.coordination_rules.clear()
        self.coordinations.clear()

    # -- registration -------------------------------------------------------

    def register_orchestrator(self, name: str, orchestrator: Any, priority: int = DEFAULT_PRIORITY) -> bool:
        return self.register(name, orchestrator, {"priority": priority})

    @property
    def orchestrators(self) -> Dict[str, Any]:
        return {name: ref.instance for name, ref in self._systems.items()}

    def priority_of(self, name: str) -> int:
        ref = self._systems.get(name)
        if ref is None:
            return DEFAULT_PRIORITY
        return ref.options.get("priority", DEFAULT_PRIORITY)

    def add_coordination_rule(
        self,
        rule_id: str,
        condition: Callable[[Any], bool],
        action: Optional[Callable[[Any], Any]] = None,
    ) -> bool:
        if not rule_id or not callable(condition):
            logger.warning(f"Rejected coordination rule {rule_id!r}: condition must be callable")
            return False
        if action is not None and not callable(action):
            logger.warning(f"Rejected coordination rule {rule_id!r}: action must be callable")
            return False
        self.coordination_rules[rule_id] = CoordinationRule(rule_id, condition, action)
        return True

    def remove_coordination_rule(self, rule_id: str) -> bool:
        return self.coordination_rules.pop(rule_id, None) is not None

    # -- routing ------------------------------------------------------------

    def determine_involvement(self, task: Any) -> List[str]:
        """Names of orchestrators able to handle ``task``, best priority first."""
        involved = []
        for name, ref in self._systems.items():
            orchestrator = ref.instance
            try:
                if isinstance(orchestrator, SupportsCanHandle):
                    if orchestrator.can_handle(task):
                        involved.append(name)
                elif isinstance(orchestrator, SupportsTaskTypes):
                    if task_type(task) in orchestrator.supported_types:
                        involved.append(name)
            except Exception as e:
                logger.error(f"Orchestrator '{name}' failed involvement check: {e}")
        return sorted(involved, key=self.priority_of)

    async def coordinate_task(self, task_id: str, task: Any) -> Dict[str, Any]:
        """Work out which orchestrators share ``task`` and apply coordination rules."""
        involved = self.determine_involvement(task)
        coordinated = len(involved) > 1
        applied: List[str] = []

        if self.enabled and coordinated:
            for rule in list(self.coordination_rules.values()):
                try:
                    if not rule.condition(task):
                        continue
                    if rule.action is not None:
                        await maybe_await(rule.action(task))
                    rule.applied += 1
                    applied.append(rule.rule_id)
                except Exception as e:
                    self.metrics["errors"] += 1
                    logger.error(f"Coordination rule '{rule.rule_id}' failed: {e}")

        record = {
            "task_id": task_id,
            "involved": involved,
            "coordinated": coordinated,
            "rules": applied,
        }
        if coordinated:
            self._record(lambda: self._record_coordination(record), "task coordination")
        return record

    def _record_coordination(self, record: Dict[str, Any]) -> None:
        self.metrics["tasks_coordinated"] += 1
        self.metrics["rules_applied"] += len(record["rules"])
        self.coordinations.append(record)
        self.emit("unified:task:coordinated", record)

    async def execute(self, task: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        """Execute ``task`` on the best-priority orchestrator that can run it.

        Falls back to the first registered orchestrator able to execute when
        none claims the task.
        """
        candidates = self.determine_involvement(task)
        candidates += [name for name in self._systems if name not in candidates]

        for name in candidates:
            orchestrator = self._systems[name].instance
            if isinstance(orchestrator, SupportsExecute):
                result = await maybe_await(orchestrator.execute(task, options or {}))
                self._record(lambda: self._record_execution(name, task), "unified execution")
                return result

        logger.warning(f"{self.name}: no orchestrator can execute task")
        return None

    def _record_execution(self, name: str, task: Any) -> None:
        self.metrics["executions_combined"] += 1
        self._systems[name].bump("executions")
        self.emit("unified:task:executed", {"orchestrator": name, "task": task})

    def resolve_conflict(self, first: str, second: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Pick the winner between two orchestrators; lower priority number wins."""
        winner = first if self.priority_of(first) <= self.priority_of(second) else second
        self._record(self._count_conflict, "conflict resolution")
        logger.debug(f"Conflict {first} vs {second} ({context or {}}) resolved for {winner}")
        return winner

    def _count_conflict(self) -> None:
        self.metrics["conflicts_resolved"] += 1

    # -- queries ------------------------------------------------------------

    def get_orchestrator_status(self, name: str) -> Optional[Dict[str, Any]]:
        ref = self._systems.get(name)
        if ref is None:
            return None
        try:
            healthy = wrapped_health(ref.instance)
        except Exception as e:
            logger.error(f"Health query on orchestrator '{name}' failed: {e}")
            healthy = False
        return {
            "name": name,
            "priority": self.priority_of(name),
            "healthy": healthy,
            "executions": ref.counters.get("executions", 0),
            "registered_at": ref.registered_at.isoformat(),
        }

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **super().get_metrics(),
            "orchestrators": len(self._systems),
            "coordination_rules": len(self.coordination_rules),
        }

    def is_healthy(self) -> Dict[str, Any]:
        health = super().is_healthy()
        health["orchestrator_count"] = len(self._systems)
        return health
