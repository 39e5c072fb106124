"""Planning plane: task DAG utilities, goal loading, and the task graph builder."""

from phase_orchestrator.planning.builder import TaskGraphBuilder
from phase_orchestrator.planning.goal import goal_from_mapping, load_goal
from phase_orchestrator.planning.task_graph import TaskGraph

__all__ = ["TaskGraph", "TaskGraphBuilder", "goal_from_mapping", "load_goal"]
