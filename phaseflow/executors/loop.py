"""
Loop node executor.

Validates the loop parameters; the engine runs the body.
"""

from typing import Any, Dict

from phaseflow.config import settings
from phaseflow.engine.errors import ExecutorError
from phaseflow.engine.models import NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, LoopPlan, NodeExecutor, template_scope


LOOP_MODES = ("count", "while", "for_each")


class LoopExecutor(NodeExecutor):
    """
    Config:
        mode: count | while | for_each
        count: Iterations for count mode (>= 1)
        condition: Predicate checked before each while iteration
        collection: Path of the list for for_each (or input["collection"])
        iterator_variable: Receives the item (for_each) or the index
        index_variable: Optionally receives the index
        max_iterations: Safety limit
    """

    node_types = (NodeType.LOOP,)

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        plan = self.plan(node, resolved_input, scope)
        output = await scope.engine.run_loop(scope, node, plan)
        return ExecutorResult(output=output, variables=self.output_variables(node, output))

    def plan(self, node: WorkflowNode, resolved_input: Dict[str, Any], scope: ExecutionScope) -> LoopPlan:
        config = node.config
        mode = config.get("mode", "for_each" if "collection" in config else "count")
        if mode not in LOOP_MODES:
            raise ExecutorError(f"Unknown loop mode '{mode}'", node.id)

        max_iterations = int(config.get("max_iterations", settings.DEFAULT_MAX_LOOP_ITERATIONS))
        if max_iterations < 1:
            raise ExecutorError("max_iterations must be at least 1", node.id)

        plan = LoopPlan(
            mode=mode,
            iterator_variable=config.get("iterator_variable", "item" if mode == "for_each" else "index"),
            index_variable=config.get("index_variable"),
            max_iterations=max_iterations,
        )

        if mode == "count":
            try:
                count = int(config.get("count", resolved_input.get("count", 0)))
            except (TypeError, ValueError) as e:
                raise ExecutorError(f"Invalid loop count: {e}", node.id) from e
            if count < 1:
                raise ExecutorError("Loop count must be at least 1", node.id)
            if count > max_iterations:
                raise ExecutorError(f"Loop count {count} exceeds max_iterations {max_iterations}", node.id)
            plan.count = count

        elif mode == "while":
            condition = config.get("condition")
            if not condition:
                raise ExecutorError("While loop needs a condition", node.id)
            plan.condition = condition

        else:
            items = self._collection(node, resolved_input, scope)
            if len(items) > max_iterations:
                raise ExecutorError(
                    f"Collection of {len(items)} items exceeds max_iterations {max_iterations}", node.id
                )
            plan.items = items

        return plan

    @staticmethod
    def _collection(node: WorkflowNode, resolved_input: Dict[str, Any], scope: ExecutionScope) -> list:
        source = node.config.get("collection")
        if source is None:
            if "collection" not in resolved_input:
                raise ExecutorError("for_each loop needs a collection", node.id)
            items: Any = resolved_input["collection"]
        elif isinstance(source, str):
            items = scope.resolver.lookup(source, template_scope(resolved_input, scope), node.id)
        else:
            items = source

        if not isinstance(items, (list, tuple)):
            raise ExecutorError(
                f"Loop collection must be a list, got {type(items).__name__}", node.id
            )
        return list(items)
