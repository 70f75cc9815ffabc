"""
Conditional node executor.
"""

from typing import Any, Dict

from phaseflow.engine.errors import ExecutorError
from phaseflow.engine.models import NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, NodeExecutor, template_scope


class ConditionalExecutor(NodeExecutor):
    """
    Chooses a branch label. Pure: reads the context, writes nothing.

    Config (one of):
        condition: Predicate; the label is "true" or "false"
        branches: [{"label", "condition"}, ...]; the first match wins,
            otherwise ``default`` (a label) if given

    The engine follows the outgoing edge carrying the label.
    """

    node_types = (NodeType.CONDITIONAL,)

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        names = {"input": resolved_input}
        eval_scope = template_scope(resolved_input, scope)
        resolver = scope.resolver

        if "condition" in node.config:
            passed = resolver.evaluate_condition(node.config["condition"], eval_scope, names, node.id)
            label = "true" if passed else "false"
            return ExecutorResult(output={"result": passed, "branch": label}, branch=label)

        branches = node.config.get("branches")
        if not branches:
            raise ExecutorError("Conditional node needs 'condition' or 'branches'", node.id)

        for branch in branches:
            if resolver.evaluate_condition(branch["condition"], eval_scope, names, node.id):
                label = str(branch["label"])
                return ExecutorResult(output={"result": True, "branch": label}, branch=label)

        label = node.config.get("default")
        return ExecutorResult(output={"result": False, "branch": label}, branch=label)
