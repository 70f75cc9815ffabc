"""
Sub-workflow node executor.

Validates the child definition and the nesting depth; the engine runs
the child instance.
"""

from typing import Any, Dict

from phaseflow.config import settings
from phaseflow.engine.errors import DefinitionNotFound, ExecutorError, RecursionLimitExceeded
from phaseflow.engine.models import NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, NodeExecutor, template_scope


class SubWorkflowExecutor(NodeExecutor):
    """
    Config:
        workflow_id: Child definition id
        version: Child definition version (default latest)
        variables: Extra seed variables (values are templates)
        inherit_variables: Seed with a copy of the parent's variables
            when the node has no input mappings (default True)
        timeout_ms: Deadline for the whole child run

    Output:
        {"instance_id", "status", "outputs"}; the child's declared
        outputs are exported into the parent.
    """

    node_types = (NodeType.SUBWORKFLOW,)

    def __init__(self, max_depth: int = 0):
        self.max_depth = max_depth or settings.MAX_SUBWORKFLOW_DEPTH

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        workflow_id = node.config.get("workflow_id")
        if not workflow_id:
            raise ExecutorError("Sub-workflow node needs 'workflow_id'", node.id)

        if scope.depth + 1 > self.max_depth:
            raise RecursionLimitExceeded(
                f"Sub-workflow nesting depth {scope.depth + 1} exceeds limit {self.max_depth}",
                node.id,
            )

        version = node.config.get("version")
        definition = await scope.engine.find_definition(workflow_id, version)
        if definition is None:
            raise DefinitionNotFound(
                f"Sub-workflow '{workflow_id}' (version {version or 'latest'}) not found", node.id
            )

        if node.inputs or not node.config.get("inherit_variables", True):
            seed: Dict[str, Any] = dict(resolved_input)
        else:
            seed = scope.context.seed_variables()
        extra = node.config.get("variables") or {}
        seed.update(scope.resolver.render_value(extra, template_scope(resolved_input, scope), node.id))

        timeout_ms = node.config.get("timeout_ms", settings.SUBWORKFLOW_TIMEOUT_MS)
        output = await scope.engine.run_subworkflow(scope, node, definition, seed, timeout_ms)

        variables = dict(output.get("outputs", {}))
        variables.update(self.output_variables(node, output))
        return ExecutorResult(output=output, variables=variables)
