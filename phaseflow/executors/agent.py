"""
Agent node executor (planning, writing and quality-gate variants).
"""

from typing import Any, Dict
import json
import logging

from phaseflow.engine.errors import ExecutorError
from phaseflow.engine.models import AGENT_NODE_TYPES, NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, NodeExecutor, template_scope


logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are {agent}, an AI assistant."

# Config keys that are not forwarded to the agent capability
_ENGINE_KEYS = {"prompt", "system_prompt", "gate_condition", "on_gate_fail", "output_variable"}


class AgentExecutor(NodeExecutor):
    """
    Calls the injected agent capability with a rendered prompt.

    Config:
        prompt: Prompt template (``{{path}}`` placeholders)
        system_prompt: Optional system prompt template
        agent: Agent name forwarded to the capability
        gate_condition: Predicate over ``output``, ``parsed``, ``metadata``
            (gate nodes only)
        on_gate_fail: "approval" (default) or "fail"

    Output:
        ``{"text", "metadata", "parsed"}`` where ``parsed`` is the text
        decoded as JSON, or None when it is not JSON.
    """

    node_types = AGENT_NODE_TYPES

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        agent = scope.capabilities.agent
        if agent is None:
            raise ExecutorError("No agent capability configured", node.id)

        render_scope = template_scope(resolved_input, scope)
        template = node.config.get("prompt") or resolved_input.get("prompt")
        if not template:
            raise ExecutorError(f"Agent node '{node.display_name}' has no prompt", node.id)
        prompt = scope.resolver.render(str(template), render_scope, node.id)

        agent_name = node.config.get("agent", node.display_name)
        system_template = node.config.get("system_prompt") or DEFAULT_SYSTEM_PROMPT.format(agent=agent_name)
        call_config = {k: v for k, v in node.config.items() if k not in _ENGINE_KEYS}
        call_config["agent"] = agent_name
        call_config["variant"] = node.type.value
        call_config["system_prompt"] = scope.resolver.render(system_template, render_scope, node.id)

        logger.info(f"Invoking agent '{agent_name}' for node {node.id}")
        try:
            response = await agent.invoke(prompt, call_config)
        except ExecutorError:
            raise
        except Exception as e:
            raise ExecutorError(f"Agent call failed: {e}", node.id) from e

        output = {
            "text": response.text,
            "metadata": dict(response.metadata),
            "parsed": _parse_json(response.text),
        }

        result = ExecutorResult(output=output, variables=self.output_variables(node, output))
        if self._is_gate(node):
            self._apply_gate(node, output, render_scope, scope, result)
        return result

    @staticmethod
    def _is_gate(node: WorkflowNode) -> bool:
        return node.type == NodeType.GATE or "gate_condition" in node.config

    def _apply_gate(
        self,
        node: WorkflowNode,
        output: Dict[str, Any],
        render_scope: Dict[str, Any],
        scope: ExecutionScope,
        result: ExecutorResult,
    ) -> None:
        condition = node.config.get("gate_condition")
        if not condition:
            # A gate without a predicate always asks a human
            output["gate_passed"] = False
            result.approval_required = True
            result.approval_reason = "Review required"
            return

        passed = scope.resolver.evaluate_condition(
            condition,
            render_scope,
            {"output": output["text"], "parsed": output["parsed"], "metadata": output["metadata"]},
            node.id,
        )
        output["gate_passed"] = passed
        if passed:
            return

        if node.config.get("on_gate_fail", "approval") == "fail":
            raise ExecutorError(f"Gate condition not met: {condition}", node.id)
        result.approval_required = True
        result.approval_reason = f"Gate condition not met: {condition}"


def _parse_json(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        return None
