"""
User input node executor.
"""

from typing import Any, Dict, Optional, Tuple
import logging
import re

from phaseflow.config import settings
from phaseflow.engine.errors import ExecutorError
from phaseflow.engine.models import NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, NodeExecutor, template_scope


logger = logging.getLogger(__name__)

INPUT_TYPES = ("text", "textarea", "number", "select")


class UserInputExecutor(NodeExecutor):
    """
    Suspends the instance until a value is supplied for a prompt.

    The supplied value is validated; an invalid value re-opens the
    prompt with the validation error, up to ``max_attempts`` times.

    Config:
        prompt: Prompt text template
        input_type: text | textarea | number | select
        required: Reject empty values (default True)
        options: Allowed values for select
        min / max: Bounds for number
        min_length / max_length / pattern: Constraints for text
        default_value: Used for an empty value on an optional prompt
        variable_name: Variable the value is exported to
    """

    node_types = (NodeType.USER_INPUT,)

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or settings.USER_INPUT_MAX_ATTEMPTS

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        config = node.config
        input_type = config.get("input_type", "text")
        if input_type not in INPUT_TYPES:
            raise ExecutorError(f"Unknown input type '{input_type}'", node.id)

        prompt_text = scope.resolver.render(
            str(config.get("prompt", node.display_name)),
            template_scope(resolved_input, scope),
            node.id,
        )
        prompt = {
            "prompt": prompt_text,
            "input_type": input_type,
            "required": config.get("required", True),
            "options": config.get("options"),
            "default_value": config.get("default_value"),
            "validation_error": None,
        }

        error: Optional[str] = None
        for attempt in range(self.max_attempts):
            prompt["attempt"] = attempt + 1
            prompt["validation_error"] = error
            raw = await scope.engine.request_input(scope, node, dict(prompt))
            value, error = validate_input(raw, config)
            if error is None:
                name = config.get("variable_name")
                variables = {name: value} if name else self.output_variables(node, value)
                return ExecutorResult(output=value, variables=variables)
            logger.info(f"Invalid input for node {node.id}: {error}")

        raise ExecutorError(
            f"No valid input after {self.max_attempts} attempts: {error}", node.id
        )


def validate_input(value: Any, config: Dict[str, Any]) -> Tuple[Any, Optional[str]]:
    """
    Validate and coerce a supplied value.

    Returns:
        (coerced value, None) when valid, (value, error message) otherwise
    """
    input_type = config.get("input_type", "text")
    required = config.get("required", True)

    if value is None or (isinstance(value, str) and value.strip() == ""):
        if required:
            return value, "A value is required"
        return config.get("default_value", value), None

    if input_type == "number":
        try:
            number = float(value)
        except (TypeError, ValueError):
            return value, "Must be a valid number"
        if number.is_integer() and not isinstance(value, float):
            number = int(number)
        if "min" in config and number < config["min"]:
            return value, f"Must be at least {config['min']}"
        if "max" in config and number > config["max"]:
            return value, f"Must be at most {config['max']}"
        return number, None

    if input_type == "select":
        options = config.get("options") or []
        allowed = [o.get("value") if isinstance(o, dict) else o for o in options]
        if value not in allowed:
            return value, f"Must be one of: {', '.join(str(a) for a in allowed)}"
        return value, None

    text = str(value)
    if "min_length" in config and len(text) < config["min_length"]:
        return value, f"Must be at least {config['min_length']} characters"
    if "max_length" in config and len(text) > config["max_length"]:
        return value, f"Must be at most {config['max_length']} characters"
    if config.get("pattern") and not re.fullmatch(config["pattern"], text):
        return value, config.get("pattern_message", "Invalid format")
    return text, None
