"""
Code node executor.

Runs a short Python script under RestrictedPython. Every invocation
gets a fresh namespace, so nothing survives between runs.
"""

from typing import Any, Dict
from copy import deepcopy
from types import SimpleNamespace
import asyncio
import functools
import json
import logging
import math
import operator

from RestrictedPython import compile_restricted
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

from phaseflow.engine.errors import ExecutorError
from phaseflow.engine.models import NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, NodeExecutor, template_scope


logger = logging.getLogger(__name__)

_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
}

_EXTRA_BUILTINS = {
    "list": list,
    "dict": dict,
    "set": set,
    "sum": sum,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "enumerate": enumerate,
    "map": map,
    "filter": filter,
    "reversed": reversed,
}

_SAFE_JSON = SimpleNamespace(loads=json.loads, dumps=json.dumps)
_SAFE_MATH = SimpleNamespace(
    ceil=math.ceil, floor=math.floor, sqrt=math.sqrt, log=math.log, pi=math.pi,
)


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    if op not in _INPLACE_OPS:
        raise SyntaxError(f"Operator {op} is not allowed")
    return _INPLACE_OPS[op](x, y)


def run_restricted(code: str, inputs: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compile and run a script in a fresh restricted namespace.

    The script sees ``input`` and ``variables`` and reports its value by
    assigning ``result``. Printed text is captured.

    Returns:
        {"result": ..., "stdout": ...}
    """
    byte_code = compile_restricted(code, "<workflow_code>", "exec")

    builtins = dict(safe_builtins)
    builtins.update(_EXTRA_BUILTINS)
    namespace: Dict[str, Any] = {
        "__builtins__": builtins,
        "__name__": "workflow_code",
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_getattr_": safer_getattr,
        "_write_": full_write_guard,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_inplacevar_": _inplacevar,
        "_print_": PrintCollector,
        "json": _SAFE_JSON,
        "math": _SAFE_MATH,
        "input": inputs,
        "variables": variables,
        "result": None,
    }
    exec(byte_code, namespace)

    collector = namespace.get("_print")
    return {
        "result": namespace.get("result"),
        "stdout": collector() if collector is not None else "",
    }


class CodeExecutor(NodeExecutor):
    """
    Executes inline code.

    Config:
        code: Python script; assign ``result`` to produce the output
        expression: Alternatively, a single expression evaluated
            against the input and variables
        language: Only "python" is supported
        stdout_variable: Variable receiving printed text
    """

    node_types = (NodeType.CODE,)

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        language = node.config.get("language", "python")
        if language != "python":
            raise ExecutorError(f"Unsupported code language '{language}'", node.id)

        expression = node.config.get("expression")
        if expression:
            value = scope.resolver.evaluate(
                expression, template_scope(resolved_input, scope), {"input": resolved_input}, node.id
            )
            return ExecutorResult(output=value, variables=self.output_variables(node, value))

        code = node.config.get("code", "")
        if not code or not code.strip():
            raise ExecutorError("No code provided", node.id)

        loop = asyncio.get_running_loop()
        try:
            outcome = await loop.run_in_executor(
                None,
                functools.partial(
                    run_restricted,
                    code,
                    deepcopy(resolved_input),
                    deepcopy(scope.context.variables),
                )
            )
        except SyntaxError as e:
            raise ExecutorError(f"Syntax error: {e}", node.id) from e
        except Exception as e:
            raise ExecutorError(f"Code execution failed: {type(e).__name__}: {e}", node.id) from e

        if outcome["stdout"]:
            logger.debug(f"Code node {node.id} printed: {outcome['stdout'].rstrip()}")

        result = outcome["result"]
        variables = self.output_variables(node, result)
        stdout_variable = node.config.get("stdout_variable")
        if stdout_variable:
            variables[stdout_variable] = outcome["stdout"]
        return ExecutorResult(output=result, variables=variables)
