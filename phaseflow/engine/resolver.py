"""
Expression and Mapping Resolver.

Builds node inputs from the execution context and writes node results
back into variables. Supports three kinds of references:

- paths: ``variables.topic``, ``nodes.fetch.output.items[0]``,
  ``reference.project_id``, ``loop.index`` or a bare variable name
  (``$.`` and ``{{...}}`` wrapped forms are accepted too)
- templates: strings with ``{{path}}`` placeholders
- expressions: simpleeval expressions used for transforms and predicates

The resolver holds no state; everything it reads comes from the
context passed in.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence
from copy import deepcopy
import json
import logging
import re

from simpleeval import (
    AttributeDoesNotExist,
    EvalWithCompoundTypes,
    InvalidExpression,
    NameNotDefined,
)

from phaseflow.engine.context import ExecutionContext
from phaseflow.engine.errors import ExecutorError, UnresolvedReference
from phaseflow.engine.models import WorkflowNode


logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
SEGMENT_PATTERN = re.compile(r"[^.\[\]]+|\[-?\d+\]")

# Functions available to transforms and predicates
SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
    "sum": sum,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "strip": lambda s: str(s).strip(),
}

# Sentinel for "no value found"
_MISSING = object()


class Resolver:
    """Stateless evaluator of paths, templates and expressions."""

    # ============================================================
    # Paths
    # ============================================================

    @staticmethod
    def normalize_path(path: str) -> str:
        path = path.strip()
        match = TEMPLATE_PATTERN.fullmatch(path)
        if match:
            path = match.group(1).strip()
        if path.startswith("$."):
            path = path[2:]
        return path

    @staticmethod
    def split_path(path: str) -> List[Any]:
        segments: List[Any] = []
        for part in SEGMENT_PATTERN.findall(path):
            if part.startswith("["):
                segments.append(int(part[1:-1]))
            else:
                segments.append(part)
        return segments

    def lookup(self, path: str, scope: Mapping[str, Any], node_id: Optional[str] = None) -> Any:
        """
        Resolve a path against a scope.

        The first segment names a scope root; anything else is looked up
        under ``variables``.

        Raises:
            UnresolvedReference: if any segment is missing
        """
        normalized = self.normalize_path(path)
        segments = self.split_path(normalized)
        if not segments:
            raise UnresolvedReference(path, node_id)

        if segments[0] in scope:
            current: Any = scope[segments[0]]
            rest = segments[1:]
        else:
            current = scope.get("variables", {})
            rest = segments

        for segment in rest:
            current = self._step(current, segment)
            if current is _MISSING:
                raise UnresolvedReference(path, node_id)
        return current

    @staticmethod
    def _step(current: Any, segment: Any) -> Any:
        if isinstance(segment, int):
            if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
                try:
                    return current[segment]
                except IndexError:
                    return _MISSING
            return _MISSING
        if isinstance(current, Mapping):
            return current.get(segment, _MISSING)
        if isinstance(current, Sequence) and not isinstance(current, (str, bytes)) and segment.isdigit():
            index = int(segment)
            return current[index] if index < len(current) else _MISSING
        return _MISSING

    # ============================================================
    # Templates
    # ============================================================

    def render(self, template: str, scope: Mapping[str, Any], node_id: Optional[str] = None) -> str:
        """Replace every ``{{path}}`` placeholder; objects are JSON-encoded."""
        def replace(match: "re.Match[str]") -> str:
            value = self.lookup(match.group(1), scope, node_id)
            return self.stringify(value)

        return TEMPLATE_PATTERN.sub(replace, template)

    def render_value(self, value: Any, scope: Mapping[str, Any], node_id: Optional[str] = None) -> Any:
        """
        Render templates nested anywhere inside a value.

        A string that is exactly one placeholder yields the referenced
        value itself rather than its string form.
        """
        if isinstance(value, str):
            match = TEMPLATE_PATTERN.fullmatch(value.strip())
            if match:
                return deepcopy(self.lookup(match.group(1), scope, node_id))
            return self.render(value, scope, node_id)
        if isinstance(value, dict):
            return {k: self.render_value(v, scope, node_id) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render_value(v, scope, node_id) for v in value]
        return value

    @staticmethod
    def stringify(value: Any) -> str:
        if isinstance(value, str):
            return value
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return str(value)

    # ============================================================
    # Expressions
    # ============================================================

    def evaluate(
        self,
        expression: str,
        scope: Mapping[str, Any],
        extra_names: Optional[Dict[str, Any]] = None,
        node_id: Optional[str] = None,
    ) -> Any:
        """
        Evaluate a simpleeval expression.

        Variables are available by bare name, alongside the scope roots
        and any extra names (``value``, ``output`` ...).
        """
        names: Dict[str, Any] = {"true": True, "false": False, "none": None, "null": None}
        names.update(scope.get("variables", {}))
        names.update(scope)
        if extra_names:
            names.update(extra_names)

        evaluator = EvalWithCompoundTypes(names=names, functions=SAFE_FUNCTIONS)
        try:
            return evaluator.eval(expression)
        except NameNotDefined as e:
            raise UnresolvedReference(
                getattr(e, "name", expression), node_id,
                message=f"Unresolved reference in expression '{expression}': {e}",
            ) from e
        except (AttributeDoesNotExist, KeyError, IndexError) as e:
            raise UnresolvedReference(
                expression, node_id,
                message=f"Unresolved reference in expression '{expression}': {e}",
            ) from e
        except InvalidExpression as e:
            raise ExecutorError(f"Invalid expression '{expression}': {e}", node_id) from e
        except SyntaxError as e:
            raise ExecutorError(f"Invalid expression syntax '{expression}': {e}", node_id) from e
        except (TypeError, ValueError, ZeroDivisionError) as e:
            raise ExecutorError(f"Expression '{expression}' failed: {e}", node_id) from e

    def evaluate_condition(
        self,
        expression: str,
        scope: Mapping[str, Any],
        extra_names: Optional[Dict[str, Any]] = None,
        node_id: Optional[str] = None,
    ) -> bool:
        return bool(self.evaluate(expression, scope, extra_names, node_id))

    # ============================================================
    # Node Mappings
    # ============================================================

    def resolve_inputs(self, node: WorkflowNode, context: ExecutionContext) -> Dict[str, Any]:
        """
        Build a node's input from its input mappings.

        A node without input mappings receives a copy of all variables.
        """
        scope = context.scope()
        if not node.inputs:
            return deepcopy(context.variables)

        resolved: Dict[str, Any] = {}
        for mapping in node.inputs:
            if mapping.template is not None:
                value = self.render(mapping.template, scope, node.id)
            elif mapping.source is not None:
                try:
                    value = deepcopy(self.lookup(mapping.source, scope, node.id))
                except UnresolvedReference:
                    if not mapping.has_default:
                        raise
                    value = deepcopy(mapping.default)
            else:
                value = deepcopy(mapping.default)

            if mapping.transform:
                value = self.evaluate(mapping.transform, scope, {"value": value}, node.id)
            resolved[mapping.target] = value
        return resolved

    def resolve_exports(
        self,
        node: WorkflowNode,
        output: Any,
        exported: Dict[str, Any],
        resolved_input: Dict[str, Any],
        context: ExecutionContext,
    ) -> Dict[str, Any]:
        """
        Compute the variables a node writes back.

        Starts from what the executor exported itself; output mappings
        are applied on top and win on conflicts.
        """
        exports = dict(exported)
        if not node.outputs:
            return exports

        scope = dict(context.scope())
        scope["output"] = output
        scope["input"] = resolved_input
        for mapping in node.outputs:
            try:
                value = deepcopy(self.lookup(mapping.source, scope, node.id))
            except UnresolvedReference:
                if not mapping.has_default:
                    raise
                value = deepcopy(mapping.default)
            if mapping.transform:
                value = self.evaluate(mapping.transform, scope, {"value": value}, node.id)
            exports[mapping.target] = value

        logger.debug(f"Node '{node.id}' exports: {list(exports)}")
        return exports
