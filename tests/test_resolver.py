"""
Tests for context, path resolution, templates and expressions.
"""

import pytest

from phaseflow.engine.context import ExecutionContext, LoopFrame
from phaseflow.engine.errors import ExecutorError, UnresolvedReference
from phaseflow.engine.models import (
    InputMapping,
    NodeOutput,
    NodeType,
    OutputMapping,
    OutputStatus,
    WorkflowNode,
)
from phaseflow.engine.resolver import Resolver


@pytest.fixture
def resolver():
    return Resolver()


@pytest.fixture
def context():
    ctx = ExecutionContext(
        variables={"topic": "tides", "count": 3, "chapters": [{"title": "Intro"}, {"title": "End"}]},
        reference={"project_id": "p-42"},
    )
    ctx.record(NodeOutput(
        node_id="fetch",
        node_name="Fetch",
        status=OutputStatus.SUCCESS,
        output={"body": {"items": [10, 20]}},
    ))
    return ctx


# ============================================================
# Context Tests
# ============================================================

class TestExecutionContext:
    """Tests for ExecutionContext."""

    def test_record_moves_reexecuted_node_to_end(self):
        ctx = ExecutionContext()
        for node_id in ("a", "b", "a"):
            ctx.record(NodeOutput(node_id=node_id, node_name=node_id, status=OutputStatus.SUCCESS))

        assert list(ctx.node_outputs) == ["b", "a"]
        assert [out.node_id for out in ctx.history] == ["a", "b", "a"]

    def test_loop_frames(self):
        ctx = ExecutionContext()
        ctx.push_loop(LoopFrame(loop_node_id="each", iterator_variable="item", index=1, total=2,
                                item="x", index_variable="i"))

        assert ctx.get("item") == "x"
        assert ctx.get("i") == 1
        assert ctx.scope()["loop"]["index"] == 1

        ctx.pop_loop()
        assert ctx.current_loop is None
        assert ctx.scope()["loop"] == {}

    def test_reference_is_read_only(self, context):
        with pytest.raises(TypeError):
            context.reference["project_id"] = "other"

    def test_seed_variables_are_independent(self, context):
        seed = context.seed_variables()
        seed["chapters"][0]["title"] = "Changed"
        assert context.get("chapters")[0]["title"] == "Intro"


# ============================================================
# Path and Template Tests
# ============================================================

class TestPaths:
    """Tests for path lookup and templates."""

    @pytest.mark.parametrize("path, expected", [
        ("topic", "tides"),
        ("variables.topic", "tides"),
        ("$.topic", "tides"),
        ("{{ topic }}", "tides"),
        ("chapters[1].title", "End"),
        ("nodes.fetch.output.body.items[0]", 10),
        ("nodes.fetch.status", "success"),
        ("reference.project_id", "p-42"),
    ])
    def test_lookup(self, resolver, context, path, expected):
        assert resolver.lookup(path, context.scope()) == expected

    def test_missing_path_raises(self, resolver, context):
        with pytest.raises(UnresolvedReference) as exc_info:
            resolver.lookup("chapters[5].title", context.scope(), "n1")
        assert exc_info.value.node_id == "n1"
        assert exc_info.value.kind == "UnresolvedReference"

    def test_render_template(self, resolver, context):
        rendered = resolver.render("About {{topic}} in {{count}} parts: {{nodes.fetch.output.body.items}}",
                                   context.scope())
        assert rendered == "About tides in 3 parts: [10, 20]"

    def test_render_value_keeps_single_placeholder_type(self, resolver, context):
        value = resolver.render_value({"items": "{{chapters}}", "label": "n={{count}}"}, context.scope())
        assert value["items"] == [{"title": "Intro"}, {"title": "End"}]
        assert value["label"] == "n=3"


# ============================================================
# Expression Tests
# ============================================================

class TestExpressions:
    """Tests for simpleeval-backed expressions."""

    def test_condition_over_variables(self, resolver, context):
        assert resolver.evaluate_condition("count >= 3 and topic == 'tides'", context.scope()) is True
        assert resolver.evaluate_condition("len(chapters) > 2", context.scope()) is False

    def test_extra_names(self, resolver, context):
        assert resolver.evaluate("value * 2", context.scope(), {"value": 21}) == 42

    def test_unknown_name(self, resolver, context):
        with pytest.raises(UnresolvedReference):
            resolver.evaluate("missing + 1", context.scope())

    def test_invalid_expression(self, resolver, context):
        with pytest.raises(ExecutorError):
            resolver.evaluate("count +", context.scope())

    def test_no_imports(self, resolver, context):
        with pytest.raises(ExecutorError):
            resolver.evaluate("__import__('os')", context.scope())


# ============================================================
# Mapping Tests
# ============================================================

class TestMappings:
    """Tests for input and output mappings."""

    def test_inputs_default_to_all_variables(self, resolver, context):
        node = WorkflowNode(id="n", type=NodeType.CODE)
        resolved = resolver.resolve_inputs(node, context)
        assert resolved["topic"] == "tides"
        resolved["chapters"].append({"title": "Extra"})
        assert len(context.get("chapters")) == 2

    def test_input_mappings(self, resolver, context):
        node = WorkflowNode(
            id="n",
            type=NodeType.CODE,
            inputs=[
                InputMapping(target="first", source="nodes.fetch.output.body.items[0]"),
                InputMapping(target="title", template="Article on {{topic}}"),
                InputMapping(target="tone", source="tone", default="neutral"),
                InputMapping(target="total", source="count", transform="value * 10"),
            ],
        )
        assert resolver.resolve_inputs(node, context) == {
            "first": 10,
            "title": "Article on tides",
            "tone": "neutral",
            "total": 30,
        }

    def test_input_mapping_without_default_fails(self, resolver, context):
        node = WorkflowNode(id="n", type=NodeType.CODE, inputs=[InputMapping(target="x", source="nope")])
        with pytest.raises(UnresolvedReference):
            resolver.resolve_inputs(node, context)

    def test_output_mappings(self, resolver, context):
        node = WorkflowNode(
            id="n",
            type=NodeType.CODE,
            outputs=[
                OutputMapping(target="status", source="output.status"),
                OutputMapping(target="echo", source="input.q"),
                OutputMapping(target="size", source="output.items", transform="len(value)"),
            ],
        )
        exports = resolver.resolve_exports(
            node,
            {"status": 200, "items": [1, 2, 3]},
            {"raw": "kept"},
            {"q": "question"},
            context,
        )
        assert exports == {"raw": "kept", "status": 200, "echo": "question", "size": 3}
