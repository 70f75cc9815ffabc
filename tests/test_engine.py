"""
Tests for the Workflow Engine scheduling behaviour.
"""

import pytest
import asyncio
from typing import Any, Dict, List

import httpx

from phaseflow.capabilities import (
    AgentResponse,
    CallableAgent,
    Capabilities,
    EchoAgent,
    HttpxClient,
    ProjectFileSystem,
)
from phaseflow.engine.engine import WorkflowEngine
from phaseflow.engine.errors import DefinitionNotFound, InvalidDefinition, InvalidStartNode
from phaseflow.engine.events import EventType
from phaseflow.engine.models import (
    EdgeType,
    InstanceStatus,
    NodeState,
    NodeType,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)
from phaseflow.executors import build_registry
from phaseflow.executors.subworkflow import SubWorkflowExecutor
from phaseflow.storage.memory import DefinitionStorage, RunRecordStorage


# ============================================================
# Helpers
# ============================================================

async def make_engine(*definitions: WorkflowDefinition, **kwargs) -> WorkflowEngine:
    storage = DefinitionStorage()
    for definition in definitions:
        await storage.save(definition)
    kwargs.setdefault("capabilities", Capabilities(agent=EchoAgent()))
    return WorkflowEngine(definitions=storage, **kwargs)


async def wait_until_paused(engine: WorkflowEngine, instance_id: str, attempt: int = 1, timeout: float = 2.0):
    """Poll until the instance waits on a request (the given prompt attempt for inputs)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        state = engine.get_workflow_state(instance_id)
        request = state.pending_request if state else None
        if (
            state is not None
            and state.status == InstanceStatus.PAUSED
            and request is not None
            and request.payload.get("attempt", 1) == attempt
        ):
            return state
        await asyncio.sleep(0.01)
    raise AssertionError(f"Instance {instance_id} did not pause")


def code_node(node_id: str, code: str, output_variable: str = None, **kwargs) -> WorkflowNode:
    config: Dict[str, Any] = {"code": code}
    if output_variable:
        config["output_variable"] = output_variable
    return WorkflowNode(id=node_id, type=NodeType.CODE, config=config, **kwargs)


def event_types(engine: WorkflowEngine, instance_id: str) -> List[EventType]:
    return [event.type for event in engine.event_bus.history(instance_id)]


# ============================================================
# Sequential Execution
# ============================================================

class TestSequentialExecution:
    """Tests for running nodes in order."""

    @pytest.mark.asyncio
    async def test_code_http_code_pipeline(self):
        """Three nodes complete in order and pass data through variables."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"value": 40})

        definition = WorkflowDefinition(
            id="pipeline",
            variables={"x": 21},
            nodes=[
                code_node("double", "result = variables['x'] * 2", "doubled"),
                WorkflowNode(
                    id="fetch",
                    type=NodeType.HTTP_REQUEST,
                    config={"url": "https://api.test/items/{{doubled}}", "output_variable": "response"},
                ),
                code_node("add", "result = variables['response']['body']['value'] + 2", "total"),
            ],
        )
        http = HttpxClient(transport=httpx.MockTransport(handler))
        engine = await make_engine(definition, capabilities=Capabilities(http=http))

        instance_id = await engine.start_workflow("pipeline")
        state = await engine.wait_for(instance_id, timeout=5)
        await http.aclose()

        assert state.status == InstanceStatus.COMPLETED
        assert str(requests[0].url) == "https://api.test/items/42"

        completed = [
            e.node_id for e in engine.event_bus.history(instance_id)
            if e.type == EventType.NODE_COMPLETED
        ]
        assert completed == ["double", "fetch", "add"]

        types = event_types(engine, instance_id)
        assert types[0] == EventType.WORKFLOW_STARTED
        assert types[-1] == EventType.WORKFLOW_COMPLETED

        snapshot = engine.get_context_snapshot(instance_id)
        assert snapshot["variables"]["total"] == 42
        assert list(snapshot["node_outputs"]) == ["double", "fetch", "add"]

    @pytest.mark.asyncio
    async def test_seed_variables_override_declared(self):
        """Seed variables win over declared defaults."""
        definition = WorkflowDefinition(
            id="greet",
            variables={"name": "world"},
            nodes=[code_node("compose", "result = 'Hello, ' + variables['name']", "greeting")],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("greet", seed_variables={"name": "Ada"})
        await engine.wait_for(instance_id, timeout=5)

        assert engine.get_context_snapshot(instance_id)["variables"]["greeting"] == "Hello, Ada"

    @pytest.mark.asyncio
    async def test_start_node(self):
        """Execution can begin at a node other than the entry point."""
        definition = WorkflowDefinition(
            id="skip-ahead",
            nodes=[
                code_node("first", "result = 1", "first"),
                code_node("second", "result = 2", "second"),
            ],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("skip-ahead", start_node="second")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert state.node_states["first"] == NodeState.PENDING
        assert "first" not in engine.get_context_snapshot(instance_id)["variables"]

    @pytest.mark.asyncio
    async def test_unknown_definition(self):
        engine = await make_engine()
        with pytest.raises(DefinitionNotFound):
            await engine.start_workflow("missing")

    @pytest.mark.asyncio
    async def test_invalid_start_node(self):
        definition = WorkflowDefinition(id="one", nodes=[code_node("a", "result = 1")])
        engine = await make_engine(definition)
        with pytest.raises(InvalidStartNode):
            await engine.start_workflow("one", start_node="nope")

    @pytest.mark.asyncio
    async def test_invalid_definition(self):
        """A loop node without a body cannot be started."""
        definition = WorkflowDefinition(
            id="broken",
            nodes=[WorkflowNode(id="loop", type=NodeType.LOOP, config={"count": 2})],
        )
        engine = await make_engine(definition)
        with pytest.raises(InvalidDefinition):
            await engine.start_workflow("broken")

    @pytest.mark.asyncio
    async def test_version_locked_at_start(self):
        """Re-registering a version does not affect running instances."""
        storage = DefinitionStorage()
        original = WorkflowDefinition(
            id="versioned",
            nodes=[
                WorkflowNode(id="ask", type=NodeType.USER_INPUT, config={"variable_name": "answer"}),
                code_node("mark", "result = 'v1'", "marker"),
            ],
        )
        await storage.save(original)
        engine = WorkflowEngine(definitions=storage)

        instance_id = await engine.start_workflow("versioned")
        await wait_until_paused(engine, instance_id)

        replaced = original.model_copy(deep=True)
        replaced.nodes[1].config["code"] = "result = 'v2'"
        await storage.save(replaced)

        assert engine.supply_user_input(instance_id, "ask", "yes")
        await engine.wait_for(instance_id, timeout=5)

        assert engine.get_context_snapshot(instance_id)["variables"]["marker"] == "v1"


# ============================================================
# Retry and Failure Tests
# ============================================================

class TestRetries:
    """Tests for retry, backoff and failure handling."""

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_fails(self):
        """max_retries=2 gives three attempts with growing delays."""
        calls = []

        def flaky(prompt: str, config: Dict[str, Any]) -> str:
            calls.append(prompt)
            raise RuntimeError("agent unavailable")

        definition = WorkflowDefinition(
            id="always-fails",
            nodes=[
                WorkflowNode(
                    id="plan",
                    type=NodeType.PLANNING,
                    config={"prompt": "Plan it"},
                    retry={"max_retries": 2, "base_delay_ms": 100, "backoff_multiplier": 2.0},
                ),
            ],
        )
        engine = await make_engine(definition, capabilities=Capabilities(agent=CallableAgent(flaky)))

        instance_id = await engine.start_workflow("always-fails")
        state = await engine.wait_for(instance_id, timeout=5)

        assert len(calls) == 3
        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "ExecutorError"
        assert state.error_node_id == "plan"
        assert "agent unavailable" in state.error

        history = engine.event_bus.history(instance_id)
        delays = [e.data["delay_ms"] for e in history if e.type == EventType.NODE_RETRYING]
        assert delays == [100, 200]
        assert EventType.NODE_FAILED in [e.type for e in history]

    @pytest.mark.asyncio
    async def test_retry_recovers(self):
        attempts = {"count": 0}

        def eventually(prompt: str, config: Dict[str, Any]) -> str:
            attempts["count"] += 1
            if attempts["count"] < 2:
                raise RuntimeError("temporary")
            return "ok"

        definition = WorkflowDefinition(
            id="recovers",
            nodes=[
                WorkflowNode(
                    id="write",
                    type=NodeType.WRITING,
                    config={"prompt": "Write", "output_variable": "draft"},
                    retry={"max_retries": 3, "base_delay_ms": 10},
                ),
            ],
        )
        engine = await make_engine(definition, capabilities=Capabilities(agent=CallableAgent(eventually)))

        instance_id = await engine.start_workflow("recovers")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert engine.get_context_snapshot(instance_id)["variables"]["draft"]["text"] == "ok"

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        async def slow(prompt: str, config: Dict[str, Any]) -> str:
            await asyncio.sleep(1)
            return "late"

        definition = WorkflowDefinition(
            id="slow",
            nodes=[WorkflowNode(id="plan", type=NodeType.PLANNING, config={"prompt": "p"}, timeout_ms=50)],
        )
        engine = await make_engine(definition, capabilities=Capabilities(agent=CallableAgent(slow)))

        instance_id = await engine.start_workflow("slow")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "Timeout"

    @pytest.mark.asyncio
    async def test_continue_on_error(self):
        definition = WorkflowDefinition(
            id="tolerant",
            nodes=[
                code_node("boom", "result = 1 / 0", continue_on_error=True),
                code_node("after", "result = 'ran'", "after"),
            ],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("tolerant")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert state.node_states["boom"] == NodeState.FAILED
        snapshot = engine.get_context_snapshot(instance_id)
        assert snapshot["variables"]["after"] == "ran"
        assert snapshot["node_outputs"]["boom"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_path_violation_is_not_retried(self, tmp_path):
        definition = WorkflowDefinition(
            id="escape",
            nodes=[
                WorkflowNode(
                    id="peek",
                    type=NodeType.FILE_OPERATION,
                    config={"operation": "read", "path": "../secret.txt"},
                    retry={"max_retries": 2, "base_delay_ms": 1},
                    continue_on_error=True,
                ),
                code_node("after", "result = 'ran'", "after"),
            ],
        )
        engine = await make_engine(
            definition, capabilities=Capabilities(filesystem=ProjectFileSystem(str(tmp_path)))
        )

        instance_id = await engine.start_workflow("escape")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert state.node_states["peek"] == NodeState.FAILED
        assert EventType.NODE_RETRYING not in event_types(engine, instance_id)
        assert engine.get_context_snapshot(instance_id)["variables"]["after"] == "ran"

    @pytest.mark.asyncio
    async def test_skip_condition(self):
        definition = WorkflowDefinition(
            id="skipper",
            variables={"skip_review": True},
            nodes=[
                code_node("review", "result = 'reviewed'", "review", skip_condition="skip_review"),
                code_node("publish", "result = 'published'", "publish"),
            ],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("skipper")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert state.node_states["review"] == NodeState.SKIPPED
        assert EventType.NODE_SKIPPED in event_types(engine, instance_id)
        variables = engine.get_context_snapshot(instance_id)["variables"]
        assert "review" not in variables
        assert variables["publish"] == "published"


# ============================================================
# Branching and Loops
# ============================================================

def branching_definition() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="router",
        variables={"score": 3},
        nodes=[
            WorkflowNode(id="check", type=NodeType.CONDITIONAL, config={"condition": "score >= 5"}),
            WorkflowNode(id="high", type=NodeType.CODE, config={"expression": "'high'", "output_variable": "route"}),
            WorkflowNode(id="low", type=NodeType.CODE, config={"expression": "'low'", "output_variable": "route"}),
        ],
        edges=[
            WorkflowEdge(source="check", target="high", type=EdgeType.CONDITIONAL, label="true"),
            WorkflowEdge(source="check", target="low", type=EdgeType.CONDITIONAL, label="false"),
        ],
    )


class TestBranchingAndLoops:
    """Tests for conditional routing and loop execution."""

    @pytest.mark.asyncio
    async def test_conditional_routes_by_label(self):
        engine = await make_engine(branching_definition())

        low_id = await engine.start_workflow("router")
        high_id = await engine.start_workflow("router", seed_variables={"score": 9})
        low = await engine.wait_for(low_id, timeout=5)
        high = await engine.wait_for(high_id, timeout=5)

        assert engine.get_context_snapshot(low_id)["variables"]["route"] == "low"
        assert low.node_states["high"] == NodeState.PENDING
        assert engine.get_context_snapshot(high_id)["variables"]["route"] == "high"
        assert high.node_states["low"] == NodeState.PENDING

    @pytest.mark.asyncio
    async def test_conditional_does_not_write_variables(self):
        definition = WorkflowDefinition(
            id="pure",
            variables={"score": 7},
            nodes=[WorkflowNode(id="check", type=NodeType.CONDITIONAL, config={"condition": "score > 5"})],
            edges=[WorkflowEdge(source="check", target="__END__", type=EdgeType.CONDITIONAL, label="true")],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("pure")
        await engine.wait_for(instance_id, timeout=5)

        snapshot = engine.get_context_snapshot(instance_id)
        assert snapshot["variables"] == {"score": 7}
        assert snapshot["node_outputs"]["check"]["output"] == {"result": True, "branch": "true"}

    @pytest.mark.asyncio
    async def test_no_matching_branch_fails(self):
        definition = branching_definition()
        definition.nodes = definition.nodes[:2]
        definition.edges = definition.edges[:1]
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("router")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "NoMatchingBranch"

    @pytest.mark.asyncio
    async def test_for_each_loop(self):
        """The body runs once per item, in order, and the loop stack is unwound."""
        seen = []

        def writer(prompt: str, config: Dict[str, Any]) -> AgentResponse:
            seen.append(prompt)
            return AgentResponse(text=prompt.upper())

        definition = WorkflowDefinition(
            id="chapters",
            variables={"chapters": ["one", "two", "three"]},
            nodes=[
                WorkflowNode(
                    id="each",
                    type=NodeType.LOOP,
                    config={
                        "collection": "chapters",
                        "iterator_variable": "chapter",
                        "output_variable": "drafts",
                    },
                ),
                WorkflowNode(
                    id="write",
                    type=NodeType.WRITING,
                    config={"prompt": "chapter {{chapter}} #{{loop.index}}"},
                ),
                code_node("done", "result = variables['drafts']['iteration_count']", "count"),
            ],
            edges=[
                WorkflowEdge(source="each", target="write", type=EdgeType.LOOP),
                WorkflowEdge(source="write", target="each"),
                WorkflowEdge(source="each", target="done"),
            ],
        )
        engine = await make_engine(definition, capabilities=Capabilities(agent=CallableAgent(writer)))

        instance_id = await engine.start_workflow("chapters")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert seen == ["chapter one #0", "chapter two #1", "chapter three #2"]

        snapshot = engine.get_context_snapshot(instance_id)
        assert snapshot["loop_stack"] == []
        assert snapshot["variables"]["count"] == 3
        iterations = snapshot["variables"]["drafts"]["iterations"]
        assert [it["item"] for it in iterations] == ["one", "two", "three"]
        assert iterations[1]["outputs"]["write"]["text"] == "CHAPTER TWO #1"

    @pytest.mark.asyncio
    async def test_count_loop(self):
        definition = WorkflowDefinition(
            id="counter",
            variables={"total": 0},
            nodes=[
                WorkflowNode(id="repeat", type=NodeType.LOOP, config={"mode": "count", "count": 4}),
                code_node("add", "result = variables['total'] + variables['index']", "total"),
            ],
            edges=[
                WorkflowEdge(source="repeat", target="add", type=EdgeType.LOOP),
                WorkflowEdge(source="add", target="repeat"),
            ],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("counter")
        await engine.wait_for(instance_id, timeout=5)

        assert engine.get_context_snapshot(instance_id)["variables"]["total"] == 0 + 1 + 2 + 3

    @pytest.mark.asyncio
    async def test_while_loop_limit(self):
        definition = WorkflowDefinition(
            id="forever",
            nodes=[
                WorkflowNode(
                    id="spin",
                    type=NodeType.LOOP,
                    config={"mode": "while", "condition": "true", "max_iterations": 3},
                ),
                code_node("noop", "result = None"),
            ],
            edges=[
                WorkflowEdge(source="spin", target="noop", type=EdgeType.LOOP),
                WorkflowEdge(source="noop", target="spin"),
            ],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("forever")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert "max_iterations" in state.error


# ============================================================
# Approvals, Input and Cancellation
# ============================================================

def gate_definition(**gate_kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        id="gated",
        nodes=[
            WorkflowNode(
                id="review",
                type=NodeType.GATE,
                config={"prompt": "Review the draft", "output_variable": "review"},
                **gate_kwargs,
            ),
            code_node("publish", "result = 'published'", "published"),
        ],
    )


class TestHumanDecisions:
    """Tests for approval gates, user input and cancellation."""

    @pytest.mark.asyncio
    async def test_approve_continues(self):
        engine = await make_engine(gate_definition())

        instance_id = await engine.start_workflow("gated")
        paused = await wait_until_paused(engine, instance_id)
        assert paused.node_states["review"] == NodeState.AWAITING_APPROVAL
        assert paused.pending_request.node_id == "review"

        assert engine.approve_phase(instance_id, "review")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert engine.get_context_snapshot(instance_id)["variables"]["published"] == "published"
        types = event_types(engine, instance_id)
        assert EventType.APPROVAL_REQUIRED in types
        assert EventType.WORKFLOW_RESUMED in types

    @pytest.mark.asyncio
    async def test_approve_with_edited_output(self):
        engine = await make_engine(gate_definition())

        instance_id = await engine.start_workflow("gated")
        await wait_until_paused(engine, instance_id)

        assert engine.approve_phase(instance_id, "review", {"text": "edited"})
        await engine.wait_for(instance_id, timeout=5)

        snapshot = engine.get_context_snapshot(instance_id)
        assert snapshot["variables"]["review"] == {"text": "edited"}
        assert snapshot["node_outputs"]["review"]["output"] == {"text": "edited"}

    @pytest.mark.asyncio
    async def test_reject_fails_instance(self):
        engine = await make_engine(gate_definition())

        instance_id = await engine.start_workflow("gated")
        await wait_until_paused(engine, instance_id)

        assert engine.reject_phase(instance_id, "review", "too short")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "Rejected"
        assert state.error == "Phase rejected: too short"
        assert state.error_node_id == "review"
        assert state.node_states["publish"] == NodeState.PENDING

    @pytest.mark.asyncio
    async def test_reject_follows_rejection_edge(self):
        definition = gate_definition()
        definition.nodes.append(code_node("revise", "result = 'revised'", "revised"))
        definition.edges = [
            WorkflowEdge(source="review", target="publish"),
            WorkflowEdge(source="review", target="revise", type=EdgeType.REJECTION),
        ]
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("gated")
        await wait_until_paused(engine, instance_id)
        engine.reject_phase(instance_id, "review", "needs work")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert state.node_states["review"] == NodeState.FAILED
        variables = engine.get_context_snapshot(instance_id)["variables"]
        assert variables["revised"] == "revised"
        assert "published" not in variables

    @pytest.mark.asyncio
    async def test_decisions_without_pending_request_are_noops(self):
        engine = await make_engine(gate_definition())

        assert engine.approve_phase("unknown", "review") is False
        assert engine.reject_phase("unknown", "review", "no") is False

        instance_id = await engine.start_workflow("gated")
        await wait_until_paused(engine, instance_id)

        assert engine.approve_phase(instance_id, "publish") is False
        assert engine.supply_user_input(instance_id, "review", "value") is False
        state = engine.get_workflow_state(instance_id)
        assert state.status == InstanceStatus.PAUSED
        assert state.node_states["review"] == NodeState.AWAITING_APPROVAL

        assert engine.approve_phase(instance_id, "review")
        assert engine.approve_phase(instance_id, "review") is False
        await engine.wait_for(instance_id, timeout=5)

    @pytest.mark.asyncio
    async def test_user_input_reprompts_on_invalid_value(self):
        definition = WorkflowDefinition(
            id="ask",
            nodes=[
                WorkflowNode(
                    id="chapters",
                    type=NodeType.USER_INPUT,
                    config={
                        "prompt": "How many chapters?",
                        "input_type": "number",
                        "min": 1,
                        "max": 10,
                        "variable_name": "chapter_count",
                    },
                ),
            ],
        )
        engine = await make_engine(definition)

        instance_id = await engine.start_workflow("ask")
        first = await wait_until_paused(engine, instance_id)
        assert first.pending_request.payload["prompt"] == "How many chapters?"

        assert engine.supply_user_input(instance_id, "chapters", "50")
        second = await wait_until_paused(engine, instance_id, attempt=2)
        assert second.pending_request.payload["validation_error"] == "Must be at most 10"

        assert engine.supply_user_input(instance_id, "chapters", "5")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        assert engine.get_context_snapshot(instance_id)["variables"]["chapter_count"] == 5

    @pytest.mark.asyncio
    async def test_stop_while_paused(self):
        engine = await make_engine(gate_definition())

        instance_id = await engine.start_workflow("gated")
        await wait_until_paused(engine, instance_id)

        assert engine.stop_workflow(instance_id)
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "Cancelled"
        assert state.pending_request is None
        assert engine.stop_workflow(instance_id) is False
        assert engine.get_running_workflows() == []

    @pytest.mark.asyncio
    async def test_stop_between_nodes(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking(prompt: str, config: Dict[str, Any]) -> str:
            started.set()
            await release.wait()
            return "done"

        definition = WorkflowDefinition(
            id="stoppable",
            nodes=[
                WorkflowNode(id="plan", type=NodeType.PLANNING, config={"prompt": "p"}),
                code_node("after", "result = 'ran'", "after"),
            ],
        )
        engine = await make_engine(definition, capabilities=Capabilities(agent=CallableAgent(blocking)))

        instance_id = await engine.start_workflow("stoppable")
        await asyncio.wait_for(started.wait(), timeout=2)
        engine.stop_workflow(instance_id)
        release.set()
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "Cancelled"
        assert state.node_states["plan"] == NodeState.COMPLETED
        assert state.node_states["after"] == NodeState.PENDING


# ============================================================
# Sub-workflows and Records
# ============================================================

class TestSubWorkflows:
    """Tests for nested workflow execution."""

    @pytest.mark.asyncio
    async def test_subworkflow_outputs_fold_into_parent(self):
        child = WorkflowDefinition(
            id="child",
            outputs=["greeting"],
            nodes=[
                code_node("compose", "result = 'Hello, ' + variables['name']", "greeting"),
                code_node("scratch", "result = 'internal'", "scratch"),
            ],
        )
        parent = WorkflowDefinition(
            id="parent",
            variables={"name": "Ada"},
            nodes=[
                WorkflowNode(
                    id="nested",
                    type=NodeType.SUBWORKFLOW,
                    config={"workflow_id": "child", "output_variable": "child_run"},
                ),
            ],
        )
        engine = await make_engine(child, parent)

        instance_id = await engine.start_workflow("parent")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.COMPLETED
        variables = engine.get_context_snapshot(instance_id)["variables"]
        assert variables["greeting"] == "Hello, Ada"
        assert "scratch" not in variables
        assert variables["child_run"]["status"] == "completed"

        child_state = engine.get_workflow_state(variables["child_run"]["instance_id"])
        assert child_state.parent_instance_id == instance_id
        assert child_state.depth == 1

    @pytest.mark.asyncio
    async def test_recursion_limit(self):
        recursive = WorkflowDefinition(
            id="recursive",
            nodes=[
                WorkflowNode(
                    id="again",
                    type=NodeType.SUBWORKFLOW,
                    config={"workflow_id": "recursive"},
                    retry={"max_retries": 2, "base_delay_ms": 1},
                ),
            ],
        )
        registry = build_registry({NodeType.SUBWORKFLOW: SubWorkflowExecutor(max_depth=2)})
        engine = await make_engine(recursive, registry=registry)

        instance_id = await engine.start_workflow("recursive")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "RecursionLimitExceeded"
        assert state.error_node_id == "again"
        # One instance per depth; the limit is never retried
        instances = engine.list_instances()
        assert sorted(s.depth for s in instances) == [0, 1, 2]
        assert {s.error_kind for s in instances} == {"RecursionLimitExceeded"}
        assert EventType.NODE_RETRYING not in event_types(engine, instance_id)

    @pytest.mark.asyncio
    async def test_abandoned_child_is_stopped(self):
        """A sub-workflow node that times out stops the child it started."""
        asker = WorkflowDefinition(
            id="asker",
            nodes=[
                WorkflowNode(
                    id="ask",
                    type=NodeType.USER_INPUT,
                    config={"prompt": "Name?", "variable_name": "name"},
                ),
            ],
        )
        parent = WorkflowDefinition(
            id="impatient",
            nodes=[
                WorkflowNode(
                    id="nested",
                    type=NodeType.SUBWORKFLOW,
                    config={"workflow_id": "asker"},
                    timeout_ms=100,
                    retry={"max_retries": 1, "base_delay_ms": 1},
                ),
            ],
        )
        engine = await make_engine(asker, parent)

        instance_id = await engine.start_workflow("impatient")
        state = await engine.wait_for(instance_id, timeout=5)

        assert state.status == InstanceStatus.FAILED
        assert state.error_kind == "Timeout"

        children = [s for s in engine.list_instances() if s.parent_instance_id == instance_id]
        assert len(children) == 2
        for child in children:
            child_state = await engine.wait_for(child.instance_id, timeout=2)
            assert child_state.status == InstanceStatus.FAILED
            assert child_state.error_kind == "Cancelled"
        assert engine.get_running_workflows() == []


class TestRecords:
    """Tests for the run record sink."""

    @pytest.mark.asyncio
    async def test_record_sink_receives_outputs_and_final_state(self):
        records = RunRecordStorage()
        definition = WorkflowDefinition(id="recorded", nodes=[code_node("a", "result = 1", "a")])
        engine = await make_engine(definition, record_sink=records)

        instance_id = await engine.start_workflow("recorded")
        await engine.wait_for(instance_id, timeout=5)

        stored = await records.get(instance_id)
        assert stored is not None
        assert stored.status == "completed"
        assert stored.definition_id == "recorded"
        assert [out["node_id"] for out in stored.node_outputs] == ["a"]

    @pytest.mark.asyncio
    async def test_round_trip_definition(self):
        """A definition survives export to JSON and import unchanged."""
        definition = branching_definition()
        restored = WorkflowDefinition.model_validate_json(definition.model_dump_json())
        assert restored == definition
