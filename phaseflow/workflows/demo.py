"""
Demo Workflow Definitions.

Two pre-registered workflows show the engine's node types:

1. ``article-pipeline``: plan an article, write each section in a loop,
   run a quality gate over the assembled text and save it to the
   project folder.
2. ``greeting``: a single code node, handy for smoke tests.
"""

from typing import List, Optional
import logging

from phaseflow.engine.models import (
    EdgeType,
    NodeType,
    OutputMapping,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
)
from phaseflow.storage.memory import definition_storage


logger = logging.getLogger(__name__)


ASSEMBLE_CODE = """
parts = []
for iteration in variables['drafts']['iterations']:
    parts.append(iteration['outputs']['write_section']['text'])
result = '\\n\\n'.join(parts)
"""


# ============================================================
# Workflow Factories
# ============================================================

def create_article_pipeline(
    sections: Optional[List[str]] = None,
    min_length: int = 20,
) -> WorkflowDefinition:
    """
    Create the article pipeline definition.

    Workflow flow:
    ```
    plan → sections ─┬─→ assemble → review → save
                     │
                     └─→ write_section (once per section)
    ```

    Args:
        sections: Default section titles (overridable by seed variables)
        min_length: Minimum article length the review gate accepts
    """
    return WorkflowDefinition(
        id="article-pipeline",
        version="1",
        name="Article Pipeline",
        description=(
            "Plans an article, drafts every section, checks the result "
            f"(at least {min_length} characters) and saves it as Markdown."
        ),
        variables={
            "topic": "workflow engines",
            "sections": sections or ["Introduction", "How it works", "Conclusion"],
        },
        outputs=["article", "saved_path"],
        nodes=[
            WorkflowNode(
                id="plan",
                name="Plan",
                type=NodeType.PLANNING,
                config={
                    "agent": "planner",
                    "prompt": "Outline an article about {{topic}} with sections {{sections}}",
                    "output_variable": "outline",
                },
                retry={"max_retries": 2, "base_delay_ms": 500},
            ),
            WorkflowNode(
                id="sections",
                name="Draft Sections",
                type=NodeType.LOOP,
                config={
                    "mode": "for_each",
                    "collection": "sections",
                    "iterator_variable": "section",
                    "index_variable": "section_index",
                    "output_variable": "drafts",
                },
            ),
            WorkflowNode(
                id="write_section",
                name="Write Section",
                type=NodeType.WRITING,
                config={
                    "agent": "writer",
                    "prompt": "Write section {{section_index}} '{{section}}' of an article about {{topic}}",
                },
            ),
            WorkflowNode(
                id="assemble",
                name="Assemble",
                type=NodeType.CODE,
                config={"code": ASSEMBLE_CODE, "output_variable": "article"},
            ),
            WorkflowNode(
                id="review",
                name="Review",
                type=NodeType.GATE,
                config={
                    "agent": "reviewer",
                    "prompt": "{{article}}",
                    "gate_condition": f"len(output) >= {min_length}",
                },
            ),
            WorkflowNode(
                id="save",
                name="Save",
                type=NodeType.FILE_OPERATION,
                config={
                    "operation": "write",
                    "path": "articles/article.md",
                    "content": "# {{topic}}\n\n{{article}}\n",
                    "overwrite": False,
                },
                outputs=[OutputMapping(target="saved_path", source="output.path")],
            ),
        ],
        edges=[
            WorkflowEdge(source="plan", target="sections"),
            WorkflowEdge(source="sections", target="write_section", type=EdgeType.LOOP),
            WorkflowEdge(source="write_section", target="sections"),
            WorkflowEdge(source="sections", target="assemble"),
            WorkflowEdge(source="assemble", target="review"),
            WorkflowEdge(source="review", target="save"),
        ],
    )


def create_greeting_workflow() -> WorkflowDefinition:
    """A one-node workflow that builds a greeting from ``name``."""
    return WorkflowDefinition(
        id="greeting",
        version="1",
        name="Greeting",
        variables={"name": "world"},
        outputs=["greeting"],
        nodes=[
            WorkflowNode(
                id="compose",
                type=NodeType.CODE,
                config={
                    "code": "result = 'Hello, ' + variables['name'] + '!'",
                    "output_variable": "greeting",
                },
            ),
        ],
    )


async def register_demo_workflows() -> List[WorkflowDefinition]:
    """
    Register the demo definitions in storage.

    This makes them available immediately via the API without needing
    to create them first.
    """
    definitions = [create_article_pipeline(), create_greeting_workflow()]
    for definition in definitions:
        await definition_storage.save(definition)
        logger.info(f"Registered demo workflow with ID: {definition.id}")
    return definitions
