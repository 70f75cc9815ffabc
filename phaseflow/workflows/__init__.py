"""
Workflows package - Sample workflow definitions.
"""

from phaseflow.workflows.demo import (
    create_article_pipeline,
    create_greeting_workflow,
    register_demo_workflows,
)

__all__ = [
    "create_article_pipeline",
    "create_greeting_workflow",
    "register_demo_workflows",
]
