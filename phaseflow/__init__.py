"""
PhaseFlow - An async workflow execution engine.

Runs multi-phase pipelines of agent calls, user prompts, sandboxed code,
HTTP requests and file operations, with branching, loops, nested
sub-workflows, retries and human approval gates.
"""

__version__ = "1.0.0"
