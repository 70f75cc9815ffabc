"""
Agent capabilities.

The engine treats agent calls as opaque. These implementations cover
local use: ``EchoAgent`` for demos and ``CallableAgent`` to plug in any
sync or async function.
"""

from typing import Any, Callable, Dict, Union
import asyncio
import functools
import logging

from phaseflow.capabilities.base import AgentResponse


logger = logging.getLogger(__name__)


class EchoAgent:
    """Returns the prompt it was given. Useful for dry runs."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    async def invoke(self, prompt: str, config: Dict[str, Any]) -> AgentResponse:
        return AgentResponse(
            text=f"{self.prefix}{prompt}",
            metadata={"agent": config.get("agent", "echo"), "model": "echo"},
        )


class CallableAgent:
    """
    Wraps a function ``(prompt, config) -> str | AgentResponse``.

    Sync functions run in the default thread pool so they don't block
    the event loop.
    """

    def __init__(self, func: Callable[[str, Dict[str, Any]], Union[str, AgentResponse, Any]]):
        if not callable(func):
            raise ValueError("Agent function must be callable")
        self.func = func

    @property
    def is_async(self) -> bool:
        return asyncio.iscoroutinefunction(self.func)

    async def invoke(self, prompt: str, config: Dict[str, Any]) -> AgentResponse:
        if self.is_async:
            result = await self.func(prompt, config)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None,
                functools.partial(self.func, prompt, config)
            )

        if isinstance(result, AgentResponse):
            return result
        if isinstance(result, str):
            return AgentResponse(text=result)
        raise ValueError(
            f"Agent function must return str or AgentResponse, got {type(result).__name__}"
        )
