"""
File operation node executor.
"""

from typing import Any, Dict
import asyncio
import functools
import logging

from phaseflow.capabilities.base import FileSystemCapability
from phaseflow.engine.errors import ExecutorError, PathViolation
from phaseflow.engine.models import NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, NodeExecutor, template_scope


logger = logging.getLogger(__name__)

OPERATIONS = ("read", "write", "copy", "move", "delete", "exists", "list")


class FileOperationExecutor(NodeExecutor):
    """
    Reads and writes files inside the instance's project folder.

    Config:
        operation: read | write | copy | move | delete | exists | list
        path: Path template, relative to the project folder
        destination: Target path template (copy, move)
        content: Content template for write (defaults to input["content"])
        overwrite: False writes to the next free "name-N.ext" (default True)
    """

    node_types = (NodeType.FILE_OPERATION,)

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        fs = scope.capabilities.filesystem
        if fs is None:
            raise ExecutorError("No project folder configured", node.id)

        config = node.config
        operation = config.get("operation", "read")
        if operation not in OPERATIONS:
            raise ExecutorError(f"Unknown file operation '{operation}'", node.id)

        render_scope = template_scope(resolved_input, scope)
        path_template = config.get("path") or resolved_input.get("path")
        if not path_template:
            raise ExecutorError(f"File operation '{operation}' needs a path", node.id)
        path = scope.resolver.render(str(path_template), render_scope, node.id)

        destination = None
        if operation in ("copy", "move"):
            dest_template = config.get("destination") or resolved_input.get("destination")
            if not dest_template:
                raise ExecutorError(f"File operation '{operation}' needs a destination", node.id)
            destination = scope.resolver.render(str(dest_template), render_scope, node.id)

        content = None
        if operation == "write":
            if "content" in config:
                content = scope.resolver.render_value(config["content"], render_scope, node.id)
            else:
                content = resolved_input.get("content", "")
            if not isinstance(content, str):
                content = scope.resolver.stringify(content)

        overwrite = bool(config.get("overwrite", True))

        loop = asyncio.get_running_loop()
        try:
            output = await loop.run_in_executor(
                None,
                functools.partial(self._run, fs, operation, path, destination, content, overwrite)
            )
        except PathViolation as e:
            e.node_id = node.id
            raise
        except FileNotFoundError as e:
            raise ExecutorError(f"File not found: {path}", node.id) from e
        except OSError as e:
            raise ExecutorError(f"File operation '{operation}' failed: {e}", node.id) from e

        logger.info(f"File {operation} on '{path}' for node {node.id}")
        return ExecutorResult(output=output, variables=self.output_variables(node, output))

    @staticmethod
    def _run(
        fs: FileSystemCapability,
        operation: str,
        path: str,
        destination: Any,
        content: Any,
        overwrite: bool,
    ) -> Dict[str, Any]:
        if operation == "read":
            return {"path": path, "content": fs.read(path)}
        if operation == "write":
            written = fs.write(path, content, overwrite=overwrite)
            return {"path": written, "bytes": len(content.encode("utf-8"))}
        if operation == "copy":
            return {"source": path, "destination": fs.copy(path, destination, overwrite=overwrite)}
        if operation == "move":
            return {"source": path, "destination": fs.move(path, destination, overwrite=overwrite)}
        if operation == "delete":
            return {"path": path, "existed": fs.delete(path)}
        if operation == "exists":
            return {"path": path, "exists": fs.exists(path)}
        return {"path": path, "entries": fs.list(path)}
