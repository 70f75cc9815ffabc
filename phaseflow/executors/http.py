"""
HTTP request node executor.
"""

from typing import Any, Dict, Optional
import base64
import json
import logging

from phaseflow.engine.errors import ExecutorError
from phaseflow.engine.models import NodeType, WorkflowNode
from phaseflow.executors.base import ExecutionScope, ExecutorResult, NodeExecutor, template_scope


logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
BODY_METHODS = ("POST", "PUT", "PATCH")


class HttpRequestExecutor(NodeExecutor):
    """
    Issues an outbound HTTP request through the HTTP capability.

    Config:
        method: GET | POST | PUT | PATCH | DELETE (default GET)
        url: URL template
        headers: Header name -> value template
        body: Template string (JSON-looking text is decoded) or a dict
            whose string values are templates
        auth: {"type": "none" | "basic" | "bearer" | "api-key", ...}
        response_type: "json" (default) or "text"
        request_timeout_ms: Timeout for the request itself

    Output:
        {"status", "headers", "body"}. Non-2xx responses fail the node.
    """

    node_types = (NodeType.HTTP_REQUEST,)

    async def execute(
        self,
        node: WorkflowNode,
        resolved_input: Dict[str, Any],
        scope: ExecutionScope,
    ) -> ExecutorResult:
        http = scope.capabilities.http
        if http is None:
            raise ExecutorError("No HTTP capability configured", node.id)

        config = node.config
        render_scope = template_scope(resolved_input, scope)
        resolver = scope.resolver

        method = str(config.get("method", "GET")).upper()
        if method not in HTTP_METHODS:
            raise ExecutorError(f"Unsupported HTTP method '{method}'", node.id)
        url_template = config.get("url") or resolved_input.get("url")
        if not url_template:
            raise ExecutorError("HTTP node has no URL", node.id)
        url = resolver.render(str(url_template), render_scope, node.id)

        headers = {
            name: resolver.render(str(value), render_scope, node.id)
            for name, value in (config.get("headers") or {}).items()
        }
        headers.update(self._auth_headers(config.get("auth"), render_scope, scope, node))

        body = None
        if method in BODY_METHODS:
            body = self._render_body(config.get("body", resolved_input.get("body")), render_scope, scope, node)
            if isinstance(body, (dict, list)):
                headers.setdefault("Content-Type", "application/json")

        timeout_ms = config.get("request_timeout_ms")
        timeout = timeout_ms / 1000.0 if timeout_ms else None

        try:
            response = await http.request(method, url, headers=headers, body=body, timeout=timeout)
        except ExecutorError:
            raise
        except Exception as e:
            raise ExecutorError(f"HTTP request failed: {e}", node.id, {"url": url}) from e

        if not response.ok:
            raise ExecutorError(
                f"HTTP {response.status}: {response.body[:200]}",
                node.id,
                {"status": response.status, "url": url, "body": response.body},
            )

        payload: Any = response.body
        if config.get("response_type", "json") == "json" and response.body:
            try:
                payload = response.json()
            except ValueError as e:
                raise ExecutorError(f"Response is not valid JSON: {e}", node.id) from e
        elif config.get("response_type", "json") == "json":
            payload = None

        output = {"status": response.status, "headers": response.headers, "body": payload}
        return ExecutorResult(output=output, variables=self.output_variables(node, output))

    @staticmethod
    def _render_body(body: Any, render_scope: Dict[str, Any], scope: ExecutionScope, node: WorkflowNode) -> Any:
        if body is None:
            return None
        if isinstance(body, str):
            rendered = scope.resolver.render(body, render_scope, node.id)
            stripped = rendered.strip()
            if stripped[:1] in ("{", "["):
                try:
                    return json.loads(stripped)
                except ValueError:
                    return rendered
            return rendered
        return scope.resolver.render_value(body, render_scope, node.id)

    @staticmethod
    def _auth_headers(
        auth: Optional[Dict[str, Any]],
        render_scope: Dict[str, Any],
        scope: ExecutionScope,
        node: WorkflowNode,
    ) -> Dict[str, str]:
        if not auth or auth.get("type", "none") == "none":
            return {}

        def value(key: str) -> str:
            return scope.resolver.render(str(auth.get(key, "")), render_scope, node.id)

        auth_type = auth["type"]
        if auth_type == "basic":
            credentials = f"{value('username')}:{value('password')}".encode("utf-8")
            return {"Authorization": "Basic " + base64.b64encode(credentials).decode("ascii")}
        if auth_type == "bearer":
            return {"Authorization": f"Bearer {value('token')}"}
        if auth_type == "api-key":
            header = auth.get("header", "X-API-Key")
            return {header: value("key")}
        raise ExecutorError(f"Unsupported auth type '{auth_type}'", node.id)
