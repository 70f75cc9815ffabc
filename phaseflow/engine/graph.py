"""
Workflow Graph.

Indexes a WorkflowDefinition's nodes and edges for the engine: successor
lookup, branch selection, loop bodies, rejection handlers, validation
and a Mermaid rendering.
"""

from typing import Dict, List, Optional, Set

from phaseflow.engine.errors import NoMatchingBranch
from phaseflow.engine.models import EdgeType, NodeType, WorkflowDefinition, WorkflowEdge, WorkflowNode


# Edge target that ends the walk explicitly
END = "__END__"


class WorkflowGraph:
    """
    Read-only view of a definition's control flow.

    A definition without edges runs its nodes in declaration order.
    Otherwise:
        - sequential edges give a node's successor (first declared wins)
        - conditional edges are chosen by the label a conditional node
          returns; an edge marked ``default`` (or a plain sequential
          edge) is the fallback
        - a loop edge points from a loop node to its body; the body runs
          until control returns to the loop node, and the loop node's
          sequential edge is its exit
        - a rejection edge is followed when the source's approval is
          rejected
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self.nodes: Dict[str, WorkflowNode] = {node.id: node for node in definition.nodes}
        self.entry_point: Optional[str] = definition.entry_point or (
            definition.nodes[0].id if definition.nodes else None
        )

        self._sequential: Dict[str, str] = {}
        self._conditional: Dict[str, List[WorkflowEdge]] = {}
        self._loop_body: Dict[str, str] = {}
        self._rejection: Dict[str, str] = {}

        if definition.edges:
            for edge in definition.edges:
                self._index(edge)
        else:
            ids = [node.id for node in definition.nodes]
            for source, target in zip(ids, ids[1:]):
                self._sequential[source] = target

    def _index(self, edge: WorkflowEdge) -> None:
        if edge.type == EdgeType.SEQUENTIAL:
            self._sequential.setdefault(edge.source, edge.target)
        elif edge.type == EdgeType.CONDITIONAL:
            self._conditional.setdefault(edge.source, []).append(edge)
        elif edge.type == EdgeType.LOOP:
            self._loop_body.setdefault(edge.source, edge.target)
        elif edge.type == EdgeType.REJECTION:
            self._rejection.setdefault(edge.source, edge.target)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self.nodes.get(node_id)

    def next_node(self, node_id: str) -> Optional[str]:
        """Sequential successor, or None at the end of the graph."""
        target = self._sequential.get(node_id)
        return None if target == END else target

    def branch_target(self, node_id: str, label: Optional[str]) -> Optional[str]:
        """
        Successor of a conditional node for the chosen label.

        Raises:
            NoMatchingBranch: if neither a labelled nor a default edge exists
        """
        edges = self._conditional.get(node_id, [])
        if label is not None:
            for edge in edges:
                if edge.label == label:
                    return None if edge.target == END else edge.target
        for edge in edges:
            if edge.default:
                return None if edge.target == END else edge.target
        if node_id in self._sequential:
            return self.next_node(node_id)
        raise NoMatchingBranch(
            f"No branch of '{node_id}' matches label '{label}' and no default is declared",
            node_id,
        )

    def loop_body(self, node_id: str) -> Optional[str]:
        return self._loop_body.get(node_id)

    def rejection_target(self, node_id: str) -> Optional[str]:
        target = self._rejection.get(node_id)
        return None if target == END else target

    def has_rejection_handler(self, node_id: str) -> bool:
        return node_id in self._rejection

    def successors(self, node_id: str) -> List[str]:
        targets = []
        if node_id in self._sequential:
            targets.append(self._sequential[node_id])
        targets.extend(edge.target for edge in self._conditional.get(node_id, []))
        if node_id in self._loop_body:
            targets.append(self._loop_body[node_id])
        if node_id in self._rejection:
            targets.append(self._rejection[node_id])
        return targets

    def validate(self) -> List[str]:
        """
        Validate the graph structure.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.nodes:
            errors.append("Workflow must have at least one node")
            return errors

        if len(self.nodes) != len(self.definition.nodes):
            seen: Set[str] = set()
            duplicates: Set[str] = set()
            for node in self.definition.nodes:
                if node.id in seen:
                    duplicates.add(node.id)
                seen.add(node.id)
            errors.append(f"Duplicate node ids: {sorted(duplicates)}")

        if self.entry_point not in self.nodes:
            errors.append(f"Entry point '{self.entry_point}' not found in nodes")

        for edge in self.definition.edges:
            if edge.source not in self.nodes:
                errors.append(f"Edge source '{edge.source}' is not a valid node")
            if edge.target != END and edge.target not in self.nodes:
                errors.append(f"Edge target '{edge.target}' is not a valid node")
            if edge.type == EdgeType.LOOP and self.nodes.get(edge.source) is not None \
                    and self.nodes[edge.source].type != NodeType.LOOP:
                errors.append(f"Loop edge from non-loop node '{edge.source}'")

        for node in self.nodes.values():
            if node.type == NodeType.LOOP and node.id not in self._loop_body:
                errors.append(f"Loop node '{node.id}' has no loop edge to its body")

        reachable = self._get_reachable_nodes()
        orphans = set(self.nodes) - reachable
        if orphans and not errors:
            errors.append(f"Orphan nodes (not reachable): {sorted(orphans)}")

        return errors

    def _get_reachable_nodes(self) -> Set[str]:
        if self.entry_point not in self.nodes:
            return set()

        reachable: Set[str] = set()
        to_visit = [self.entry_point]
        while to_visit:
            node_id = to_visit.pop()
            if node_id in reachable or node_id == END or node_id not in self.nodes:
                continue
            reachable.add(node_id)
            to_visit.extend(self.successors(node_id))
        return reachable

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        lines = ["graph TD"]

        for node in self.nodes.values():
            label = f"{node.display_name} ({node.type.value})"
            if node.type == NodeType.CONDITIONAL:
                lines.append(f'    {node.id}{{"{label}"}}')
            else:
                lines.append(f'    {node.id}["{label}"]')

        uses_end = any(edge.target == END for edge in self.definition.edges)
        if uses_end:
            lines.append(f'    {END}(("END"))')

        if not self.definition.edges:
            for source, target in self._sequential.items():
                lines.append(f"    {source} --> {target}")

        for edge in self.definition.edges:
            if edge.type == EdgeType.CONDITIONAL:
                label = edge.label or ("default" if edge.default else "")
                lines.append(f"    {edge.source} -->|{label}| {edge.target}")
            elif edge.type == EdgeType.LOOP:
                lines.append(f"    {edge.source} -.->|body| {edge.target}")
            elif edge.type == EdgeType.REJECTION:
                lines.append(f"    {edge.source} -.->|rejected| {edge.target}")
            else:
                lines.append(f"    {edge.source} --> {edge.target}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"WorkflowGraph(id='{self.definition.id}', nodes={list(self.nodes)}, "
            f"entry='{self.entry_point}')"
        )
