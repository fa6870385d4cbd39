"""Structural validation of workflow graphs before execution."""

from typing import Dict, List, Set

from ..models.core import Graph, GraphIssue, NodeKind, ValidationResult
from .logging import get_logger

logger = get_logger(__name__)


DANGLING_EDGE = "DANGLING_EDGE"
NO_ENTRY_POINT = "NO_ENTRY_POINT"


def find_entry_points(graph: Graph) -> List[str]:
    """
    Locate traversal roots.

    A node is an entry point when it is a trigger or when no edge targets it.

    Args:
        graph: The graph to inspect

    Returns:
        Entry point node IDs in node declaration order
    """
    targets = {edge.target for edge in graph.edges}
    return [
        node.id for node in graph.nodes
        if node.kind == NodeKind.TRIGGER or node.id not in targets
    ]


def validate_graph(graph: Graph) -> ValidationResult:
    """
    Validate a graph for structural correctness.

    Dangling edges are reported first, then a missing entry point. Cycles,
    isolated nodes and untagged condition edges only produce warnings.

    Args:
        graph: The graph definition to validate

    Returns:
        ValidationResult: Validation results with errors and warnings
    """
    logger.debug(f"Validating graph {graph.id} with {len(graph.nodes)} nodes and {len(graph.edges)} edges")

    errors: List[GraphIssue] = []
    warnings: List[str] = []

    _validate_edge_references(graph, errors)
    entry_points = find_entry_points(graph)
    _validate_entry_points(entry_points, errors)

    _validate_cycles(graph, warnings)
    _validate_isolated_nodes(graph, warnings)
    _validate_condition_edges(graph, warnings)

    result = ValidationResult(
        is_valid=len(errors) == 0,
        errors=errors,
        warnings=warnings,
        entry_points=entry_points,
    )

    logger.debug(f"Graph validation completed. Valid: {result.is_valid}, "
                 f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
    return result


def ensure_valid(graph: Graph) -> ValidationResult:
    """
    Validate a graph and raise on the first error.

    Raises:
        DanglingEdgeError: If an edge references a missing node
        NoEntryPointError: If the graph has no entry point
    """
    result = validate_graph(graph)
    result.raise_for_errors()
    return result


def _validate_edge_references(graph: Graph, errors: List[GraphIssue]):
    """Append one issue per edge endpoint that names a missing node."""
    node_ids = set(graph.node_ids)
    for edge in graph.edges:
        if edge.source not in node_ids:
            errors.append(GraphIssue(
                code=DANGLING_EDGE,
                message=f"Edge references non-existent source node: '{edge.source}'",
                node_id=edge.source,
            ))
        if edge.target not in node_ids:
            errors.append(GraphIssue(
                code=DANGLING_EDGE,
                message=f"Edge references non-existent target node: '{edge.target}'",
                node_id=edge.target,
            ))


def _validate_entry_points(entry_points: List[str], errors: List[GraphIssue]):
    if not entry_points:
        errors.append(GraphIssue(
            code=NO_ENTRY_POINT,
            message="No entry point found: add a trigger node or a node without incoming edges",
        ))


def _validate_cycles(graph: Graph, warnings: List[str]):
    """
    Warn about cycles. Traversal visits each node at most once, so cycles
    terminate, but the looping edges are never followed a second time.
    """
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in graph.node_ids}
    for edge in graph.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)

    white, grey, black = 0, 1, 2
    color = {node_id: white for node_id in adjacency}
    cyclic: Set[str] = set()

    for root in adjacency:
        if color[root] != white:
            continue
        # Iterative DFS; stack holds (node, iterator over children)
        stack = [(root, iter(adjacency[root]))]
        color[root] = grey
        while stack:
            node_id, children = stack[-1]
            advanced = False
            for child in children:
                if color[child] == grey:
                    cyclic.add(child)
                elif color[child] == white:
                    color[child] = grey
                    stack.append((child, iter(adjacency[child])))
                    advanced = True
                    break
            if not advanced:
                color[node_id] = black
                stack.pop()

    if cyclic:
        warnings.append(
            f"Graph contains cycles through: {', '.join(sorted(cyclic))}. "
            "Each node runs at most once per execution."
        )


def _validate_isolated_nodes(graph: Graph, warnings: List[str]):
    if len(graph.nodes) < 2:
        return
    connected = {edge.source for edge in graph.edges} | {edge.target for edge in graph.edges}
    isolated = [node.id for node in graph.nodes if node.id not in connected]
    if isolated:
        warnings.append(f"Isolated nodes detected: {', '.join(isolated)}")


def _validate_condition_edges(graph: Graph, warnings: List[str]):
    for node in graph.nodes:
        if node.kind != NodeKind.CONDITION:
            continue
        untagged = [edge.target for edge in graph.outgoing_edges(node.id) if not edge.branch_tag]
        if untagged:
            warnings.append(
                f"Condition node '{node.id}' has edges without a branch tag "
                f"({', '.join(untagged)}); they are followed on the 'true' branch"
            )
