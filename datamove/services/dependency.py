"""Dependency graph and processing order for the objects of an object set."""

import logging
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..models.script import ObjectSet, ScriptObject

logger = logging.getLogger(__name__)

LOOKUP_EDGE_WEIGHT = 1
MASTER_DETAIL_EDGE_WEIGHT = 2

# parent entity -> {child entity: edge weight}
DependencyGraph = Dict[str, Dict[str, int]]


def build_dependency_graph(objects: List[ScriptObject]) -> DependencyGraph:
    """
    Build the reverse reference graph of a list of objects.

    Every lookup from a child to a parent declared in the same list becomes
    an edge ``parent -> child``. Master-detail lookups weigh more than plain
    lookups; when a child references the same parent several times the
    heaviest edge is kept. Self references are ignored.
    """
    names = {obj.name for obj in objects}
    graph: DependencyGraph = {obj.name: {} for obj in objects}

    for child in objects:
        master_detail = child.extra.master_detail_object_name_mapping
        for field_name, parent_name in child.extra.lookup_object_name_mapping.items():
            if parent_name == child.name or parent_name not in names:
                continue
            weight = MASTER_DETAIL_EDGE_WEIGHT if field_name in master_detail else LOOKUP_EDGE_WEIGHT
            edges = graph[parent_name]
            edges[child.name] = max(edges.get(child.name, 0), weight)

    return graph


def compute_object_weights(graph: DependencyGraph) -> Dict[str, int]:
    """
    Weight each node by the sum of its edge weights plus the weights of its dependents.

    A dependent that is already on the current path contributes only its
    edge weight, so cycles terminate.
    """
    memo: Dict[str, int] = {}

    def weigh(name: str, path: FrozenSet[str]) -> int:
        if name in memo:
            return memo[name]
        path = path | {name}
        total = 0
        for child_name, edge_weight in graph.get(name, {}).items():
            total += edge_weight
            if child_name not in path:
                total += weigh(child_name, path)
        memo[name] = total
        return total

    for name in graph:
        weigh(name, frozenset())

    return memo


def compute_objects_order(object_set: ObjectSet) -> Tuple[List[str], List[str]]:
    """
    Compute and store the write and delete order of an object set.

    Objects are written heaviest first; ties keep declaration order. The
    delete order is the exact reverse.
    """
    graph = build_dependency_graph(object_set.objects)
    weights = compute_object_weights(graph)

    declared = [obj.name for obj in object_set.objects]
    update_order = sorted(declared, key=lambda name: -weights.get(name, 0))
    delete_order = list(reversed(update_order))

    object_set.update_objects_order = update_order
    object_set.delete_objects_order = delete_order

    logger.debug(f"Object set {object_set.index} weights: {weights}")
    logger.info(f"Object set {object_set.index} write order: {', '.join(update_order)}")
    return update_order, delete_order


def find_referencing_objects(obj: ScriptObject, object_set: Optional[ObjectSet] = None) -> List[ScriptObject]:
    """Objects of the same set that look up ``obj``."""
    object_set = object_set or obj.object_set
    if object_set is None:
        return []
    return [
        other for other in object_set.objects
        if other is not obj and obj.name in other.extra.lookup_object_name_mapping.values()
    ]
