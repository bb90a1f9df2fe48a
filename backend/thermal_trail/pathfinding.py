from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from math import inf

from .cost_model import MIXED_LAND_COVER, CostModel
from .errors import NoPathFoundError, SearchCancelledError
from .geo import haversine_m
from .road_graph import RoadGraph

EdgeCostFn = Callable[[int, int], float]


@dataclass(frozen=True)
class SearchResult:
    nodes: tuple[int, ...]
    cost: float
    explored: int


@dataclass(frozen=True)
class PathResult:
    node_ids: tuple[str, ...]
    # (lat, lon) per node, start first.
    positions: tuple[tuple[float, float], ...]
    distance_m: float
    temperature_c: float
    land_cover: str
    search_cost: float
    explored_nodes: int


def _raise_if_aborted(
    *,
    cancel_event: threading.Event | None,
    deadline_monotonic_s: float | None,
) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SearchCancelledError("route search cancelled by caller")
    if deadline_monotonic_s is not None and time.monotonic() >= float(deadline_monotonic_s):
        raise SearchCancelledError("route search deadline exceeded", reason_code="search_deadline_exceeded")


def _reconstruct(came_from: dict[int, int], start: int, goal: int) -> tuple[int, ...]:
    backwards = [goal]
    current = goal
    while current != start:
        current = came_from[current]
        backwards.append(current)
    backwards.reverse()
    return tuple(backwards)


def a_star_search(
    graph: RoadGraph,
    start: int,
    goal: int,
    *,
    edge_cost: EdgeCostFn | None = None,
    cancel_event: threading.Event | None = None,
    deadline_monotonic_s: float | None = None,
    max_expansions: int | None = None,
) -> SearchResult:
    """A* over node indices with a great-circle heuristic to ``goal``.

    ``edge_cost`` defaults to edge length in metres. Any cost that never drops
    below the edge length keeps the heuristic consistent, so a node is final
    once expanded. Equal f-scores pop in push order.
    """
    cost_fn = edge_cost or graph.edge_length_m
    goal_node = graph.nodes[goal]

    def heuristic(index: int) -> float:
        node = graph.nodes[index]
        return haversine_m(node.lat, node.lon, goal_node.lat, goal_node.lon)

    g_score: dict[int, float] = {start: 0.0}
    came_from: dict[int, int] = {}
    closed: set[int] = set()
    tie = itertools.count()
    open_heap: list[tuple[float, int, int]] = [(heuristic(start), next(tie), start)]
    explored = 0

    while open_heap:
        _raise_if_aborted(cancel_event=cancel_event, deadline_monotonic_s=deadline_monotonic_s)
        _f, _order, current = heapq.heappop(open_heap)
        if current in closed:
            continue
        if current == goal:
            return SearchResult(
                nodes=_reconstruct(came_from, start, goal),
                cost=g_score[current],
                explored=explored,
            )
        closed.add(current)
        explored += 1
        if max_expansions is not None and explored > max_expansions:
            raise SearchCancelledError(
                "route search expansion budget exceeded",
                reason_code="search_budget_exceeded",
                details={"max_expansions": int(max_expansions)},
            )
        base = g_score[current]
        for nxt in graph.neighbors(current):
            if nxt in closed:
                continue
            tentative = base + max(0.0, float(cost_fn(current, nxt)))
            if tentative < g_score.get(nxt, inf):
                came_from[nxt] = current
                g_score[nxt] = tentative
                heapq.heappush(open_heap, (tentative + heuristic(nxt), next(tie), nxt))

    raise NoPathFoundError(
        "no path between start and end",
        details={"explored_nodes": explored},
    )


def heat_weighted_edge_cost(graph: RoadGraph, cost_model: CostModel) -> EdgeCostFn:
    """Edge length scaled by the heat multiplier at the node being entered."""

    def _cost(a: int, b: int) -> float:
        target = graph.nodes[b]
        return graph.edge_length_m(a, b) * cost_model.heat_multiplier(target.lat, target.lon)

    return _cost


def _dominant_land_cover(labels: list[str | None]) -> str:
    counts = Counter(label for label in labels if label)
    if not counts:
        return MIXED_LAND_COVER
    # most_common keeps first-seen order among equal counts.
    return counts.most_common(1)[0][0]


def assemble_path_result(
    graph: RoadGraph,
    search: SearchResult,
    cost_model: CostModel,
) -> PathResult:
    path_nodes = [graph.nodes[i] for i in search.nodes]
    distance_m = sum(graph.edge_length_m(a, b) for a, b in zip(search.nodes, search.nodes[1:]))
    temperatures = [cost_model.adjusted_temperature(n.lat, n.lon) for n in path_nodes]
    labels = [cost_model.land_cover_at(n.lat, n.lon) for n in path_nodes]
    return PathResult(
        node_ids=tuple(n.id for n in path_nodes),
        positions=tuple((n.lat, n.lon) for n in path_nodes),
        distance_m=float(distance_m),
        temperature_c=float(sum(temperatures) / len(temperatures)),
        land_cover=_dominant_land_cover(labels),
        search_cost=float(search.cost),
        explored_nodes=int(search.explored),
    )


def find_coolest_path(
    graph: RoadGraph,
    cost_model: CostModel,
    start: tuple[float, float],
    end: tuple[float, float],
    *,
    cancel_event: threading.Event | None = None,
    deadline_monotonic_s: float | None = None,
    max_expansions: int | None = None,
) -> PathResult:
    """Snap ``start``/``end`` (lat, lon) onto the graph and search between them."""
    start_node = graph.nearest_node(*start)
    end_node = graph.nearest_node(*end)
    if not graph.same_component(start_node.index, end_node.index):
        raise NoPathFoundError(
            "start and end are in disconnected parts of the road network",
            reason_code="disconnected_od",
            details={"start_node": start_node.id, "end_node": end_node.id},
        )
    edge_cost = (
        heat_weighted_edge_cost(graph, cost_model)
        if cost_model.heat_penalty_per_degree > 0.0
        else None
    )
    search = a_star_search(
        graph,
        start_node.index,
        end_node.index,
        edge_cost=edge_cost,
        cancel_event=cancel_event,
        deadline_monotonic_s=deadline_monotonic_s,
        max_expansions=max_expansions,
    )
    return assemble_path_result(graph, search, cost_model)
