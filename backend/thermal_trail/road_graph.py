from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import numpy as np

from .errors import NoGraphDataError, UpstreamDataError
from .geo import haversine_m, haversine_m_many


@dataclass(frozen=True)
class RoadNode:
    index: int
    id: str
    lat: float
    lon: float


@dataclass(frozen=True)
class RoadNetworkData:
    """Raw provider payload: node coordinates plus ways as ordered node refs."""

    nodes: Mapping[str, tuple[float, float]]
    ways: Sequence[Sequence[str]]


@dataclass(frozen=True)
class RoadGraph:
    """Undirected road graph stored as flat arrays indexed by node position.

    ``adjacency[i]`` holds the sorted neighbour indices of ``nodes[i]``; edge
    weights are derived on demand from coordinates, never stored.
    """

    nodes: tuple[RoadNode, ...]
    index_by_id: dict[str, int]
    adjacency: tuple[tuple[int, ...], ...]
    component_by_index: tuple[int, ...]
    component_count: int
    edge_count: int
    dropped_refs: int = 0

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, node_id: str) -> RoadNode:
        return self.nodes[self.index_by_id[str(node_id)]]

    def neighbors(self, index: int) -> tuple[int, ...]:
        return self.adjacency[index]

    def has_edge(self, a: int, b: int) -> bool:
        return b in self.adjacency[a]

    def edge_length_m(self, a: int, b: int) -> float:
        na = self.nodes[a]
        nb = self.nodes[b]
        return haversine_m(na.lat, na.lon, nb.lat, nb.lon)

    def same_component(self, a: int, b: int) -> bool:
        return self.component_by_index[a] == self.component_by_index[b]

    def nearest_node(self, lat: float, lon: float) -> RoadNode:
        if not self.nodes:
            raise NoGraphDataError("no road nodes in the queried area")
        lats = np.fromiter((n.lat for n in self.nodes), dtype=np.float64, count=len(self.nodes))
        lons = np.fromiter((n.lon for n in self.nodes), dtype=np.float64, count=len(self.nodes))
        distances = haversine_m_many(lat, lon, lats, lons)
        return self.nodes[int(np.argmin(distances))]


def _parse_coord(raw: object) -> float | None:
    if not isinstance(raw, (int, float, str, Decimal)) or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _parse_node(raw: Mapping[str, Any]) -> tuple[str, float, float] | None:
    node_id_raw = raw.get("id")
    if node_id_raw is None:
        return None
    lat = _parse_coord(raw.get("lat"))
    lon = _parse_coord(raw.get("lon"))
    if lat is None or lon is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return (str(node_id_raw), lat, lon)


def parse_overpass_elements(payload: Any) -> RoadNetworkData:
    """Split an Overpass ``out body`` JSON document into nodes and ways."""
    if not isinstance(payload, dict):
        raise UpstreamDataError("road network payload is not a JSON object", reason_code="upstream_data_malformed")
    elements = payload.get("elements")
    if not isinstance(elements, list):
        raise UpstreamDataError("road network payload has no elements list", reason_code="upstream_data_malformed")
    nodes: dict[str, tuple[float, float]] = {}
    ways: list[tuple[str, ...]] = []
    for element in elements:
        if not isinstance(element, dict):
            continue
        kind = element.get("type")
        if kind == "node":
            parsed = _parse_node(element)
            if parsed is not None:
                node_id, lat, lon = parsed
                nodes[node_id] = (lat, lon)
        elif kind == "way":
            refs = element.get("nodes")
            if isinstance(refs, list) and len(refs) >= 2:
                ways.append(tuple(str(ref) for ref in refs))
    return RoadNetworkData(nodes=nodes, ways=ways)


def _compute_components(adjacency: Sequence[Iterable[int]]) -> tuple[tuple[int, ...], int]:
    component_by_index = [-1] * len(adjacency)
    component_idx = 0
    for start in range(len(adjacency)):
        if component_by_index[start] != -1:
            continue
        q: deque[int] = deque([start])
        component_by_index[start] = component_idx
        while q:
            current = q.popleft()
            for nxt in adjacency[current]:
                if component_by_index[nxt] == -1:
                    component_by_index[nxt] = component_idx
                    q.append(nxt)
        component_idx += 1
    return tuple(component_by_index), component_idx


def build_road_graph(network: RoadNetworkData) -> RoadGraph:
    nodes: list[RoadNode] = []
    index_by_id: dict[str, int] = {}
    for node_id, (lat, lon) in network.nodes.items():
        key = str(node_id)
        if key in index_by_id:
            continue
        index_by_id[key] = len(nodes)
        nodes.append(RoadNode(index=len(nodes), id=key, lat=float(lat), lon=float(lon)))

    neighbor_sets: list[set[int]] = [set() for _ in nodes]
    dropped_refs = 0
    for way in network.ways:
        for raw_from, raw_to in zip(way, way[1:]):
            a = index_by_id.get(str(raw_from))
            b = index_by_id.get(str(raw_to))
            if a is None or b is None:
                # Ways clipped by the bbox can reference nodes outside it.
                dropped_refs += 1
                continue
            if a == b:
                continue
            neighbor_sets[a].add(b)
            neighbor_sets[b].add(a)

    adjacency = tuple(tuple(sorted(s)) for s in neighbor_sets)
    edge_count = sum(len(s) for s in adjacency) // 2
    component_by_index, component_count = _compute_components(adjacency)
    return RoadGraph(
        nodes=tuple(nodes),
        index_by_id=index_by_id,
        adjacency=adjacency,
        component_by_index=component_by_index,
        component_count=component_count,
        edge_count=edge_count,
        dropped_refs=dropped_refs,
    )
