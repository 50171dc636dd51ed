"""
Face adjacency graph with per-node labels.

One node per mesh face, an undirected edge between any two faces that share
a mesh edge (two vertices). Every node carries a mutable label: the index of
the texture view selected for the face, or INVALID_LABEL.

The graph is stored as an arena: a Python list of sorted adjacency lists
indexed by face id, plus a numpy label array. There are no node objects:
node ids are face ids everywhere in the pipeline.
"""

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from texrecon.core.errors import InputError


# Reserved label for faces that no view can texture.
INVALID_LABEL = -1


class Graph:
    """Undirected face graph with one label per node."""

    def __init__(self, num_nodes: int):
        self._adjacency: list[list[int]] = [[] for _ in range(num_nodes)]
        self._labels = np.full(num_nodes, INVALID_LABEL, dtype=np.int64)
        self._num_edges = 0

    def num_nodes(self) -> int:
        return len(self._adjacency)

    def num_edges(self) -> int:
        return self._num_edges

    def add_edge(self, a: int, b: int) -> None:
        """Connect two nodes. Self loops and duplicate edges are ignored."""
        if a == b or self.has_edge(a, b):
            return
        self._insert_sorted(self._adjacency[a], b)
        self._insert_sorted(self._adjacency[b], a)
        self._num_edges += 1

    def has_edge(self, a: int, b: int) -> bool:
        adj = self._adjacency[a]
        i = int(np.searchsorted(adj, b)) if adj else 0
        return i < len(adj) and adj[i] == b

    def neighbors(self, node: int) -> list[int]:
        """Sorted ids of the nodes adjacent to `node`."""
        return self._adjacency[node]

    def set_label(self, node: int, label: int) -> None:
        self._labels[node] = label

    def get_label(self, node: int) -> int:
        return int(self._labels[node])

    @property
    def labels(self) -> np.ndarray:
        """Copy of the label array (index = face id)."""
        return self._labels.copy()

    def set_labels(self, labels) -> None:
        labels = np.asarray(labels, dtype=np.int64)
        if labels.shape != self._labels.shape:
            raise ValueError(
                f"Expected {len(self._labels)} labels, got {labels.shape[0] if labels.ndim else 0}"
            )
        self._labels[:] = labels

    def edge_array(self) -> np.ndarray:
        """All edges as an (E, 2) array with edge[0] < edge[1], sorted."""
        pairs = [
            (a, b)
            for a, adj in enumerate(self._adjacency)
            for b in adj
            if a < b
        ]
        if not pairs:
            return np.zeros((0, 2), dtype=np.int64)
        return np.asarray(pairs, dtype=np.int64)

    def get_subgraphs(self, label: int) -> list[np.ndarray]:
        """
        Connected components of the nodes carrying `label`.

        Only edges whose two endpoints both carry the label are followed.
        Each component is a sorted array of face ids; components are ordered
        by their smallest face id, so the result is deterministic.
        """
        members = np.flatnonzero(self._labels == label)
        if members.size == 0:
            return []

        edges = self.edge_array()
        if edges.size:
            keep = (self._labels[edges[:, 0]] == label) & (self._labels[edges[:, 1]] == label)
            edges = edges[keep]

        # Compact the member ids so the component search only touches
        # the nodes of interest.
        local = np.full(self.num_nodes(), -1, dtype=np.int64)
        local[members] = np.arange(members.size)
        rows = local[edges[:, 0]]
        cols = local[edges[:, 1]]
        matrix = coo_matrix(
            (np.ones(rows.size, dtype=np.int8), (rows, cols)),
            shape=(members.size, members.size),
        )
        _, component = connected_components(matrix, directed=False)

        groups: dict[int, list[int]] = {}
        for face, comp in zip(members.tolist(), component.tolist()):
            groups.setdefault(comp, []).append(face)
        subgraphs = [np.asarray(faces, dtype=np.int64) for faces in groups.values()]
        subgraphs.sort(key=lambda faces: int(faces[0]))
        return subgraphs

    @staticmethod
    def _insert_sorted(adj: list[int], value: int) -> None:
        i = int(np.searchsorted(adj, value)) if adj else 0
        adj.insert(i, value)


def build_adjacency_graph(mesh, vertex_infos) -> Graph:
    """
    Build the face adjacency graph of `mesh`.

    Two faces are adjacent when they share two vertices. For every mesh
    edge (v, u) the faces incident to both endpoints are looked up in the
    vertex infos and connected pairwise. Non-manifold edges (three or more
    faces) connect every face pair around them.

    Raises:
        InputError: If vertex_infos does not belong to this mesh.
    """
    if len(vertex_infos) != mesh.num_vertices:
        raise InputError(
            f"Vertex info count ({len(vertex_infos)}) does not match "
            f"mesh vertex count ({mesh.num_vertices})"
        )

    graph = Graph(mesh.num_faces)
    for v, info in enumerate(vertex_infos):
        v_faces = set(info.faces.tolist())
        for u in info.verts.tolist():
            if u < v:
                continue
            shared = sorted(v_faces.intersection(vertex_infos[u].faces.tolist()))
            for i, a in enumerate(shared):
                for b in shared[i + 1:]:
                    graph.add_edge(a, b)
    return graph
