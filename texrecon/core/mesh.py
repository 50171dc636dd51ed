"""
Triangle mesh container and per-vertex topology.

The pipeline treats the mesh as read-only input: vertices (V, 3) and faces
(F, 3). Everything derived from it — face normals, face areas, vertex normals
and the per-vertex incidence lists (VertexInfo) — is computed once here and
never mutated afterwards. All arrays are marked read-only so an accidental
in-place write in a later stage fails loudly instead of corrupting the run.

Mesh files are loaded through trimesh with processing disabled: merging
vertices or dropping faces would silently change face ids, and face ids are
the keys of every later stage (graph nodes, data cost rows, labeling files).
"""

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import trimesh

from texrecon.core.errors import InputError


# Face normals shorter than this are treated as zero (degenerate sliver).
NORMAL_EPSILON = 1e-12


def _readonly(array):
    array.setflags(write=False)
    return array


class Mesh:
    """
    Immutable triangle mesh.

    Args:
        vertices: (V, 3) array-like of vertex positions.
        faces:    (F, 3) array-like of vertex indices.

    Raises:
        InputError: If the arrays have the wrong shape, contain non-finite
                    coordinates, reference missing vertices, or contain a
                    face that repeats a vertex.
    """

    def __init__(self, vertices, faces):
        vertices = np.asarray(vertices, dtype=np.float64)
        faces = np.asarray(faces)

        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise InputError(f"Mesh vertices must have shape (V, 3), got {vertices.shape}")
        if faces.ndim != 2 or faces.shape[1] != 3:
            raise InputError(f"Mesh faces must have shape (F, 3), got {faces.shape}")
        if not np.all(np.isfinite(vertices)):
            raise InputError("Mesh contains non-finite vertex coordinates")
        if faces.size and not np.issubdtype(faces.dtype, np.integer):
            raise InputError("Mesh face indices must be integers")

        faces = faces.astype(np.int64)
        if faces.size and (faces.min() < 0 or faces.max() >= len(vertices)):
            raise InputError("Mesh faces reference vertices that do not exist")
        if faces.size:
            repeated = (
                (faces[:, 0] == faces[:, 1])
                | (faces[:, 1] == faces[:, 2])
                | (faces[:, 0] == faces[:, 2])
            )
            if repeated.any():
                bad = int(np.flatnonzero(repeated)[0])
                raise InputError(f"Mesh face {bad} repeats a vertex")

        self.vertices = _readonly(vertices)
        self.faces = _readonly(faces)

        # Per-face geometry. The cross product gives both the normal
        # direction and twice the triangle area.
        tri = vertices[faces] if faces.size else np.zeros((0, 3, 3))
        cross = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        lengths = np.linalg.norm(cross, axis=1)
        safe = np.where(lengths > NORMAL_EPSILON, lengths, 1.0)
        normals = np.where(
            (lengths > NORMAL_EPSILON)[:, np.newaxis], cross / safe[:, np.newaxis], 0.0
        )
        self.face_normals = _readonly(normals)
        self.face_areas = _readonly(0.5 * lengths)
        self.face_centroids = _readonly(tri.mean(axis=1) if faces.size else np.zeros((0, 3)))

        # Area-weighted vertex normals (the unnormalized cross product
        # already carries the area weight).
        vnormals = np.zeros_like(vertices)
        for corner in range(3):
            np.add.at(vnormals, faces[:, corner], cross)
        vlen = np.linalg.norm(vnormals, axis=1, keepdims=True)
        vnormals = np.where(vlen > NORMAL_EPSILON, vnormals / np.where(vlen > 0, vlen, 1.0), 0.0)
        self.vertex_normals = _readonly(vnormals)

    @property
    def num_vertices(self) -> int:
        return len(self.vertices)

    @property
    def num_faces(self) -> int:
        return len(self.faces)

    def edges(self) -> np.ndarray:
        """Unique undirected edges as an (E, 2) array with edge[0] < edge[1], sorted."""
        if not self.faces.size:
            return np.zeros((0, 2), dtype=np.int64)
        pairs = np.concatenate(
            [self.faces[:, [0, 1]], self.faces[:, [1, 2]], self.faces[:, [2, 0]]]
        )
        pairs.sort(axis=1)
        return np.unique(pairs, axis=0)


@dataclass
class VertexInfo:
    """
    Topology around one vertex.

    faces: sorted ids of the faces incident to the vertex.
    verts: sorted ids of the vertices sharing an edge with it.
    """
    faces: np.ndarray
    verts: np.ndarray


def build_vertex_infos(mesh: Mesh) -> list[VertexInfo]:
    """
    Compute the incident-face and adjacent-vertex lists for every vertex.

    Both lists are sorted ascending, so everything built from them (the
    adjacency graph in particular) is independent of face order quirks.
    Isolated vertices get empty lists.
    """
    n = mesh.num_vertices
    faces = mesh.faces

    # Incident faces: sort the flattened corner list by vertex id and split.
    corner_vertices = faces.ravel()
    corner_faces = np.repeat(np.arange(mesh.num_faces, dtype=np.int64), 3)
    order = np.lexsort((corner_faces, corner_vertices))
    sorted_vertices = corner_vertices[order]
    sorted_faces = corner_faces[order]
    face_splits = np.searchsorted(sorted_vertices, np.arange(n + 1))

    # Adjacent vertices: both directions of every unique edge.
    edges = mesh.edges()
    directed = np.concatenate([edges, edges[:, ::-1]])
    directed = directed[np.lexsort((directed[:, 1], directed[:, 0]))]
    vert_splits = np.searchsorted(directed[:, 0], np.arange(n + 1))

    infos = []
    for v in range(n):
        infos.append(
            VertexInfo(
                faces=_readonly(sorted_faces[face_splits[v]:face_splits[v + 1]].copy()),
                verts=_readonly(directed[vert_splits[v]:vert_splits[v + 1], 1].copy()),
            )
        )
    return infos


def load_mesh(path) -> Mesh:
    """
    Load a triangle mesh (PLY, OBJ, ...) from disk via trimesh.

    Raises:
        InputError: If the file is missing, unreadable, or not a triangle mesh.
    """
    path = Path(path)
    if not path.is_file():
        raise InputError(f"Could not load mesh: {path} does not exist")

    try:
        # process=False keeps vertex and face order exactly as stored.
        loaded = trimesh.load(str(path), process=False, force="mesh")
    except Exception as e:
        raise InputError(f"Could not load mesh: {e}")

    if not isinstance(loaded, trimesh.Trimesh) or len(loaded.faces) == 0:
        raise InputError(f"Could not load mesh: {path.name} contains no triangles")

    return Mesh(np.asarray(loaded.vertices), np.asarray(loaded.faces))
