"""Tests for mesh construction, vertex infos and the face adjacency graph."""

import numpy as np
import pytest

from texrecon.core.errors import InputError
from texrecon.core.graph import INVALID_LABEL, Graph, build_adjacency_graph
from texrecon.core.mesh import Mesh, build_vertex_infos, load_mesh


def test_mesh_rejects_repeated_vertex():
    with pytest.raises(InputError, match="repeats a vertex"):
        Mesh([[0, 0, 0], [1, 0, 0], [0, 1, 0]], [[0, 1, 1]])


def test_mesh_rejects_out_of_range_index():
    with pytest.raises(InputError):
        Mesh([[0, 0, 0], [1, 0, 0], [0, 1, 0]], [[0, 1, 3]])


def test_mesh_rejects_non_finite_vertices():
    with pytest.raises(InputError):
        Mesh([[0, 0, np.nan], [1, 0, 0], [0, 1, 0]], [[0, 1, 2]])


def test_mesh_is_read_only(strip):
    with pytest.raises(ValueError):
        strip.vertices[0, 0] = 5.0


def test_strip_normals_face_up(strip):
    np.testing.assert_allclose(strip.face_normals, [[0, 0, 1], [0, 0, 1]])
    np.testing.assert_allclose(strip.face_areas, [0.5, 0.5])


def test_vertex_infos_are_sorted(strip):
    infos = build_vertex_infos(strip)
    assert infos[0].faces.tolist() == [0, 1]
    assert infos[0].verts.tolist() == [1, 2, 3]
    assert infos[1].faces.tolist() == [0]
    assert infos[1].verts.tolist() == [0, 2]


def test_graph_has_one_node_per_face(cube):
    graph = build_adjacency_graph(cube, build_vertex_infos(cube))
    assert graph.num_nodes() == cube.num_faces
    # Closed triangle mesh: every face has exactly three edge neighbors.
    assert graph.num_edges() == 18
    assert all(len(graph.neighbors(f)) == 3 for f in range(cube.num_faces))


def test_graph_edges_are_symmetric(cube):
    graph = build_adjacency_graph(cube, build_vertex_infos(cube))
    for a in range(graph.num_nodes()):
        for b in graph.neighbors(a):
            assert a in graph.neighbors(b)
        assert graph.neighbors(a) == sorted(graph.neighbors(a))


def test_graph_starts_unlabeled(strip):
    graph = build_adjacency_graph(strip, build_vertex_infos(strip))
    assert graph.labels.tolist() == [INVALID_LABEL, INVALID_LABEL]
    assert graph.has_edge(0, 1)


def test_graph_ignores_duplicate_edges_and_self_loops():
    graph = Graph(3)
    graph.add_edge(0, 1)
    graph.add_edge(1, 0)
    graph.add_edge(2, 2)
    assert graph.num_edges() == 1
    assert graph.edge_array().tolist() == [[0, 1]]


def test_non_manifold_edge_connects_every_face_pair():
    vertices = [[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, -1, 0], [0, 0, 1]]
    faces = [[0, 1, 2], [1, 0, 3], [0, 1, 4]]
    mesh = Mesh(vertices, faces)
    graph = build_adjacency_graph(mesh, build_vertex_infos(mesh))
    assert graph.edge_array().tolist() == [[0, 1], [0, 2], [1, 2]]


def test_get_subgraphs_splits_disconnected_regions(cube):
    graph = build_adjacency_graph(cube, build_vertex_infos(cube))
    labels = np.zeros(cube.num_faces, dtype=np.int64)
    # +z and -z sides share no edge.
    labels[[0, 1, 2, 3]] = 1
    graph.set_labels(labels)

    subgraphs = graph.get_subgraphs(1)
    assert [s.tolist() for s in subgraphs] == [[0, 1], [2, 3]]
    assert sum(s.size for s in graph.get_subgraphs(0)) == 8
    assert graph.get_subgraphs(5) == []


def test_vertex_info_mismatch_raises(cube, strip):
    with pytest.raises(InputError):
        build_adjacency_graph(cube, build_vertex_infos(strip))


def test_load_mesh_round_trip(tmp_path):
    path = tmp_path / "strip.ply"
    path.write_text(
        "ply\nformat ascii 1.0\n"
        "element vertex 4\nproperty float x\nproperty float y\nproperty float z\n"
        "element face 2\nproperty list uchar int vertex_indices\nend_header\n"
        "0 0 0\n1 0 0\n1 1 0\n0 1 0\n"
        "3 0 1 2\n3 0 2 3\n"
    )
    mesh = load_mesh(path)
    assert mesh.num_vertices == 4
    assert mesh.faces.tolist() == [[0, 1, 2], [0, 2, 3]]


def test_load_mesh_missing_file(tmp_path):
    with pytest.raises(InputError, match="does not exist"):
        load_mesh(tmp_path / "missing.ply")
