"""Shared fixtures: small meshes and synthetic uniform-color views."""

import numpy as np
import pytest

from texrecon.core.graph import build_adjacency_graph
from texrecon.core.mesh import Mesh, build_vertex_infos
from texrecon.core.settings import Settings
from texrecon.core.views import TextureView, TextureViewSet

RED = (0.8, 0.2, 0.2)
BLUE = (0.2, 0.2, 0.8)
GREEN = (0.2, 0.8, 0.2)


def look_at(eye, target, up=(0.0, 1.0, 0.0)):
    """World-to-camera (R, t) for a camera at `eye` looking at `target` (y down)."""
    eye = np.asarray(eye, dtype=np.float64)
    forward = np.asarray(target, dtype=np.float64) - eye
    forward /= np.linalg.norm(forward)
    right = np.cross(forward, up)
    right /= np.linalg.norm(right)
    down = np.cross(forward, right)
    R = np.stack([right, down, forward])
    return R, -R @ eye


def make_view(view_id, eye, target, color, size=96, focal=60.0, center=48.0):
    R, t = look_at(eye, target)
    K = np.array([[focal, 0.0, center], [0.0, focal, center], [0.0, 0.0, 1.0]])
    image = np.empty((size, size, 3), dtype=np.float32)
    image[:] = color
    return TextureView(view_id, K, R, t, size, size, image=image)


def cube_mesh(half=0.5):
    h = half
    vertices = [
        [-h, -h, -h], [h, -h, -h], [h, h, -h], [-h, h, -h],
        [-h, -h, h], [h, -h, h], [h, h, h], [-h, h, h],
    ]
    faces = [
        [0, 2, 1], [0, 3, 2],    # -z
        [4, 5, 6], [4, 6, 7],    # +z
        [0, 1, 5], [0, 5, 4],    # -y
        [3, 7, 6], [3, 6, 2],    # +y
        [0, 4, 7], [0, 7, 3],    # -x
        [1, 2, 6], [1, 6, 5],    # +x
    ]
    return Mesh(vertices, faces)


def strip_mesh():
    """Unit square in the z = 0 plane split along its diagonal, facing +z."""
    vertices = [[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0]]
    faces = [[0, 1, 2], [0, 2, 3]]
    return Mesh(vertices, faces)


def fan_mesh(radius=0.5):
    """Three triangles around a center vertex at (0.5, 0.5, 0), facing +z."""
    angles = np.radians([90.0, 210.0, 330.0])
    outer = [[0.5 + radius * np.cos(a), 0.5 + radius * np.sin(a), 0.0] for a in angles]
    vertices = [[0.5, 0.5, 0.0]] + outer
    faces = [[0, 1, 2], [0, 2, 3], [0, 3, 1]]
    return Mesh(vertices, faces)


@pytest.fixture
def settings():
    return Settings(geometric_visibility_test=False, num_threads=2)


@pytest.fixture
def cube():
    return cube_mesh()


@pytest.fixture
def cube_views():
    """Two views from the upper front left and right; each sees three sides."""
    return TextureViewSet([
        make_view(0, (2.5, 2.0, 3.0), (0, 0, 0), RED),
        make_view(1, (-2.5, 2.0, 3.0), (0, 0, 0), BLUE),
    ])


@pytest.fixture
def strip():
    return strip_mesh()


@pytest.fixture
def strip_views():
    """Two views with identical poses straight above the strip, red and blue.

    Vertices project to integer pixel centers: (0, 0, 0) -> (38, 58),
    (1, 1, 0) -> (58, 38).
    """
    return TextureViewSet([
        make_view(0, (0.5, 0.5, 3.0), (0.5, 0.5, 0.0), RED),
        make_view(1, (0.5, 0.5, 3.0), (0.5, 0.5, 0.0), BLUE),
    ])


@pytest.fixture
def strip_scene(strip, strip_views):
    """Strip with face 0 labeled red (view 0) and face 1 labeled blue (view 1)."""
    vertex_infos = build_vertex_infos(strip)
    graph = build_adjacency_graph(strip, vertex_infos)
    graph.set_labels([0, 1])
    return strip, vertex_infos, graph, strip_views


@pytest.fixture
def fan_scene():
    """Fan with each triangle labeled by its own view: red, blue and green."""
    mesh = fan_mesh()
    vertex_infos = build_vertex_infos(mesh)
    graph = build_adjacency_graph(mesh, vertex_infos)
    graph.set_labels([0, 1, 2])
    views = TextureViewSet([
        make_view(i, (0.5, 0.5, 3.0), (0.5, 0.5, 0.0), color)
        for i, color in enumerate((RED, BLUE, GREEN))
    ])
    return mesh, vertex_infos, graph, views
