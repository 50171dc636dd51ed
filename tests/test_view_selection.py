"""Tests for view selection and labeling validation."""

import numpy as np
import pytest

from texrecon.core.data_costs import DataCosts, calculate_data_costs
from texrecon.core.errors import ValidationError
from texrecon.core.graph import INVALID_LABEL, build_adjacency_graph
from texrecon.core.mesh import build_vertex_infos
from texrecon.core.settings import Settings
from texrecon.core.view_selection import apply_labeling, labeling_energy, view_selection


def _graph(mesh):
    return build_adjacency_graph(mesh, build_vertex_infos(mesh))


def _full_table(num_faces, costs_view0, costs_view1):
    faces = np.repeat(np.arange(num_faces), 2)
    views = np.tile([0, 1], num_faces)
    costs = np.stack([costs_view0, costs_view1], axis=1).ravel()
    return DataCosts(num_faces, 2, faces, views, costs)


def test_zero_smoothness_picks_cheapest_view(cube, cube_views):
    settings = Settings(smoothness=0.0, geometric_visibility_test=False, fill_unseen_faces=False)
    data_costs = calculate_data_costs(cube, cube_views, settings)
    graph = _graph(cube)
    view_selection(data_costs, graph, settings)

    for face in range(cube.num_faces):
        views, costs = data_costs.face_costs(face)
        if views.size == 0:
            assert graph.get_label(face) == INVALID_LABEL
        else:
            assert graph.get_label(face) == int(views[np.argmin(costs)])


def test_high_smoothness_gives_single_label(cube):
    rng = np.random.default_rng(7)
    base = rng.uniform(0.2, 0.4, cube.num_faces)
    # Each view is slightly better on half the cube.
    view0 = base.copy()
    view1 = base.copy()
    view0[:6] -= 0.05
    view1[6:] -= 0.05
    data_costs = _full_table(cube.num_faces, view0, view1)

    graph = _graph(cube)
    view_selection(data_costs, graph, Settings(smoothness=10.0))
    assert len(set(graph.labels.tolist())) == 1


def test_view_selection_is_deterministic(cube, cube_views, settings):
    data_costs = calculate_data_costs(cube, cube_views, settings)
    first = _graph(cube)
    second = _graph(cube)
    view_selection(data_costs, first, settings)
    view_selection(data_costs, second, settings)
    np.testing.assert_array_equal(first.labels, second.labels)


def test_labels_stay_in_range(cube, cube_views, settings):
    data_costs = calculate_data_costs(cube, cube_views, settings)
    graph = _graph(cube)
    view_selection(data_costs, graph, settings)
    labels = graph.labels
    assert np.all((labels == INVALID_LABEL) | ((labels >= 0) & (labels < len(cube_views))))


def test_selected_labels_are_visible(cube, cube_views):
    settings = Settings(geometric_visibility_test=False, fill_unseen_faces=False)
    data_costs = calculate_data_costs(cube, cube_views, settings)
    graph = _graph(cube)
    view_selection(data_costs, graph, settings)
    for face, label in enumerate(graph.labels.tolist()):
        if label != INVALID_LABEL:
            assert data_costs.get(face, label) is not None


def test_unseen_faces_take_a_neighbor_label(cube, cube_views, settings):
    data_costs = calculate_data_costs(cube, cube_views, settings)
    graph = _graph(cube)
    messages = []
    view_selection(data_costs, graph, settings, messages.append)
    # The bottom and -y sides are unseen but connected to seen faces.
    assert INVALID_LABEL not in graph.labels.tolist()
    assert any("unseen faces" in m for m in messages)


def test_view_selection_does_not_increase_energy(cube):
    rng = np.random.default_rng(3)
    data_costs = _full_table(cube.num_faces, rng.uniform(0, 1, 12), rng.uniform(0, 1, 12))
    settings = Settings(smoothness=0.3)

    graph = _graph(cube)
    view_selection(data_costs, graph, Settings(smoothness=0.3, max_view_selection_passes=0))
    initial = labeling_energy(data_costs, graph, settings.smoothness)

    view_selection(data_costs, graph, settings)
    assert labeling_energy(data_costs, graph, settings.smoothness) <= initial + 1e-9


def test_data_cost_size_mismatch(strip, cube):
    data_costs = DataCosts(strip.num_faces, 1)
    with pytest.raises(ValidationError):
        view_selection(data_costs, _graph(cube), Settings())


def test_apply_labeling_wrong_length(cube):
    graph = _graph(cube)
    with pytest.raises(ValidationError, match="Wrong labeling file"):
        apply_labeling(np.zeros(5, dtype=np.int64), graph, 2)
    assert graph.labels.tolist() == [INVALID_LABEL] * cube.num_faces


def test_apply_labeling_label_out_of_range(cube):
    graph = _graph(cube)
    labels = np.zeros(cube.num_faces, dtype=np.int64)
    labels[4] = 2
    with pytest.raises(ValidationError, match="face 4 has label 2"):
        apply_labeling(labels, graph, 2)
    assert graph.labels.tolist() == [INVALID_LABEL] * cube.num_faces


def test_apply_labeling_accepts_invalid_label(strip):
    graph = _graph(strip)
    apply_labeling(np.array([INVALID_LABEL, 1]), graph, 2)
    assert graph.labels.tolist() == [INVALID_LABEL, 1]
