"""
View selection — one texture view per face.

Labels every node of the adjacency graph with a view index by minimizing

    E(l) = Σ_f D(f, l_f)  +  w · #{(a, b) ∈ edges : l_a ≠ l_b}

where D is the data cost table and w = Settings.smoothness (Potts model).
Every label change between neighbors later becomes a visible seam, so the
pairwise term pulls neighboring faces into the same patch.

Solver (deterministic local search, energy strictly decreasing per move):

    1. Start every seen face on its cheapest view (ties → lowest view id).
    2. ICM sweep: visit faces in id order, move a face to the candidate view
       with the lowest local energy if that is a strict improvement.
    3. Patch relabel moves: for every same-label connected component, try
       relabeling the whole component to a label of an adjacent component
       (only labels that see every face of the component). Apply the best
       strictly improving move. This escapes the local minima ICM gets stuck
       in when two large regions meet: no single face can flip, but the whole
       region can.
    4. Repeat 2–3 until a pass changes nothing or the pass budget runs out.

Faces no view can see take no part in the optimization. Afterwards they are
filled from their neighborhood (Settings.fill_unseen_faces): in synchronous
rounds each such face takes the neighbor label whose cheapest neighbor data
cost is lowest (ties → lowest view id). Faces without labeled neighbors keep
INVALID_LABEL and stay untextured.

An externally supplied labeling bypasses all of this via apply_labeling(),
which validates length and label range before touching the graph.
"""

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from texrecon.core.errors import ValidationError
from texrecon.core.graph import INVALID_LABEL

# Minimum energy decrease for a move to count as an improvement. Guards
# against float noise making the solver oscillate between equal labelings.
IMPROVEMENT_EPSILON = 1e-9


def labeling_energy(data_costs, graph, smoothness) -> float:
    """
    Energy of the graph's current labeling.

    Faces whose label has no data cost entry (invalid faces, filled unseen
    faces, user-supplied labels) contribute no data term. Edges touching an
    invalid face contribute no smoothness term.
    """
    labels = graph.labels
    data = 0.0
    for face, label in enumerate(labels.tolist()):
        if label == INVALID_LABEL:
            continue
        cost = data_costs.get(face, label)
        if cost is not None:
            data += cost

    edges = graph.edge_array()
    if edges.size:
        la = labels[edges[:, 0]]
        lb = labels[edges[:, 1]]
        seams = int(np.count_nonzero((la != lb) & (la != INVALID_LABEL) & (lb != INVALID_LABEL)))
    else:
        seams = 0
    return data + smoothness * seams


class _Solver:
    """Working state of one view selection run."""

    def __init__(self, data_costs, graph, smoothness):
        self.graph = graph
        self.w = float(smoothness)
        n = graph.num_nodes()

        self.candidates: list[list[int]] = []
        self.costs: list[dict[int, float]] = []
        for face in range(n):
            views, costs = data_costs.face_costs(face)
            views = views.tolist()
            self.candidates.append(views)
            self.costs.append(dict(zip(views, costs.tolist())))

        self.labels = [INVALID_LABEL] * n
        for face in range(n):
            views = self.candidates[face]
            if views:
                # min() keeps the first of equal costs → lowest view id.
                self.labels[face] = min(views, key=lambda v: self.costs[face][v])

    def local_energy(self, face, label, neighbor_labels):
        mismatches = sum(1 for nl in neighbor_labels if nl != label)
        return self.costs[face][label] + self.w * mismatches

    def icm_sweep(self) -> int:
        moved = 0
        for face, views in enumerate(self.candidates):
            if len(views) < 2:
                continue
            neighbor_labels = [
                self.labels[g] for g in self.graph.neighbors(face)
                if self.labels[g] != INVALID_LABEL
            ]
            current = self.labels[face]
            best_label = current
            best_energy = self.local_energy(face, current, neighbor_labels)
            for view in views:
                energy = self.local_energy(face, view, neighbor_labels)
                if energy < best_energy - IMPROVEMENT_EPSILON:
                    best_label, best_energy = view, energy
            if best_label != current:
                self.labels[face] = best_label
                moved += 1
        return moved

    def components(self) -> list[list[int]]:
        """Same-label connected components of the labeled faces."""
        labels = np.asarray(self.labels, dtype=np.int64)
        members = np.flatnonzero(labels != INVALID_LABEL)
        if members.size == 0:
            return []

        edges = self.graph.edge_array()
        if edges.size:
            la, lb = labels[edges[:, 0]], labels[edges[:, 1]]
            edges = edges[(la == lb) & (la != INVALID_LABEL)]
        n = self.graph.num_nodes()
        matrix = coo_matrix(
            (np.ones(len(edges), dtype=np.int8), (edges[:, 0], edges[:, 1])), shape=(n, n)
        )
        _, component = connected_components(matrix, directed=False)

        groups: dict[int, list[int]] = {}
        for face in members.tolist():
            groups.setdefault(int(component[face]), []).append(face)
        # Faces are visited in ascending order, so each group is sorted and
        # the dict preserves smallest-face-id order.
        return list(groups.values())

    def relabel_components(self) -> int:
        moved = 0
        for component in self.components():
            beta = self.labels[component[0]]
            if any(self.labels[f] != beta for f in component):
                continue
            members = set(component)

            # Boundary edges and the labels adjacent to the component.
            boundary = []
            adjacent = set()
            for f in component:
                for g in self.graph.neighbors(f):
                    if g in members:
                        continue
                    lg = self.labels[g]
                    if lg == INVALID_LABEL:
                        continue
                    boundary.append(lg)
                    if lg != beta:
                        adjacent.add(lg)

            best_alpha, best_delta = None, -IMPROVEMENT_EPSILON
            for alpha in sorted(adjacent):
                if any(alpha not in self.costs[f] for f in component):
                    continue
                delta = sum(self.costs[f][alpha] - self.costs[f][beta] for f in component)
                delta += self.w * sum(
                    (alpha != lg) - (beta != lg) for lg in boundary
                )
                if delta < best_delta:
                    best_alpha, best_delta = alpha, delta

            if best_alpha is not None:
                for f in component:
                    self.labels[f] = best_alpha
                moved += 1
        return moved

    def fill_unseen(self, data_costs) -> int:
        """Give unseen faces the cheapest label of their neighborhood."""
        unseen = [f for f, views in enumerate(self.candidates) if not views]
        filled = 0
        while unseen:
            assignments = {}
            for f in unseen:
                scores: dict[int, float] = {}
                for g in self.graph.neighbors(f):
                    lg = self.labels[g]
                    if lg == INVALID_LABEL:
                        continue
                    cost = self.costs[g].get(lg, float("inf"))
                    scores[lg] = min(scores.get(lg, float("inf")), cost)
                if scores:
                    assignments[f] = min(sorted(scores), key=lambda label: scores[label])
            if not assignments:
                break
            for f, label in assignments.items():
                self.labels[f] = label
            filled += len(assignments)
            unseen = [f for f in unseen if f not in assignments]
        return filled


def view_selection(data_costs, graph, settings, on_progress=None) -> None:
    """
    Label every face of `graph` with a texture view.

    Writes the labels into the graph in place.

    Raises:
        ValidationError: If the data cost table was computed for a mesh with
                         a different face count.
    """
    report = on_progress or (lambda message: None)

    if data_costs.num_faces != graph.num_nodes():
        raise ValidationError(
            f"Data cost table covers {data_costs.num_faces:,} faces but the mesh has "
            f"{graph.num_nodes():,} — wrong data cost file for this mesh?"
        )

    solver = _Solver(data_costs, graph, settings.smoothness)
    graph.set_labels(solver.labels)
    report(
        f"Initial labeling energy: "
        f"{labeling_energy(data_costs, graph, settings.smoothness):.4f}"
    )

    for iteration in range(settings.max_view_selection_passes):
        moved = solver.icm_sweep()
        moved += solver.relabel_components()
        graph.set_labels(solver.labels)
        report(
            f"Pass {iteration + 1}: {moved:,} moves, energy "
            f"{labeling_energy(data_costs, graph, settings.smoothness):.4f}"
        )
        if moved == 0:
            break
    else:
        report(
            f"Warning: view selection stopped after {settings.max_view_selection_passes} "
            "passes without converging"
        )

    if settings.fill_unseen_faces:
        filled = solver.fill_unseen(data_costs)
        graph.set_labels(solver.labels)
        if filled:
            report(f"Assigned neighborhood labels to {filled:,} unseen faces")

    invalid = int(np.count_nonzero(graph.labels == INVALID_LABEL))
    if invalid:
        report(f"Warning: {invalid:,} faces remain unlabeled and will not be textured")


def apply_labeling(labeling, graph, num_views: int) -> None:
    """
    Load an externally supplied labeling into the graph.

    Every label must be INVALID_LABEL or a view index in [0, num_views).
    The graph is only modified once the whole labeling has been validated.

    Raises:
        ValidationError: On a length mismatch or an out-of-range label.
    """
    labeling = np.asarray(labeling)
    if labeling.ndim != 1 or labeling.size != graph.num_nodes():
        raise ValidationError(
            f"Wrong labeling file for this mesh/scene combination: "
            f"{labeling.size:,} labels for {graph.num_nodes():,} faces"
        )
    if labeling.size and not np.issubdtype(labeling.dtype, np.integer):
        raise ValidationError("Wrong labeling file for this mesh/scene combination: labels must be integers")

    bad = (labeling != INVALID_LABEL) & ((labeling < 0) | (labeling >= num_views))
    if bad.any():
        face = int(np.flatnonzero(bad)[0])
        raise ValidationError(
            f"Wrong labeling file for this mesh/scene combination: face {face} has "
            f"label {int(labeling[face])} but the scene has {num_views} views"
        )

    graph.set_labels(labeling.astype(np.int64))
