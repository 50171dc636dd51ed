"""
Global seam leveling.

Neighboring patches come from different photographs, shot with different
exposure and white balance. Where two patches meet, the same mesh vertex is
seen with two different colors. Global leveling removes these low-frequency
differences with one smooth color correction per patch.

Unknowns: an RGB correction g for every (vertex, patch) pair in the vertex
projection infos. Rows of the least squares system A g = b:

    seam rows        g_i - g_j = f_j - f_i
                     for every vertex shared by patches i < j, where f is
                     the patch color sampled at the projected vertex.
    smoothness rows  sqrt(lambda) (g_a - g_b) = 0
                     for every mesh edge (a, b) inside one patch. Keeps the
                     correction smooth so it does not repaint texture detail.
    regularization   sqrt(REGULARIZATION) g = 0
                     keeps the system positive definite when a patch has no
                     seam at all.

The normal equations A^T A g = A^T b are solved per channel with conjugate
gradients starting from g = 0. The solution is written into each patch's
per-corner adjustment values and applied with TexturePatch.adjust_colors,
which interpolates the corrections across the face pixels.

Since CG never increases the quadratic objective relative to its start
(g = 0, objective = seam discontinuity), the seam term can only go down.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.linalg import cg

from texrecon.core.errors import NumericalError

# Tikhonov weight per unknown.
REGULARIZATION = 1e-6

CHANNELS = ("red", "green", "blue")


@dataclass
class LevelingResult:
    """Outcome of one global leveling run."""

    num_unknowns: int = 0
    num_seam_rows: int = 0
    iterations: list[int] = field(default_factory=list)  # per channel
    converged: bool = True
    discontinuity_before: float = 0.0
    discontinuity_after: float = 0.0


def measure_seam_discontinuity(patches, vertex_projection_infos) -> float:
    """
    Summed squared color difference over all seam vertex pairs.

    For every vertex seen by several patches, every pair of patches
    contributes |f_i - f_j|^2, f being the bilinear patch color at the
    projected vertex.
    """
    total = 0.0
    for infos in vertex_projection_infos:
        if len(infos) < 2:
            continue
        colors = [patches[info.patch_id].sample(info.projection)[0] for info in infos]
        for i in range(len(colors)):
            for j in range(i + 1, len(colors)):
                total += float(np.sum((colors[i] - colors[j]) ** 2))
    return total


def apply_zero_adjustments(patches, settings=None) -> None:
    """Run adjust_colors with zero corrections (validity masks only)."""
    workers = settings.workers if settings is not None else None
    with ThreadPoolExecutor(max_workers=workers) as pool:
        list(pool.map(
            lambda patch: patch.adjust_colors(np.zeros_like(patch.adjust_values)),
            patches,
        ))


def _index_unknowns(vertex_projection_infos):
    index = {}
    for vertex, infos in enumerate(vertex_projection_infos):
        for info in infos:
            index[(vertex, info.patch_id)] = len(index)
    return index


def _build_system(vertex_infos, vertex_projection_infos, patches, index, smoothness):
    rows, cols, vals = [], [], []
    rhs = []

    def add_row(entries, b):
        r = len(rhs)
        for col, val in entries:
            rows.append(r)
            cols.append(col)
            vals.append(val)
        rhs.append(b)

    # Seam rows
    num_seam_rows = 0
    for vertex, infos in enumerate(vertex_projection_infos):
        if len(infos) < 2:
            continue
        colors = [patches[info.patch_id].sample(info.projection)[0] for info in infos]
        for i in range(len(infos)):
            for j in range(i + 1, len(infos)):
                add_row(
                    [(index[(vertex, infos[i].patch_id)], 1.0),
                     (index[(vertex, infos[j].patch_id)], -1.0)],
                    colors[j] - colors[i],
                )
                num_seam_rows += 1

    # Smoothness rows along mesh edges shared inside one patch
    weight = float(np.sqrt(smoothness))
    if weight > 0:
        for a, info in enumerate(vertex_infos):
            for b in info.verts.tolist():
                if b <= a:
                    continue
                patches_b = {p.patch_id: set(p.faces) for p in vertex_projection_infos[b]}
                for p in vertex_projection_infos[a]:
                    faces_b = patches_b.get(p.patch_id)
                    if faces_b is None or faces_b.isdisjoint(p.faces):
                        continue
                    add_row(
                        [(index[(a, p.patch_id)], weight), (index[(b, p.patch_id)], -weight)],
                        np.zeros(3),
                    )

    # Regularization
    reg = float(np.sqrt(REGULARIZATION))
    for k in range(len(index)):
        add_row([(k, reg)], np.zeros(3))

    A = coo_matrix((vals, (rows, cols)), shape=(len(rhs), len(index))).tocsr()
    b = np.asarray(rhs, dtype=np.float64).reshape(-1, 3)
    return A, b, num_seam_rows


def global_seam_leveling(graph, mesh, vertex_infos, vertex_projection_infos, patches,
                         settings, on_progress=None) -> LevelingResult:
    """
    Level color discontinuities across all patch seams.

    Mutates the patches in place (images, validity masks, adjust_values).

    Args:
        graph:                   Labeled adjacency graph.
        mesh:                    The Mesh.
        vertex_infos:            Per-vertex adjacency (mesh edges).
        vertex_projection_infos: Per-vertex patch projections.
        patches:                 TexturePatch list from generate_texture_patches.
        settings:                Settings (leveling_lambda, CG budget, threads).
        on_progress:             Optional callback for status messages.

    Returns:
        LevelingResult with solver statistics and the seam discontinuity
        measured before and after.
    """
    report = on_progress or (lambda message: None)
    result = LevelingResult()

    index = _index_unknowns(vertex_projection_infos)
    result.num_unknowns = len(index)
    result.discontinuity_before = measure_seam_discontinuity(patches, vertex_projection_infos)

    if not index:
        report("No patches to level")
        return result

    A, b, result.num_seam_rows = _build_system(
        vertex_infos, vertex_projection_infos, patches, index, settings.leveling_lambda
    )
    report(
        f"Leveling {graph.num_nodes():,} faces: {len(index):,} unknowns, "
        f"{result.num_seam_rows:,} seam constraints"
    )

    lhs = (A.T @ A).tocsr()
    solution = np.zeros((len(index), 3))
    for channel, name in enumerate(CHANNELS):
        rhs = A.T @ b[:, channel]
        iterations = [0]

        def count(_xk):
            iterations[0] += 1

        x, info = cg(
            lhs, rhs,
            x0=np.zeros(len(index)),
            rtol=settings.leveling_tolerance,
            maxiter=settings.leveling_max_iterations,
            callback=count,
        )
        result.iterations.append(iterations[0])
        if info != 0:
            result.converged = False
            residual = float(np.linalg.norm(lhs @ x - rhs) / max(np.linalg.norm(rhs), 1e-300))
            error = NumericalError(
                f"Conjugate gradient did not converge for the {name} channel",
                iterations=iterations[0],
                residual=residual,
            )
            report(f"Warning: {error} (residual {residual:.3g}); using the partial correction")
        solution[:, channel] = x

    # Scatter the corrections into per-corner adjustment values.
    adjustments = []
    for patch_id, patch in enumerate(patches):
        corners = mesh.faces[patch.faces].ravel()
        cols = [index[(vertex, patch_id)] for vertex in corners.tolist()]
        adjustments.append(solution[cols].astype(np.float32))

    with ThreadPoolExecutor(max_workers=settings.workers) as pool:
        list(pool.map(lambda item: item[0].adjust_colors(item[1]), zip(patches, adjustments)))

    result.discontinuity_after = measure_seam_discontinuity(patches, vertex_projection_infos)
    report(
        f"Seam discontinuity {result.discontinuity_before:.4f} -> "
        f"{result.discontinuity_after:.4f}"
    )
    return result
