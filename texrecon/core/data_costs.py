"""
Data term of the view selection problem.

For every face and every view that sees it, a cost in [0, 1] expressing how
good the view is for texturing the face (lower = better). Pairs where the view
does not see the face have no entry at all: they are structurally excluded
from the labeling instead of carrying an infinite cost.

Quality per (face, view), by Settings.data_term:

    "area" — projected area (px) × cos(viewing angle) / (1 + k · gradient)
             Large, frontal, low-noise projections win. Gradient noise is
             penalized to avoid specular highlights and blurry edges.
    "gmi"  — projected area (px) × cos(viewing angle) × (1 + gradient)
             The gradient magnitude integral: favors sharp, detailed views.

Optional photometric outlier removal (Settings.outlier_removal) compares the
mean color each view shows for a face. A robust per-face color center is found
by Gaussian mean shift; views far from it (moving objects, occluders missed by
the geometry test, blown highlights) are dropped ("gauss_clamping") or have
their quality damped by the Gaussian weight ("gauss_damping").

Qualities are normalized by a high percentile of all qualities and turned into
costs: cost = 1 - min(q, q_max) / q_max.

The computation is parallel across views: each worker computes one view's
column and returns it; the columns are merged once all workers are done, so
no two workers ever write the same entry.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np

from texrecon.core.errors import ValidationError

# Weight k of the gradient penalty in the "area" data term.
GRADIENT_PENALTY = 4.0

# Percentile used as the normalization maximum. Using a percentile instead of
# the max keeps a single huge face from compressing every other cost towards 1.
QUALITY_PERCENTILE = 99.5

# Gaussian mean shift parameters for photometric outlier removal.
OUTLIER_SIGMA = 0.1
OUTLIER_ITERATIONS = 10
OUTLIER_MIN_VIEWS = 3
OUTLIER_THRESHOLD = float(np.exp(-0.5 * 3.0 ** 2))  # 3 sigma


class DataCosts:
    """
    Sparse face × view cost table.

    Stored row-compressed: entries sorted by (face, view), with `indptr[f]`
    to `indptr[f + 1]` delimiting the entries of face f. Costs are float32 so
    the table round-trips through the .spt format bit for bit.

    Raises:
        ValidationError: On out-of-range ids, duplicate entries or negative
                         (or non-finite) costs.
    """

    def __init__(self, num_faces: int, num_views: int, faces=(), views=(), costs=()):
        faces = np.asarray(faces, dtype=np.int64).ravel()
        views = np.asarray(views, dtype=np.int64).ravel()
        costs = np.asarray(costs, dtype=np.float32).ravel()

        if not (faces.size == views.size == costs.size):
            raise ValidationError("Data cost arrays have different lengths")
        if faces.size:
            if faces.min() < 0 or faces.max() >= num_faces:
                raise ValidationError("Data cost entry references a face outside the mesh")
            if views.min() < 0 or views.max() >= num_views:
                raise ValidationError("Data cost entry references a view outside the scene")
            if not np.all(np.isfinite(costs)) or costs.min() < 0:
                raise ValidationError("Data costs must be finite and non-negative")

        order = np.lexsort((views, faces))
        faces, views, costs = faces[order], views[order], costs[order]
        if faces.size > 1:
            dup = (faces[1:] == faces[:-1]) & (views[1:] == views[:-1])
            if dup.any():
                i = int(np.flatnonzero(dup)[0])
                raise ValidationError(
                    f"Duplicate data cost entry for face {faces[i]}, view {views[i]}"
                )

        self.num_faces = int(num_faces)
        self.num_views = int(num_views)
        self._faces = faces
        self._views = views
        self._costs = costs
        self.indptr = np.searchsorted(faces, np.arange(self.num_faces + 1))

    @property
    def nnz(self) -> int:
        return int(self._costs.size)

    def face_costs(self, face: int):
        """(views, costs) of one face, views ascending."""
        start, end = self.indptr[face], self.indptr[face + 1]
        return self._views[start:end], self._costs[start:end]

    def get(self, face: int, view: int):
        """Cost of (face, view), or None when the view does not see the face."""
        views, costs = self.face_costs(face)
        i = int(np.searchsorted(views, view))
        if i < views.size and views[i] == view:
            return float(costs[i])
        return None

    def entries(self):
        """(faces, views, costs) arrays sorted by (face, view)."""
        return self._faces.copy(), self._views.copy(), self._costs.copy()

    def faces_per_view(self) -> np.ndarray:
        return np.bincount(self._views, minlength=self.num_views)


# ---------------------------------------------------------------------------
# Quality computation
# ---------------------------------------------------------------------------

def _view_column(view, mesh, data_term, raycasting_scene):
    """Quality and mean color of every face visible in one view."""
    visible = view.visible_faces(mesh, raycasting_scene)
    face_ids = np.flatnonzero(visible)
    if face_ids.size == 0:
        return face_ids, np.zeros(0), np.zeros((0, 3))

    info = view.face_infos(mesh, face_ids)
    base = info["area"] * info["cos"]
    if data_term == "gmi":
        quality = base * (1.0 + info["gradient"])
    else:
        quality = base / (1.0 + GRADIENT_PENALTY * info["gradient"])
    return face_ids, quality, info["color"]


def photometric_outlier_weights(faces, colors, num_faces):
    """
    Gaussian weight of every (face, view) mean color w.r.t. its face's mode.

    Args:
        faces:     (N,) face id of each entry.
        colors:    (N, 3) mean color of each entry.
        num_faces: Total face count.

    Returns:
        (N,) weights in (0, 1]. Faces seen by fewer than OUTLIER_MIN_VIEWS
        views get weight 1 for every entry (too few samples to judge).
    """
    counts = np.bincount(faces, minlength=num_faces)
    weights = np.ones(faces.size)
    judged = counts[faces] >= OUTLIER_MIN_VIEWS
    if not judged.any():
        return weights

    # Mean shift: start at the plain mean, then repeatedly recenter on the
    # Gaussian-weighted mean of the samples.
    centers = np.zeros((num_faces, 3))
    w = np.ones(faces.size)
    for _ in range(OUTLIER_ITERATIONS + 1):
        centers[:] = 0.0
        for c in range(3):
            centers[:, c] = np.bincount(faces, weights=w * colors[:, c], minlength=num_faces)
        sums = np.bincount(faces, weights=w, minlength=num_faces)
        centers /= np.where(sums > 0, sums, 1.0)[:, np.newaxis]
        dist2 = np.sum((colors - centers[faces]) ** 2, axis=1)
        w = np.exp(-0.5 * dist2 / OUTLIER_SIGMA ** 2)
        # Degenerate case: every sample far away → fall back to uniform.
        totals = np.bincount(faces, weights=w, minlength=num_faces)
        w = np.where(totals[faces] > 1e-12, w, 1.0)

    weights[judged] = w[judged]
    return weights


def calculate_data_costs(mesh, views, settings, on_progress=None, raycasting_scene=None) -> DataCosts:
    """
    Compute the data cost table for every (face, view) pair.

    Args:
        mesh:             The Mesh.
        views:            TextureViewSet.
        settings:         Settings (data_term, outlier_removal,
                          geometric_visibility_test, num_threads).
        on_progress:      Optional callback for status messages.
        raycasting_scene: Optional prebuilt occlusion scene; built on demand
                          when the geometric visibility test is enabled.

    Returns:
        DataCosts with entries only for visible pairs.
    """
    report = on_progress or (lambda message: None)
    num_faces, num_views = mesh.num_faces, len(views)
    report(f"Computing data costs for {num_faces:,} faces x {num_views} views...")

    if settings.geometric_visibility_test and raycasting_scene is None and num_faces:
        from texrecon.core.views import build_raycasting_scene

        raycasting_scene = build_raycasting_scene(mesh)

    with ThreadPoolExecutor(max_workers=settings.workers) as pool:
        columns = list(pool.map(
            lambda view: _view_column(view, mesh, settings.data_term, raycasting_scene),
            views,
        ))

    faces = np.concatenate([c[0] for c in columns] or [np.zeros(0, dtype=np.int64)])
    quality = np.concatenate([c[1] for c in columns] or [np.zeros(0)])
    colors = np.concatenate([c[2] for c in columns] or [np.zeros((0, 3))])
    view_ids = np.concatenate([
        np.full(c[0].size, view.id, dtype=np.int64) for c, view in zip(columns, views)
    ] or [np.zeros(0, dtype=np.int64)])

    if settings.outlier_removal != "none" and faces.size:
        weights = photometric_outlier_weights(faces, colors, num_faces)
        if settings.outlier_removal == "gauss_damping":
            quality = quality * weights
        else:
            keep = weights >= OUTLIER_THRESHOLD
            # Never drop every view of a face: keep its best-agreeing one.
            best = np.zeros(num_faces)
            np.maximum.at(best, faces, weights)
            keep |= weights >= best[faces]
            dropped = int((~keep).sum())
            if dropped:
                report(f"Removed {dropped:,} photometric outlier face/view pairs")
            faces, view_ids, quality = faces[keep], view_ids[keep], quality[keep]

    if quality.size:
        max_quality = float(np.percentile(quality, QUALITY_PERCENTILE))
    else:
        max_quality = 0.0
    if max_quality > 0:
        costs = 1.0 - np.minimum(quality, max_quality) / max_quality
    else:
        costs = np.ones_like(quality)

    data_costs = DataCosts(num_faces, num_views, faces, view_ids, np.clip(costs, 0.0, 1.0))

    seen = int(np.count_nonzero(np.diff(data_costs.indptr)))
    report(
        f"Data costs complete: {data_costs.nnz:,} face/view pairs, "
        f"{seen:,}/{num_faces:,} faces seen by at least one view"
    )
    if seen < num_faces:
        report(f"Warning: {num_faces - seen:,} faces are not seen by any view")
    return data_costs
