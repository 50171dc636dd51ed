"""
Local seam leveling.

Global leveling removes the low-frequency color offset between patches but
leaves small residual steps right at the seams. Local leveling blends those
away in image space:

    1. Collect seam samples. Every vertex shared by patches of different
       labels is one sample, seen by all of those patches. Every seam edge
       (a mesh edge held by patches of different labels) is walked in ~1 px
       steps, each step a sample seen by every patch holding the edge.
    2. Each sample resolves to the nearest valid pixel in each of its
       patches. A pixel serves at most one sample; vertex samples claim
       their pixels first, later samples skip pixels already taken.
    3. All pixels of a sample get one shared target: the mean of their
       colors. The difference to the target is the pixel's delta.
    4. Per patch, spread the deltas into a band of LOCAL_LEVELING_BAND
       pixels around the constrained pixels by solving a Laplace equation:
       constrained pixels are fixed to their delta, pixels outside the band
       to zero, everything in between is harmonic.
    5. Add the delta field to the patch image.

After one run every constrained pixel shows its sample's target, so all
pixels of a sample agree. When no delta reaches LOCAL_LEVELING_EPSILON the
seams count as level and nothing is touched, which makes a second run a no-op
no matter how many patches meet at a vertex.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
from scipy.ndimage import distance_transform_edt
from scipy.sparse import coo_matrix
from scipy.sparse.linalg import spsolve

from texrecon.core.raster import dilate_texture

# Width in pixels of the blending band around the seam pixels.
LOCAL_LEVELING_BAND = 10

# Largest per-channel delta that still counts as a matching seam.
LOCAL_LEVELING_EPSILON = 1e-4

# 4-neighborhood of the Laplace stencil.
_NEIGHBORS = ((-1, 0), (1, 0), (0, -1), (0, 1))


def _seam_samples(graph, mesh, vertex_projection_infos):
    """Seam samples as lists of (patch_id, local point), one entry per patch."""
    samples = []

    for infos in vertex_projection_infos:
        if len(infos) < 2:
            continue
        labels = {graph.get_label(info.faces[0]) for info in infos}
        if len(labels) > 1:
            samples.append([(info.patch_id, info.projection) for info in infos])

    for a, b in mesh.edges().tolist():
        infos_a = vertex_projection_infos[a]
        infos_b = vertex_projection_infos[b]
        if len(infos_a) < 2 or len(infos_b) < 2:
            continue
        by_patch_b = {info.patch_id: info for info in infos_b}
        ends = []
        labels = set()
        for info in infos_a:
            other = by_patch_b.get(info.patch_id)
            if other is None:
                continue
            # The edge belongs to the patch if a patch face holds both ends.
            faces = set(info.faces).intersection(other.faces)
            if faces:
                ends.append((info.patch_id, info.projection, other.projection))
                labels.add(graph.get_label(min(faces)))
        if len(labels) < 2:
            continue

        length = max(np.linalg.norm(pb - pa) for _, pa, pb in ends)
        # Endpoints are covered by the vertex samples.
        for t in np.linspace(0.0, 1.0, max(2, int(np.ceil(length)) + 1))[1:-1]:
            samples.append([(patch_id, pa + t * (pb - pa)) for patch_id, pa, pb in ends])

    return samples


def _collect_constraints(graph, mesh, vertex_projection_infos, patches):
    """Per patch: {(y, x): delta} towards the shared target of each sample."""
    constraints = [dict() for _ in patches]
    taken = set()

    for sample in _seam_samples(graph, mesh, vertex_projection_infos):
        pixels = []
        for patch_id, point in sample:
            patch = patches[patch_id]
            xs, ys = patch.nearest_pixels(point)
            x, y = int(xs[0]), int(ys[0])
            if patch.validity_mask[y, x] and (patch_id, y, x) not in taken:
                pixels.append((patch_id, y, x))
        if len(pixels) < 2:
            continue

        colors = np.array([patches[p].image[y, x] for p, y, x in pixels], dtype=np.float64)
        target = colors.mean(axis=0)
        for (patch_id, y, x), color in zip(pixels, colors):
            taken.add((patch_id, y, x))
            constraints[patch_id][(y, x)] = target - color
    return constraints


def _level_patch(patch, constraints):
    """Solve the Laplace problem of one patch and add the delta field."""
    height, width = patch.height, patch.width
    fixed_mask = np.zeros((height, width), dtype=bool)
    delta = np.zeros((height, width, 3))
    for (y, x), value in constraints.items():
        fixed_mask[y, x] = True
        delta[y, x] = value

    distance = distance_transform_edt(~fixed_mask)
    unknown = patch.validity_mask & ~fixed_mask & (distance <= LOCAL_LEVELING_BAND)
    ys, xs = np.nonzero(unknown)

    if ys.size:
        index = np.full((height, width), -1, dtype=np.int64)
        index[ys, xs] = np.arange(ys.size)

        rows = [np.arange(ys.size)]
        cols = [np.arange(ys.size)]
        vals = [np.full(ys.size, 4.0)]
        rhs = np.zeros((ys.size, 3))
        for dy, dx in _NEIGHBORS:
            ny, nx = ys + dy, xs + dx
            inside = (ny >= 0) & (ny < height) & (nx >= 0) & (nx < width)
            ny_c = np.clip(ny, 0, height - 1)
            nx_c = np.clip(nx, 0, width - 1)

            neighbor = np.where(inside, index[ny_c, nx_c], -1)
            free = neighbor >= 0
            rows.append(np.flatnonzero(free))
            cols.append(neighbor[free])
            vals.append(np.full(int(free.sum()), -1.0))

            # Constrained neighbors move to the right-hand side; everything
            # else outside the unknowns is fixed to zero.
            pinned = inside & fixed_mask[ny_c, nx_c]
            rhs[pinned] += delta[ny_c[pinned], nx_c[pinned]]

        matrix = coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(ys.size, ys.size),
        ).tocsc()
        for channel in range(3):
            delta[ys, xs, channel] = np.atleast_1d(spsolve(matrix, rhs[:, channel]))

    image = patch.image + delta.astype(np.float32)
    patch.image = dilate_texture(image, patch.validity_mask)


def local_seam_leveling(graph, mesh, vertex_projection_infos, patches, settings, on_progress=None):
    """
    Blend the remaining color steps along every patch seam.

    Mutates the patch images in place. Each patch owns its pixels, so the
    patches are processed in parallel.

    Args:
        graph:                   Labeled adjacency graph.
        mesh:                    The Mesh.
        vertex_projection_infos: Per-vertex patch projections.
        patches:                 TexturePatch list (after global leveling).
        settings:                Settings (num_threads).
        on_progress:             Optional callback for status messages.
    """
    report = on_progress or (lambda message: None)

    constraints = _collect_constraints(graph, mesh, vertex_projection_infos, patches)
    pending = [(patch, c) for patch, c in zip(patches, constraints) if c]
    if not pending:
        report("No seams to level locally")
        return

    largest = max(np.abs(delta).max() for _, c in pending for delta in c.values())
    if largest < LOCAL_LEVELING_EPSILON:
        report("Seams already level")
        return

    report(f"Local leveling of {len(pending):,} patches...")
    with ThreadPoolExecutor(max_workers=settings.workers) as pool:
        list(pool.map(lambda item: _level_patch(*item), pending))
    report(f"Locally leveled {len(pending):,} patches (largest step {largest:.4f})")
