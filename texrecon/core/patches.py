"""
Texture patches — connected same-view regions cut out of their photograph.

After view selection every face carries a label (a view index). Faces with
the same label that are connected through shared edges form one patch; each
patch becomes one rectangle in the texture atlas.

Per patch:
    1. Project the patch's vertices into its view.
    2. Crop the bounding rectangle of the projections, grown by
       TEXTURE_PATCH_BORDER pixels and clipped to the image.
    3. Local texcoords = projected pixel coordinates - rectangle origin.
    4. Validity mask = rasterized face footprints. Pixels outside the mask
       are filled from their nearest valid pixel (EDT), so bilinear lookups
       and mipmapping near the patch outline never read unrelated colors.

Alongside the patches, a VertexProjectionInfo list is recorded for every mesh
vertex: where the vertex lands in each patch that uses it. Seam leveling works
entirely on these records: a vertex with two or more entries lies on a seam.

Faces labeled INVALID_LABEL produce no patch and are never colored.

Corners that fall outside the view (only possible for unseen faces that took
a neighbor's label) are clamped to the image border, so their texture is a
stretched copy of the nearest edge pixels instead of garbage.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np

from texrecon.core.graph import INVALID_LABEL
from texrecon.core.raster import bilinear_sample, dilate_texture, rasterize_triangle

# Extra pixels kept around every patch's projected footprint. Gives bilinear
# sampling and atlas mipmapping a margin of real image content.
TEXTURE_PATCH_BORDER = 3


@dataclass
class VertexProjectionInfo:
    """Where one mesh vertex lands in one patch."""

    patch_id: int
    projection: np.ndarray  # (2,) local pixel coordinates (x, y)
    faces: list[int] = field(default_factory=list)  # patch faces touching the vertex


class TexturePatch:
    """
    A connected group of same-label faces and its pixels.

    Attributes:
        label:         View index the pixels come from.
        faces:         (n,) sorted face ids.
        texcoords:     (n, 3, 2) local pixel coordinates of each face corner.
        image:         (h, w, 3) float32 colors.
        validity_mask: (h, w) bool, True inside the rasterized faces.
        adjust_values: (n * 3, 3) float32 accumulated per-corner color
                       corrections applied by adjust_colors().
    """

    def __init__(self, label, faces, texcoords, image):
        self.label = int(label)
        self.faces = np.asarray(faces, dtype=np.int64)
        self.texcoords = np.asarray(texcoords, dtype=np.float64).reshape(-1, 3, 2)
        self.adjust_values = np.zeros((self.faces.size * 3, 3), dtype=np.float32)

        image = np.asarray(image, dtype=np.float32)
        self.validity_mask = self._footprint(image.shape[0], image.shape[1])
        self.image = dilate_texture(image, self.validity_mask)

    @property
    def height(self) -> int:
        return self.image.shape[0]

    @property
    def width(self) -> int:
        return self.image.shape[1]

    def _footprint(self, height, width):
        mask = np.zeros((height, width), dtype=bool)
        for tri in self.texcoords:
            ys, xs, _ = rasterize_triangle(tri, height, width)
            mask[ys, xs] = True
        return mask

    def sample(self, points) -> np.ndarray:
        """Bilinear colors at (N, 2) local pixel coordinates."""
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        return bilinear_sample(self.image, points[:, 0], points[:, 1])

    def pixel(self, points) -> np.ndarray:
        """Colors of the pixels nearest to (N, 2) local pixel coordinates."""
        ix, iy = self.nearest_pixels(points)
        return self.image[iy, ix].astype(np.float64)

    def nearest_pixels(self, points):
        """(xs, ys) integer pixel indices nearest to the given points."""
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        ix = np.clip(np.rint(points[:, 0]).astype(np.int64), 0, self.width - 1)
        iy = np.clip(np.rint(points[:, 1]).astype(np.int64), 0, self.height - 1)
        return ix, iy

    def adjust_colors(self, values) -> None:
        """
        Add per-corner color corrections to the patch pixels.

        The correction of every pixel inside a face is the barycentric blend
        of that face's three corner values. Afterwards the validity mask is
        rebuilt from the face footprints and the pixels outside it are
        refilled from their nearest valid neighbor. Zero values leave every
        color unchanged.

        Args:
            values: (n * 3, 3) corrections, rows ordered face by face,
                    corner by corner.
        """
        values = np.asarray(values, dtype=np.float32)
        if values.shape != self.adjust_values.shape:
            raise ValueError(
                f"Expected adjustment values of shape {self.adjust_values.shape}, "
                f"got {values.shape}"
            )

        height, width = self.height, self.width
        delta = np.zeros((height, width, 3), dtype=np.float32)
        mask = np.zeros((height, width), dtype=bool)
        corners = values.reshape(-1, 3, 3)
        for tri, corner_values in zip(self.texcoords, corners):
            ys, xs, weights = rasterize_triangle(tri, height, width)
            if ys.size == 0:
                continue
            delta[ys, xs] = weights @ corner_values
            mask[ys, xs] = True

        self.adjust_values += values
        self.validity_mask = mask
        self.image = dilate_texture(self.image + delta, mask)


# ---------------------------------------------------------------------------
# Patch generation
# ---------------------------------------------------------------------------

def _build_patch(mesh, view, faces):
    corners = mesh.faces[faces].ravel()
    pixels, _ = view.project(mesh.vertices[corners])
    pixels[:, 0] = np.clip(pixels[:, 0], 0.0, view.width - 1)
    pixels[:, 1] = np.clip(pixels[:, 1], 0.0, view.height - 1)

    lo = np.floor(pixels.min(axis=0)).astype(np.int64) - TEXTURE_PATCH_BORDER
    hi = np.ceil(pixels.max(axis=0)).astype(np.int64) + TEXTURE_PATCH_BORDER
    lo = np.maximum(lo, 0)
    hi = np.minimum(hi, [view.width - 1, view.height - 1])

    image = view.image[lo[1]:hi[1] + 1, lo[0]:hi[0] + 1].copy()
    texcoords = (pixels - lo).reshape(-1, 3, 2)
    return TexturePatch(view.id, faces, texcoords, image)


def _projection_infos(mesh, vertex_infos, patches):
    infos = [[] for _ in range(mesh.num_vertices)]
    for patch_id, patch in enumerate(patches):
        seen = set()
        for face, tri in zip(patch.faces.tolist(), patch.texcoords):
            for corner, vertex in enumerate(mesh.faces[face].tolist()):
                if vertex in seen:
                    continue
                seen.add(vertex)
                touching = np.intersect1d(vertex_infos[vertex].faces, patch.faces, assume_unique=True)
                infos[vertex].append(
                    VertexProjectionInfo(patch_id, tri[corner].copy(), touching.tolist())
                )
    return infos


def generate_texture_patches(graph, mesh, vertex_infos, views, settings, on_progress=None):
    """
    Cut the labeled faces into texture patches.

    Args:
        graph:        Labeled adjacency graph.
        mesh:         The Mesh.
        vertex_infos: Per-vertex incident faces (see mesh.build_vertex_infos).
        views:        TextureViewSet the labels refer to.
        settings:     Settings (num_threads).
        on_progress:  Optional callback for status messages.

    Returns:
        (patches, vertex_projection_infos): patches ordered by (label,
        smallest face id), and one list of VertexProjectionInfo per mesh
        vertex, sorted by patch id.
    """
    report = on_progress or (lambda message: None)

    jobs = []
    for label in range(len(views)):
        for faces in graph.get_subgraphs(label):
            jobs.append((label, faces))

    report(f"Generating {len(jobs):,} texture patches...")
    with ThreadPoolExecutor(max_workers=settings.workers) as pool:
        patches = list(pool.map(
            lambda job: _build_patch(mesh, views[job[0]], job[1]),
            jobs,
        ))

    vertex_projection_infos = _projection_infos(mesh, vertex_infos, patches)

    untextured = int(np.count_nonzero(graph.labels == INVALID_LABEL))
    if untextured:
        report(f"Warning: {untextured:,} faces have no view and stay untextured")
    return patches, vertex_projection_infos
