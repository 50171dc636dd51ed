"""
Texture atlas packing.

Patches are packed into square atlas images with a guillotine bin packer:

    RectangularBin keeps a list of free rectangles. A request goes into the
    free rectangle that leaves the least area unused (best area fit); the
    leftover L-shape is split into two new free rectangles along the shorter
    leftover axis. Free rectangles never overlap, so placements never do.

Patches are inserted largest first (area, then height, then width, then
index for determinism). Every placement reserves ATLAS_PADDING extra pixels
to the right and below the patch, so mipmaps of neighboring patches do not
bleed into each other. Patches that do not fit open the next atlas.

Atlas size: the smallest power of two that holds 1.2x the remaining patch
area and the largest remaining patch, capped at Settings.max_atlas_dim.

After packing, empty pixels are filled by dilating the patch colors and the
image is converted to uint8.
"""

import numpy as np

from texrecon.core.errors import InputError
from texrecon.core.raster import dilate_texture

# Gap in pixels reserved to the right of and below every patch.
ATLAS_PADDING = 2

# Slack factor on the summed patch area when choosing an atlas size.
AREA_SLACK = 1.2


class RectangularBin:
    """Guillotine packer for one width x height bin."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.free: list[tuple[int, int, int, int]] = [(0, 0, width, height)]

    def insert(self, width: int, height: int):
        """Reserve a width x height rectangle. Returns (x, y) or None."""
        best = None
        best_waste = None
        for i, (fx, fy, fw, fh) in enumerate(self.free):
            if width > fw or height > fh:
                continue
            waste = fw * fh - width * height
            if best_waste is None or waste < best_waste:
                best, best_waste = i, waste
        if best is None:
            return None

        fx, fy, fw, fh = self.free.pop(best)
        if fw - width < fh - height:
            # Shorter leftover along x: horizontal cut.
            right = (fx + width, fy, fw - width, height)
            bottom = (fx, fy + height, fw, fh - height)
        else:
            right = (fx + width, fy, fw - width, fh)
            bottom = (fx, fy + height, width, fh - height)
        for rect in (right, bottom):
            if rect[2] > 0 and rect[3] > 0:
                self.free.append(rect)
        return fx, fy


class TextureAtlas:
    """
    One square atlas image and the faces textured from it.

    Attributes:
        size:       Side length in pixels.
        image:      (size, size, 3) float32 while packing, uint8 once
                    finalized.
        validity_mask: (size, size) bool, True on valid patch pixels.
        faces:      Face ids in insertion order.
        texcoords:  (len(faces), 3, 2) UVs of each face corner.
        placements: (patch_index, x, y, width, height) per placed patch.
    """

    def __init__(self, size: int):
        self.size = size
        self.image = np.zeros((size, size, 3), dtype=np.float32)
        self.validity_mask = np.zeros((size, size), dtype=bool)
        self.placements: list[tuple[int, int, int, int, int]] = []
        self.finalized = False
        self._occupied = np.zeros((size, size), dtype=bool)
        self._bin = RectangularBin(size, size)
        self._faces: list[np.ndarray] = []
        self._texcoords: list[np.ndarray] = []

    @property
    def faces(self) -> np.ndarray:
        if not self._faces:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(self._faces)

    @property
    def texcoords(self) -> np.ndarray:
        if not self._texcoords:
            return np.zeros((0, 3, 2))
        return np.concatenate(self._texcoords)

    def insert(self, patch, patch_index: int) -> bool:
        """Place a patch. Returns False when it does not fit."""
        h, w = patch.height, patch.width
        position = self._bin.insert(w + ATLAS_PADDING, h + ATLAS_PADDING)
        if position is None:
            return False
        x, y = position

        self.image[y:y + h, x:x + w] = patch.image
        self.validity_mask[y:y + h, x:x + w] = patch.validity_mask
        self._occupied[y:y + h, x:x + w] = True

        pixels = patch.texcoords + np.array([x, y], dtype=np.float64)
        uv = np.empty_like(pixels)
        uv[..., 0] = (pixels[..., 0] + 0.5) / self.size
        uv[..., 1] = 1.0 - (pixels[..., 1] + 0.5) / self.size

        self._faces.append(patch.faces)
        self._texcoords.append(uv)
        self.placements.append((patch_index, x, y, w, h))
        return True

    def finalize(self) -> None:
        """Fill empty pixels from the nearest patch and convert to uint8."""
        if self.finalized:
            return
        filled = dilate_texture(self.image, self._occupied)
        self.image = np.round(np.clip(filled, 0.0, 1.0) * 255.0).astype(np.uint8)
        self.finalized = True


def _atlas_size(patches, indices, max_dim):
    area = sum(
        (patches[i].width + ATLAS_PADDING) * (patches[i].height + ATLAS_PADDING)
        for i in indices
    )
    side = max(
        max(patches[i].width, patches[i].height) + ATLAS_PADDING for i in indices
    )
    needed = max(int(np.ceil(np.sqrt(area * AREA_SLACK))), side)
    size = 1
    while size < needed:
        size *= 2
    return min(size, max_dim)


def generate_texture_atlases(patches, settings, on_progress=None) -> list[TextureAtlas]:
    """
    Pack all patches into as many atlases as needed.

    Raises:
        InputError: If a single patch does not fit an atlas of
                    Settings.max_atlas_dim pixels.
    """
    report = on_progress or (lambda message: None)
    max_dim = settings.max_atlas_dim

    for i, patch in enumerate(patches):
        if max(patch.width, patch.height) + ATLAS_PADDING > max_dim:
            raise InputError(
                f"Texture patch {i} ({patch.width}x{patch.height} px) does not fit "
                f"an atlas of at most {max_dim}x{max_dim} px. "
                "Increase the maximum atlas size or use lower resolution images."
            )

    remaining = sorted(
        range(len(patches)),
        key=lambda i: (
            -patches[i].width * patches[i].height,
            -patches[i].height,
            -patches[i].width,
            i,
        ),
    )

    atlases = []
    while remaining:
        atlas = TextureAtlas(_atlas_size(patches, remaining, max_dim))
        leftover = [i for i in remaining if not atlas.insert(patches[i], i)]
        atlas.finalize()
        atlases.append(atlas)
        report(
            f"Atlas {len(atlases)}: {atlas.size}x{atlas.size} px, "
            f"{len(atlas.placements):,} patches"
        )
        remaining = leftover

    return atlases
