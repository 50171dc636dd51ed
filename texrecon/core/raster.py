"""
Image-space helpers shared by patch generation, seam leveling and atlases.

Pixel convention used throughout the pipeline: pixel (row y, column x) has
its center at the continuous coordinate (x, y). A projected point at
(12.0, 7.0) lies exactly on the center of pixel [7, 12]; (12.5, 7.0) lies
halfway between pixels [7, 12] and [7, 13].

    rasterize_triangle  — barycentric coverage of one 2D triangle.
    bilinear_sample     — sub-pixel color lookup.
    dilate_texture      — grow valid regions into invalid pixels so that
                          bilinear sampling and mipmapping near patch borders
                          never pick up uninitialized colors.
"""

import numpy as np
from scipy.ndimage import distance_transform_edt


# Epsilon for the barycentric inside-triangle test. A small negative value
# includes pixels exactly on shared triangle edges, preventing hairline gaps
# between adjacent faces of the same patch.
BARY_EPSILON = -1e-5

# Twice-area below which a projected triangle is treated as degenerate.
DEGENERATE_AREA = 1e-12


def rasterize_triangle(tri, height, width, epsilon=BARY_EPSILON):
    """
    Find the pixels of an image whose centers lie inside a 2D triangle.

    Args:
        tri:     (3, 2) float triangle corners in pixel coordinates (x, y).
        height:  Image height (rows).
        width:   Image width (columns).
        epsilon: Barycentric tolerance. Negative values grow the triangle
                 slightly.

    Returns:
        (ys, xs, weights): row indices, column indices and (P, 3) barycentric
        weights of the covered pixels. Empty arrays for degenerate triangles
        or triangles outside the image.
    """
    empty = (np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros((0, 3)))

    (x0, y0), (x1, y1), (x2, y2) = np.asarray(tri, dtype=np.float64)

    # Axis-aligned bounding box, clamped to the image.
    xmin = max(0, int(np.floor(min(x0, x1, x2))))
    xmax = min(width - 1, int(np.ceil(max(x0, x1, x2))))
    ymin = max(0, int(np.floor(min(y0, y1, y2))))
    ymax = min(height - 1, int(np.ceil(max(y0, y1, y2))))
    if xmin > xmax or ymin > ymax:
        return empty

    # Signed double area of the triangle.
    denom = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
    if abs(denom) < DEGENERATE_AREA:
        return empty

    xs = np.arange(xmin, xmax + 1, dtype=np.float64)
    ys = np.arange(ymin, ymax + 1, dtype=np.float64)
    xx, yy = np.meshgrid(xs, ys)

    w0 = ((y1 - y2) * (xx - x2) + (x2 - x1) * (yy - y2)) / denom
    w1 = ((y2 - y0) * (xx - x2) + (x0 - x2) * (yy - y2)) / denom
    w2 = 1.0 - w0 - w1

    inside = (w0 >= epsilon) & (w1 >= epsilon) & (w2 >= epsilon)
    if not inside.any():
        return empty

    iy, ix = np.nonzero(inside)
    weights = np.stack([w0[iy, ix], w1[iy, ix], w2[iy, ix]], axis=1)
    return ymin + iy, xmin + ix, weights


def bilinear_sample(img, x, y):
    """
    Bilinear interpolation at fractional pixel coordinates.

    Coordinates outside the image are clamped to the border pixels.

    Args:
        img: (H, W) or (H, W, C) array.
        x:   (N,) column coordinates.
        y:   (N,) row coordinates.

    Returns:
        (N,) or (N, C) float64 samples.
    """
    h, w = img.shape[:2]
    x = np.clip(np.asarray(x, dtype=np.float64), 0.0, w - 1)
    y = np.clip(np.asarray(y, dtype=np.float64), 0.0, h - 1)

    x0 = np.floor(x).astype(np.int64)
    y0 = np.floor(y).astype(np.int64)
    x1 = np.minimum(x0 + 1, w - 1)
    y1 = np.minimum(y0 + 1, h - 1)
    fx = x - x0
    fy = y - y0
    if img.ndim == 3:
        fx = fx[:, np.newaxis]
        fy = fy[:, np.newaxis]

    return (
        (1 - fx) * (1 - fy) * img[y0, x0]
        + fx * (1 - fy) * img[y0, x1]
        + (1 - fx) * fy * img[y1, x0]
        + fx * fy * img[y1, x1]
    )


def dilate_texture(img_data, filled_mask, iterations=None):
    """
    Fill unfilled pixels with the color of the nearest filled pixel.

    Uses scipy's distance_transform_edt for a single vectorized pass: for
    every unfilled pixel it returns the row/col of the nearest filled pixel,
    whose value is copied over.

    Args:
        img_data:    (H, W, C) or (H, W) array to dilate.
        filled_mask: (H, W) bool array — True where img_data is meaningful.
        iterations:  Dilation radius in pixels; None fills every pixel.

    Returns:
        New array of the same shape with the unfilled pixels filled. If no
        pixel is filled, a copy of the input is returned.
    """
    result = img_data.copy()
    if not filled_mask.any() or filled_mask.all():
        return result

    dist, nearest_indices = distance_transform_edt(~filled_mask, return_indices=True)

    fill = dist > 0
    if iterations is not None:
        fill &= dist <= iterations

    if fill.any():
        nearest_r = nearest_indices[0][fill]
        nearest_c = nearest_indices[1][fill]
        result[fill] = img_data[nearest_r, nearest_c]

    return result
