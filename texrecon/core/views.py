"""
Texture views — the calibrated photographs that supply face colors.

A TextureView bundles one photograph with its pinhole camera (intrinsics K,
world-to-camera rotation R and translation t) and answers the two questions
the pipeline asks of it:

    Visibility — is a face inside the view frustum, facing the camera, and
                 (optionally) not hidden behind other geometry?
    Projection — where do a face's vertices land in the image?

Occlusion testing uses Open3D's RaycastingScene (C++ BVH): one ray per face
from the camera center towards the face centroid; the face is unoccluded when
the first hit is the face itself.

Scenes are loaded from a COLMAP sparse model through pycolmap. Images are
read with Pillow; pillow-heif is registered so HEIC photos (the iPhone
default) load like any other format. Images are loaded lazily on first use
and cached, so building a view set is cheap even for hundreds of views.

Pixel convention: pixel centers sit at integer coordinates (see raster.py).
COLMAP puts pixel centers at +0.5, so the principal point is shifted by
-0.5 when a COLMAP camera is converted.
"""

import threading
from pathlib import Path

import numpy as np
from PIL import Image
from pillow_heif import register_heif_opener
from scipy.ndimage import sobel

from texrecon.core.errors import InputError
from texrecon.core.raster import bilinear_sample

# Register HEIF/HEIC support with Pillow so Image.open() can read Apple's
# default photo format.
register_heif_opener()


# Projected vertices must lie at least this far inside the image border so
# that bilinear sampling never leaves the image.
IMAGE_BORDER = 0.0

# Relative slack on ray hit distances before a face counts as occluded.
OCCLUSION_TOLERANCE = 1e-4

# Camera models accepted from COLMAP. Distorted models must be undistorted
# upstream (e.g. with `colmap image_undistorter`).
PINHOLE_MODELS = ("SIMPLE_PINHOLE", "PINHOLE")

# Distinct colors for the view selection debug model, cycled per view.
DEBUG_COLORS = np.array(
    [
        [0.90, 0.10, 0.10], [0.10, 0.60, 0.90], [0.20, 0.80, 0.20],
        [0.95, 0.80, 0.10], [0.60, 0.20, 0.80], [0.95, 0.50, 0.10],
        [0.10, 0.80, 0.70], [0.90, 0.30, 0.60], [0.50, 0.50, 0.50],
        [0.60, 0.40, 0.20], [0.70, 0.90, 0.30], [0.20, 0.20, 0.70],
    ],
    dtype=np.float32,
)


def load_image(path) -> np.ndarray:
    """Load an image as (H, W, 3) float32 RGB in [0, 1]."""
    try:
        with Image.open(path) as img:
            rgb = img.convert("RGB")
            return np.asarray(rgb, dtype=np.float32) / 255.0
    except Exception as e:
        raise InputError(f"Could not load image {path}: {e}")


class TextureView:
    """
    One calibrated photograph.

    Args:
        view_id:    Index of the view in its TextureViewSet (= face label).
        K:          (3, 3) intrinsic matrix.
        R:          (3, 3) world-to-camera rotation.
        t:          (3,) world-to-camera translation.
        width:      Image width in pixels.
        height:     Image height in pixels.
        image:      Optional (H, W, 3) float image in [0, 1].
        image_path: Optional path the image is loaded from on first use.
    """

    def __init__(self, view_id, K, R, t, width, height, image=None, image_path=None):
        self.id = int(view_id)
        self.K = np.asarray(K, dtype=np.float64).reshape(3, 3)
        self.R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(t, dtype=np.float64).reshape(3)
        self.width = int(width)
        self.height = int(height)
        self.image_path = Path(image_path) if image_path is not None else None
        self._image = None
        self._gradient = None
        # Patch and data cost workers share views; decode each photo once.
        self._load_lock = threading.RLock()

        if image is None and self.image_path is None:
            raise InputError(f"View {self.id} has neither image data nor an image path")
        if image is not None:
            self._set_image(np.asarray(image, dtype=np.float32))

    def _set_image(self, image):
        if image.ndim != 3 or image.shape[2] != 3:
            raise InputError(f"View {self.id}: image must have shape (H, W, 3), got {image.shape}")
        if image.shape[:2] != (self.height, self.width):
            raise InputError(
                f"View {self.id}: image is {image.shape[1]}x{image.shape[0]} but the "
                f"camera expects {self.width}x{self.height}"
            )
        self._image = image
        self._gradient = None

    @property
    def image(self) -> np.ndarray:
        if self._image is None:
            with self._load_lock:
                if self._image is None:
                    self._set_image(load_image(self.image_path))
        return self._image

    @property
    def gradient_magnitude(self) -> np.ndarray:
        """Sobel gradient magnitude of the grayscale image, (H, W) float32."""
        if self._gradient is None:
            with self._load_lock:
                if self._gradient is None:
                    gray = self.image.mean(axis=2)
                    gx = sobel(gray, axis=1)
                    gy = sobel(gray, axis=0)
                    # The 3x3 Sobel kernel sums to 8 per unit step; normalize so a
                    # hard 0→1 edge has magnitude ~1.
                    self._gradient = (np.hypot(gx, gy) / 8.0).astype(np.float32)
        return self._gradient

    @property
    def camera_position(self) -> np.ndarray:
        return -self.R.T @ self.t

    def viewing_direction(self, points) -> np.ndarray:
        """Unit vectors from the camera center towards each point, (N, 3)."""
        directions = np.atleast_2d(np.asarray(points, dtype=np.float64)) - self.camera_position
        norms = np.linalg.norm(directions, axis=1, keepdims=True)
        return directions / np.maximum(norms, 1e-12)

    def project(self, points):
        """
        Project world points into the image.

        Returns:
            (pixels, depths): (N, 2) pixel coordinates (x, y) and (N,) depths
            along the optical axis. Points behind the camera get a depth <= 0
            and meaningless pixel coordinates.
        """
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        cam = points @ self.R.T + self.t
        depths = cam[:, 2]
        safe = np.where(np.abs(depths) > 1e-12, depths, 1e-12)
        pix = cam @ self.K.T
        pixels = pix[:, :2] / safe[:, np.newaxis]
        return pixels, depths

    def is_inside(self, pixels, depths) -> np.ndarray:
        """True for points in front of the camera and within the image."""
        return (
            (depths > 0)
            & (pixels[:, 0] >= IMAGE_BORDER)
            & (pixels[:, 1] >= IMAGE_BORDER)
            & (pixels[:, 0] <= self.width - 1 - IMAGE_BORDER)
            & (pixels[:, 1] <= self.height - 1 - IMAGE_BORDER)
        )

    def visible_faces(self, mesh, raycasting_scene=None) -> np.ndarray:
        """
        Visibility test for every face of `mesh`.

        A face is visible when all three corners project inside the image,
        it faces the camera, and — if a raycasting scene is given — the ray
        from the camera to its centroid hits nothing before the face.

        Returns:
            (F,) bool array.
        """
        if mesh.num_faces == 0:
            return np.zeros(0, dtype=bool)

        pixels, depths = self.project(mesh.vertices)
        corner_inside = self.is_inside(pixels, depths)[mesh.faces]
        visible = corner_inside.all(axis=1)

        to_camera = self.camera_position - mesh.face_centroids
        visible &= np.einsum("ij,ij->i", mesh.face_normals, to_camera) > 0

        if raycasting_scene is not None and visible.any():
            candidates = np.flatnonzero(visible)
            visible[candidates] = self._unoccluded(mesh, candidates, raycasting_scene)
        return visible

    def _unoccluded(self, mesh, face_ids, scene):
        import open3d as o3d

        origin = self.camera_position
        targets = mesh.face_centroids[face_ids]
        directions = targets - origin
        distances = np.linalg.norm(directions, axis=1)
        directions = directions / np.where(distances > 0, distances, 1.0)[:, np.newaxis]

        rays = np.concatenate(
            [np.broadcast_to(origin, directions.shape), directions], axis=1
        ).astype(np.float32)
        hits = scene.cast_rays(o3d.core.Tensor(rays, dtype=o3d.core.Dtype.Float32))
        t_hit = hits["t_hit"].numpy()
        primitive = hits["primitive_ids"].numpy().astype(np.int64)

        return (primitive == face_ids) | (t_hit >= distances * (1.0 - OCCLUSION_TOLERANCE))

    def face_infos(self, mesh, face_ids):
        """
        Per-face measurements used by the data term.

        Args:
            mesh:     The Mesh.
            face_ids: (N,) ids of faces already known to be visible.

        Returns:
            dict of (N,) arrays "area" (projected area in pixels), "cos"
            (cosine of the viewing angle), "gradient" (mean gradient
            magnitude over centroid and corners) and (N, 3) "color" (mean
            color over the same samples).
        """
        face_ids = np.asarray(face_ids, dtype=np.int64)
        corners = mesh.vertices[mesh.faces[face_ids]]  # (N, 3, 3)
        pixels, _ = self.project(corners.reshape(-1, 3))
        pixels = pixels.reshape(-1, 3, 2)

        e1 = pixels[:, 1] - pixels[:, 0]
        e2 = pixels[:, 2] - pixels[:, 0]
        area = 0.5 * np.abs(e1[:, 0] * e2[:, 1] - e1[:, 1] * e2[:, 0])

        to_camera = -self.viewing_direction(mesh.face_centroids[face_ids])
        cos = np.clip(np.einsum("ij,ij->i", mesh.face_normals[face_ids], to_camera), 0.0, 1.0)

        # Sample at the projected centroid and the three corners.
        samples = np.concatenate([pixels.mean(axis=1, keepdims=True), pixels], axis=1)
        xs = samples[..., 0].ravel()
        ys = samples[..., 1].ravel()
        gradient = bilinear_sample(self.gradient_magnitude, xs, ys).reshape(-1, 4).mean(axis=1)
        color = bilinear_sample(self.image, xs, ys).reshape(-1, 4, 3).mean(axis=1)

        return {"area": area, "cos": cos, "gradient": gradient, "color": color}

    def with_image(self, image) -> "TextureView":
        """Copy of this view with a different pixel buffer."""
        return TextureView(self.id, self.K, self.R, self.t, self.width, self.height, image=image)


class TextureViewSet:
    """Ordered collection of texture views; view i carries label i."""

    def __init__(self, views):
        self._views = list(views)
        for i, view in enumerate(self._views):
            if view.id != i:
                raise InputError(f"View at position {i} has id {view.id}")

    def __len__(self):
        return len(self._views)

    def __getitem__(self, index) -> TextureView:
        return self._views[index]

    def __iter__(self):
        return iter(self._views)

    @classmethod
    def from_arrays(cls, cameras, images) -> "TextureViewSet":
        """
        Build a view set from in-memory cameras and images.

        Args:
            cameras: Sequence of (K, R, t) tuples.
            images:  Sequence of (H, W, 3) float images in [0, 1], one per camera.
        """
        if len(cameras) != len(images):
            raise InputError(f"Got {len(cameras)} cameras but {len(images)} images")
        views = []
        for i, ((K, R, t), image) in enumerate(zip(cameras, images)):
            image = np.asarray(image, dtype=np.float32)
            views.append(TextureView(i, K, R, t, image.shape[1], image.shape[0], image=image))
        return cls(views)

    def with_debug_colors(self) -> "TextureViewSet":
        """
        View set whose images are replaced by one uniform color per view.

        Running patch generation and atlas packing on this set produces the
        view selection debug model: every face shows the color of the view
        it was assigned to.
        """
        debug = []
        for view in self._views:
            color = DEBUG_COLORS[view.id % len(DEBUG_COLORS)]
            image = np.broadcast_to(color, (view.height, view.width, 3)).copy()
            debug.append(view.with_image(image))
        return TextureViewSet(debug)


def build_raycasting_scene(mesh):
    """
    Open3D raycasting scene over the mesh, used for occlusion tests.

    Raises:
        InputError: If open3d is not installed.
    """
    try:
        import open3d as o3d
    except ImportError as e:
        raise InputError(
            "The geometric visibility test needs open3d (pip install texrecon[raycast]). "
            "Install it or run with --skip-geometric-visibility-test."
        ) from e

    legacy = o3d.geometry.TriangleMesh()
    legacy.vertices = o3d.utility.Vector3dVector(mesh.vertices.astype(np.float64))
    legacy.triangles = o3d.utility.Vector3iVector(mesh.faces.astype(np.int32))

    scene = o3d.t.geometry.RaycastingScene()
    scene.add_triangles(o3d.t.geometry.TriangleMesh.from_legacy(legacy))
    return scene


def load_colmap_scene(sparse_dir, image_dir) -> TextureViewSet:
    """
    Build a TextureViewSet from a COLMAP sparse model.

    Views are ordered by COLMAP image id, so labels stay stable between
    runs on the same model. Images are not read here; each view loads its
    photo from image_dir on first use.

    Args:
        sparse_dir: Directory with cameras/images/points3D (.bin or .txt).
        image_dir:  Directory containing the (undistorted) images.

    Raises:
        InputError: If the model cannot be read, is empty, uses a distorted
                    camera model, or references a missing image file.
    """
    try:
        import pycolmap
    except ImportError as e:
        raise InputError(
            "Reading a COLMAP scene needs pycolmap (pip install texrecon[colmap])"
        ) from e

    sparse_dir = Path(sparse_dir)
    image_dir = Path(image_dir)

    if not sparse_dir.is_dir():
        raise InputError(f"Scene directory {sparse_dir} does not exist")

    try:
        reconstruction = pycolmap.Reconstruction(str(sparse_dir))
    except Exception as e:
        raise InputError(f"Could not load COLMAP model from {sparse_dir}: {e}")

    views = []
    for image_id in sorted(reconstruction.images):
        image = reconstruction.images[image_id]
        camera = reconstruction.cameras[image.camera_id]

        model_name = camera.model.name if hasattr(camera.model, "name") else str(camera.model)
        if model_name not in PINHOLE_MODELS:
            raise InputError(
                f"Image {image.name} uses the distorted camera model {model_name}. "
                "Undistort the images first (colmap image_undistorter)."
            )

        path = image_dir / image.name
        if not path.is_file():
            raise InputError(f"Image file {path} referenced by the scene does not exist")

        pose = image.cam_from_world
        if callable(pose):
            pose = pose()

        K = np.array(camera.calibration_matrix(), dtype=np.float64)
        K[0, 2] -= 0.5
        K[1, 2] -= 0.5

        views.append(
            TextureView(
                view_id=len(views),
                K=K,
                R=np.array(pose.rotation.matrix()),
                t=np.array(pose.translation),
                width=camera.width,
                height=camera.height,
                image_path=path,
            )
        )

    if not views:
        raise InputError(f"COLMAP model in {sparse_dir} contains no registered images")

    return TextureViewSet(views)
