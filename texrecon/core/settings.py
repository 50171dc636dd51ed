"""
Configuration for the texturing pipeline.

Two dataclasses make up the configuration: Settings with
the algorithm knobs (smoothness strength, data term, leveling flags, atlas
size, solver budgets) and one Arguments dataclass with the run inputs and
output flags. The CLI maps its flags 1:1 onto these fields; library callers
construct them directly.

Defaults live in module-level constants so they're easy to find and tweak.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

# Data terms offered by the data cost stage.
#   "area": projected area × frontality, penalized by image gradient noise.
#   "gmi":  gradient magnitude integral: projected area × frontality,
#            boosted by image gradient (favors detailed, sharp views).
DATA_TERMS = ("area", "gmi")

# Photometric outlier removal modes (see data_costs.py).
OUTLIER_REMOVAL_MODES = ("none", "gauss_clamping", "gauss_damping")

# Potts penalty charged for every pair of adjacent faces with different labels.
# Data costs are normalized into [0, 1], so 1.0 weighs one seam edge like the
# full quality range of one face.
DEFAULT_SMOOTHNESS = 1.0

# Maximum atlas side length in pixels. 8192 is the largest texture size
# supported by most GPUs and DCC tools.
DEFAULT_MAX_ATLAS_DIM = 8192

# Upper bound on view selection passes (ICM sweep + patch relabel moves).
# Typical meshes converge in well under 10 passes.
DEFAULT_MAX_VIEW_SELECTION_PASSES = 20

# Conjugate gradient budget for global seam leveling.
DEFAULT_LEVELING_MAX_ITERATIONS = 1000
DEFAULT_LEVELING_TOLERANCE = 1e-6

# Weight of the within-patch smoothness rows relative to the seam rows.
DEFAULT_LEVELING_LAMBDA = 0.1


@dataclass
class Settings:
    """Algorithm settings consumed by the core stages."""

    data_term: str = "area"
    outlier_removal: str = "none"
    smoothness: float = DEFAULT_SMOOTHNESS
    geometric_visibility_test: bool = True
    global_seam_leveling: bool = True
    local_seam_leveling: bool = True
    fill_unseen_faces: bool = True
    max_atlas_dim: int = DEFAULT_MAX_ATLAS_DIM
    max_view_selection_passes: int = DEFAULT_MAX_VIEW_SELECTION_PASSES
    leveling_max_iterations: int = DEFAULT_LEVELING_MAX_ITERATIONS
    leveling_tolerance: float = DEFAULT_LEVELING_TOLERANCE
    leveling_lambda: float = DEFAULT_LEVELING_LAMBDA
    num_threads: int | None = None

    def __post_init__(self):
        if self.data_term not in DATA_TERMS:
            raise ValueError(
                f"Unknown data term '{self.data_term}' "
                f"(expected one of: {', '.join(DATA_TERMS)})"
            )
        if self.outlier_removal not in OUTLIER_REMOVAL_MODES:
            raise ValueError(
                f"Unknown outlier removal mode '{self.outlier_removal}' "
                f"(expected one of: {', '.join(OUTLIER_REMOVAL_MODES)})"
            )
        if self.smoothness < 0:
            raise ValueError("Smoothness must be non-negative")
        if self.max_atlas_dim < 1:
            raise ValueError("Maximum atlas dimension must be positive")

    @property
    def workers(self) -> int:
        """Size of the worker pool used by the data-parallel stages."""
        if self.num_threads is not None and self.num_threads > 0:
            return self.num_threads
        return os.cpu_count() or 1

    def to_string(self) -> str:
        return "\n".join(
            f"{f.name}: {getattr(self, f.name)}" for f in fields(self)
        )


@dataclass
class Arguments:
    """
    Inputs and output flags for one texturing run.

    out_prefix is a path prefix, not a directory: outputs are written as
    <prefix>.obj, <prefix>_data_costs.spt, <prefix>_labeling.vec, etc.
    """

    in_scene: Path
    in_mesh: Path
    out_prefix: Path
    in_images: Path | None = None
    data_cost_file: Path | None = None
    labeling_file: Path | None = None
    write_timings: bool = False
    write_intermediate_results: bool = False
    write_view_selection_model: bool = False
    settings: Settings = field(default_factory=Settings)

    def to_string(self) -> str:
        lines = [
            f"in_scene: {self.in_scene}",
            f"in_images: {self.in_images or ''}",
            f"in_mesh: {self.in_mesh}",
            f"out_prefix: {self.out_prefix}",
            f"data_cost_file: {self.data_cost_file or ''}",
            f"labeling_file: {self.labeling_file or ''}",
            f"write_timings: {self.write_timings}",
            f"write_intermediate_results: {self.write_intermediate_results}",
            f"write_view_selection_model: {self.write_view_selection_model}",
        ]
        return "\n".join(lines) + "\n" + self.settings.to_string() + "\n"
