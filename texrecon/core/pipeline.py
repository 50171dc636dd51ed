"""
Texturing pipeline — stage definitions and the stage runner.

The texturing workflow runs as a fixed sequence of stages:

    1. Load Mesh — read the triangle mesh, build per-vertex adjacency
    2. Load Scene — read the calibrated views from the COLMAP model
    3. Build Graph — face adjacency graph
    4. Data Costs — per (face, view) texturing cost, or load a .spt file
    5. View Selection — one view per face, or load a .vec labeling
    6. Texture Patches — cut the labeled faces into patches
    7. Global Seam Leveling — sparse color correction across seams
    8. Local Seam Leveling — image-space blending along seams
    9. Texture Atlases — pack patches into atlas images
   10. Model — assemble and write the OBJ bundle

Each stage fully finishes before the next one starts. Every stage method
receives a progress callback; messages are forwarded to the caller together
with the stage name, so the core modules never need to know which stage they
run in.

The stage constants are used as keys for progress reporting and timings.
"""

import time
from pathlib import Path

from texrecon.core.atlas import generate_texture_atlases
from texrecon.core.data_costs import calculate_data_costs
from texrecon.core.errors import TexturingError, ValidationError
from texrecon.core.graph import build_adjacency_graph
from texrecon.core.local_leveling import local_seam_leveling
from texrecon.core.mesh import build_vertex_infos, load_mesh
from texrecon.core.model import build_model, save_model
from texrecon.core.patches import generate_texture_patches
from texrecon.core.persistence import (
    load_data_costs,
    load_labeling,
    save_data_costs,
    save_labeling,
    write_string_to_file,
    write_timings,
)
from texrecon.core.seam_leveling import apply_zero_adjustments, global_seam_leveling
from texrecon.core.view_selection import apply_labeling, view_selection
from texrecon.core.views import load_colmap_scene
from texrecon.core.workspace import resolve_output_paths


class PipelineStage:
    """
    String constants identifying each pipeline stage.

    A class with constants (rather than an enum) allows direct string
    comparison without .value access.
    """
    LOAD_MESH = "load_mesh"
    LOAD_SCENE = "load_scene"
    GRAPH = "build_graph"
    DATA_COSTS = "data_costs"
    VIEW_SELECTION = "view_selection"
    PATCHES = "texture_patches"
    GLOBAL_LEVELING = "global_seam_leveling"
    LOCAL_LEVELING = "local_seam_leveling"
    ATLASES = "texture_atlases"
    MODEL = "model"


# Ordered list of stages, in execution order.
STAGE_ORDER = [
    PipelineStage.LOAD_MESH,
    PipelineStage.LOAD_SCENE,
    PipelineStage.GRAPH,
    PipelineStage.DATA_COSTS,
    PipelineStage.VIEW_SELECTION,
    PipelineStage.PATCHES,
    PipelineStage.GLOBAL_LEVELING,
    PipelineStage.LOCAL_LEVELING,
    PipelineStage.ATLASES,
    PipelineStage.MODEL,
]

# Human-readable names, used in progress output and error messages.
STAGE_DISPLAY_NAMES = {
    PipelineStage.LOAD_MESH: "Loading Mesh",
    PipelineStage.LOAD_SCENE: "Loading Scene",
    PipelineStage.GRAPH: "Building Adjacency Graph",
    PipelineStage.DATA_COSTS: "Calculating Data Costs",
    PipelineStage.VIEW_SELECTION: "View Selection",
    PipelineStage.PATCHES: "Generating Texture Patches",
    PipelineStage.GLOBAL_LEVELING: "Global Seam Leveling",
    PipelineStage.LOCAL_LEVELING: "Local Seam Leveling",
    PipelineStage.ATLASES: "Building Texture Atlases",
    PipelineStage.MODEL: "Building Model",
}


class TexturingPipeline:
    """
    Runs every texturing stage in STAGE_ORDER for one set of Arguments.

    A mesh and/or view set may be passed in directly (library use, tests);
    the corresponding loading stage then reuses it instead of reading files.

    Callbacks:
        on_stage_started(stage)         — before a stage runs.
        on_progress(stage, message)     — status messages within a stage.
        on_stage_completed(stage, secs) — after a stage succeeded.

    Errors:
        TexturingError subclasses raised by a stage propagate unchanged.
        Any other exception is wrapped as
        TexturingError("<stage display name> failed: <cause>").
    """

    def __init__(self, arguments, mesh=None, views=None,
                 on_stage_started=None, on_progress=None, on_stage_completed=None):
        self.arguments = arguments
        self.settings = arguments.settings
        self.paths = resolve_output_paths(arguments.out_prefix)

        self._on_stage_started = on_stage_started or (lambda stage: None)
        self._on_progress = on_progress or (lambda stage, message: None)
        self._on_stage_completed = on_stage_completed or (lambda stage, seconds: None)

        self.mesh = mesh
        self.views = views
        self.vertex_infos = None
        self.graph = None
        self.data_costs = None
        self.patches = None
        self.vertex_projection_infos = None
        self.leveling_result = None
        self.atlases = None
        self.model = None
        self.timings: list[tuple[str, float]] = []

    def run(self) -> Path:
        """
        Execute each pipeline stage in sequence.

        Returns:
            Path to the written OBJ file.
        """
        stage_methods = {
            PipelineStage.LOAD_MESH: self._load_mesh,
            PipelineStage.LOAD_SCENE: self._load_scene,
            PipelineStage.GRAPH: self._build_graph,
            PipelineStage.DATA_COSTS: self._data_costs,
            PipelineStage.VIEW_SELECTION: self._view_selection,
            PipelineStage.PATCHES: self._texture_patches,
            PipelineStage.GLOBAL_LEVELING: self._global_leveling,
            PipelineStage.LOCAL_LEVELING: self._local_leveling,
            PipelineStage.ATLASES: self._texture_atlases,
            PipelineStage.MODEL: self._build_model,
        }

        for stage in STAGE_ORDER:
            self._run_stage(stage, stage_methods[stage])
            if stage == PipelineStage.VIEW_SELECTION:
                # Inputs are validated once the labeling is in place.
                write_string_to_file(self.paths.conf, self.arguments.to_string())

        if self.arguments.write_view_selection_model:
            self.build_view_selection_model(self._make_progress_callback(PipelineStage.MODEL))

        if self.arguments.write_timings:
            write_timings(self.paths.timings, self.timings)

        return self.paths.prefix.with_name(self.paths.prefix.name + ".obj")

    def _run_stage(self, stage, method):
        self._on_stage_started(stage)
        start = time.perf_counter()
        try:
            method(self._make_progress_callback(stage))
        except TexturingError:
            raise
        except Exception as e:
            raise TexturingError(f"{STAGE_DISPLAY_NAMES[stage]} failed: {e}") from e
        elapsed = time.perf_counter() - start
        self.timings.append((stage, elapsed))
        self._on_stage_completed(stage, elapsed)

    def _make_progress_callback(self, stage: str):
        """Progress callback that tags every message with its stage."""
        def callback(message: str):
            self._on_progress(stage, message)
        return callback

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    def _load_mesh(self, on_progress):
        if self.mesh is None:
            on_progress(f"Reading {self.arguments.in_mesh}...")
            self.mesh = load_mesh(self.arguments.in_mesh)
        self.vertex_infos = build_vertex_infos(self.mesh)
        on_progress(f"{self.mesh.num_vertices:,} vertices, {self.mesh.num_faces:,} faces")

    def _load_scene(self, on_progress):
        if self.views is None:
            scene = Path(self.arguments.in_scene)
            images = self.arguments.in_images or scene.parent / "images"
            on_progress(f"Reading COLMAP model from {scene}...")
            self.views = load_colmap_scene(scene, images)
        on_progress(f"{len(self.views)} texture views")

    def _build_graph(self, on_progress):
        self.graph = build_adjacency_graph(self.mesh, self.vertex_infos)
        on_progress(f"{self.graph.num_nodes():,} nodes, {self.graph.num_edges():,} edges")

    def _data_costs(self, on_progress):
        arguments = self.arguments
        if arguments.labeling_file is not None:
            on_progress("Labeling file given, skipping data costs")
            return

        if arguments.data_cost_file is not None:
            on_progress(f"Loading data costs from {arguments.data_cost_file}...")
            data_costs = load_data_costs(arguments.data_cost_file)
            if data_costs.num_faces != self.mesh.num_faces or data_costs.num_views != len(self.views):
                raise ValidationError(
                    f"Data cost file {arguments.data_cost_file} was computed for "
                    f"{data_costs.num_faces:,} faces and {data_costs.num_views} views, but the "
                    f"mesh has {self.mesh.num_faces:,} faces and the scene {len(self.views)} views"
                )
            self.data_costs = data_costs
            return

        self.data_costs = calculate_data_costs(self.mesh, self.views, self.settings, on_progress)
        if arguments.write_intermediate_results:
            save_data_costs(self.data_costs, self.paths.data_costs)
            on_progress(f"Wrote {self.paths.data_costs}")

    def _view_selection(self, on_progress):
        arguments = self.arguments
        if arguments.labeling_file is not None:
            on_progress(f"Loading labeling from {arguments.labeling_file}...")
            labeling = load_labeling(arguments.labeling_file)
            apply_labeling(labeling, self.graph, len(self.views))
            return

        view_selection(self.data_costs, self.graph, self.settings, on_progress)
        if arguments.write_intermediate_results:
            save_labeling(self.graph.labels, self.paths.labeling)
            on_progress(f"Wrote {self.paths.labeling}")

    def _texture_patches(self, on_progress):
        self.patches, self.vertex_projection_infos = generate_texture_patches(
            self.graph, self.mesh, self.vertex_infos, self.views, self.settings, on_progress
        )

    def _global_leveling(self, on_progress):
        if not self.settings.global_seam_leveling:
            on_progress("Global seam leveling disabled")
            apply_zero_adjustments(self.patches, self.settings)
            return
        self.leveling_result = global_seam_leveling(
            self.graph, self.mesh, self.vertex_infos, self.vertex_projection_infos,
            self.patches, self.settings, on_progress,
        )

    def _local_leveling(self, on_progress):
        if not self.settings.local_seam_leveling:
            on_progress("Local seam leveling disabled")
            return
        local_seam_leveling(
            self.graph, self.mesh, self.vertex_projection_infos, self.patches,
            self.settings, on_progress,
        )

    def _texture_atlases(self, on_progress):
        self.atlases = generate_texture_atlases(self.patches, self.settings, on_progress)

    def _build_model(self, on_progress):
        self.model = build_model(self.mesh, self.atlases)
        path = save_model(self.model, self.paths.prefix)
        on_progress(f"Wrote {path}")

    # -----------------------------------------------------------------------
    # View selection debug model
    # -----------------------------------------------------------------------

    def build_view_selection_model(self, on_progress=None) -> Path:
        """
        Write a model whose faces show the color of their selected view.

        Patch generation and atlas packing run again, unchanged, on a view
        set with one uniform color per view. Requires a labeled graph.
        """
        report = on_progress or (lambda message: None)
        report("Building view selection model...")

        debug_views = self.views.with_debug_colors()
        patches, _ = generate_texture_patches(
            self.graph, self.mesh, self.vertex_infos, debug_views, self.settings
        )
        apply_zero_adjustments(patches, self.settings)
        atlases = generate_texture_atlases(patches, self.settings)
        path = save_model(build_model(self.mesh, atlases), self.paths.view_selection_prefix)
        report(f"Wrote {path}")
        return path
