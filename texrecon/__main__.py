"""
Command-line entry point for texrecon.

    python -m texrecon SCENE MESH OUT_PREFIX [options]

SCENE is a COLMAP sparse model directory (cameras/images/points3D) of
undistorted images, MESH any triangle mesh trimesh can read, OUT_PREFIX the
path prefix every output file is written under (its directory must exist).

Errors are printed to stderr as a single line and the process exits with
status 1.
"""

import argparse
import sys
from pathlib import Path

from texrecon.core.errors import TexturingError
from texrecon.core.pipeline import STAGE_DISPLAY_NAMES, TexturingPipeline
from texrecon.core.settings import (
    DATA_TERMS,
    DEFAULT_LEVELING_LAMBDA,
    DEFAULT_LEVELING_MAX_ITERATIONS,
    DEFAULT_LEVELING_TOLERANCE,
    DEFAULT_MAX_ATLAS_DIM,
    DEFAULT_MAX_VIEW_SELECTION_PASSES,
    DEFAULT_SMOOTHNESS,
    OUTLIER_REMOVAL_MODES,
    Arguments,
    Settings,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="texrecon",
        description="Texture a triangle mesh from calibrated photographs",
    )
    parser.add_argument("in_scene", type=Path, help="COLMAP sparse model directory")
    parser.add_argument("in_mesh", type=Path, help="Input mesh (.ply, .obj, ...)")
    parser.add_argument("out_prefix", type=Path, help="Output path prefix, e.g. out/model")
    parser.add_argument(
        "--images",
        type=Path,
        default=None,
        help="Directory with the undistorted images (default: SCENE/../images)",
    )
    parser.add_argument(
        "-d", "--data-term",
        default="area",
        choices=DATA_TERMS,
        help="Data term used to rate views (default: area)",
    )
    parser.add_argument(
        "-o", "--outlier-removal",
        default="none",
        choices=OUTLIER_REMOVAL_MODES,
        help="Photometric outlier removal (default: none)",
    )
    parser.add_argument(
        "-s", "--smoothness",
        type=float,
        default=DEFAULT_SMOOTHNESS,
        help=f"Penalty per seam edge in view selection (default: {DEFAULT_SMOOTHNESS})",
    )
    parser.add_argument(
        "--skip-geometric-visibility-test",
        action="store_true",
        help="Do not test views for occlusion by other geometry",
    )
    parser.add_argument(
        "--skip-global-seam-leveling",
        action="store_true",
        help="Skip the global color correction across seams",
    )
    parser.add_argument(
        "--skip-local-seam-leveling",
        action="store_true",
        help="Skip the image-space blending along seams",
    )
    parser.add_argument(
        "--keep-unseen-faces-untextured",
        action="store_true",
        help="Do not give faces no view sees the label of their neighbors",
    )
    parser.add_argument(
        "--max-atlas-dim",
        type=int,
        default=DEFAULT_MAX_ATLAS_DIM,
        help=f"Maximum atlas side length in pixels (default: {DEFAULT_MAX_ATLAS_DIM})",
    )
    parser.add_argument(
        "--max-view-selection-passes",
        type=int,
        default=DEFAULT_MAX_VIEW_SELECTION_PASSES,
        help=f"View selection pass budget (default: {DEFAULT_MAX_VIEW_SELECTION_PASSES})",
    )
    parser.add_argument(
        "--leveling-max-iterations",
        type=int,
        default=DEFAULT_LEVELING_MAX_ITERATIONS,
        help=f"Conjugate gradient iteration budget (default: {DEFAULT_LEVELING_MAX_ITERATIONS})",
    )
    parser.add_argument(
        "--leveling-tolerance",
        type=float,
        default=DEFAULT_LEVELING_TOLERANCE,
        help=f"Conjugate gradient relative tolerance (default: {DEFAULT_LEVELING_TOLERANCE})",
    )
    parser.add_argument(
        "--leveling-lambda",
        type=float,
        default=DEFAULT_LEVELING_LAMBDA,
        help=f"Weight of the in-patch smoothness rows (default: {DEFAULT_LEVELING_LAMBDA})",
    )
    parser.add_argument(
        "--num-threads",
        type=int,
        default=None,
        help="Worker threads for the parallel stages (default: CPU count)",
    )
    parser.add_argument(
        "--data-costs",
        type=Path,
        default=None,
        help="Load data costs from a .spt file instead of computing them",
    )
    parser.add_argument(
        "--labeling-file",
        type=Path,
        default=None,
        help="Load the labeling from a .vec file instead of running view selection",
    )
    parser.add_argument(
        "--write-timings",
        action="store_true",
        help="Write per-stage timings to OUT_PREFIX_timings.csv",
    )
    parser.add_argument(
        "--write-intermediate-results",
        action="store_true",
        help="Write data costs (.spt) and labeling (.vec) next to the model",
    )
    parser.add_argument(
        "--write-view-selection-model",
        action="store_true",
        help="Also write a model colored by selected view",
    )
    return parser


def parse_arguments(argv=None) -> Arguments:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = Settings(
            data_term=args.data_term,
            outlier_removal=args.outlier_removal,
            smoothness=args.smoothness,
            geometric_visibility_test=not args.skip_geometric_visibility_test,
            global_seam_leveling=not args.skip_global_seam_leveling,
            local_seam_leveling=not args.skip_local_seam_leveling,
            fill_unseen_faces=not args.keep_unseen_faces_untextured,
            max_atlas_dim=args.max_atlas_dim,
            max_view_selection_passes=args.max_view_selection_passes,
            leveling_max_iterations=args.leveling_max_iterations,
            leveling_tolerance=args.leveling_tolerance,
            leveling_lambda=args.leveling_lambda,
            num_threads=args.num_threads,
        )
    except ValueError as e:
        parser.error(str(e))

    return Arguments(
        in_scene=args.in_scene,
        in_mesh=args.in_mesh,
        out_prefix=args.out_prefix,
        in_images=args.images,
        data_cost_file=args.data_costs,
        labeling_file=args.labeling_file,
        write_timings=args.write_timings,
        write_intermediate_results=args.write_intermediate_results,
        write_view_selection_model=args.write_view_selection_model,
        settings=settings,
    )


def main(argv=None) -> None:
    arguments = parse_arguments(argv)

    def on_stage_started(stage):
        print(f"{STAGE_DISPLAY_NAMES[stage]}:")

    def on_progress(stage, message):
        print(f"  {message}")

    def on_stage_completed(stage, seconds):
        print(f"  done in {seconds:.2f}s")

    try:
        pipeline = TexturingPipeline(
            arguments,
            on_stage_started=on_stage_started,
            on_progress=on_progress,
            on_stage_completed=on_stage_completed,
        )
        obj_path = pipeline.run()
    except TexturingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Textured model written to {obj_path}")


if __name__ == "__main__":
    main()
