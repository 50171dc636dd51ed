"""
Output path bookkeeping for one texturing run.

Every output of a run shares the user-supplied prefix: with the prefix
out/statue the run writes

    out/statue.conf                      run arguments and settings
    out/statue.obj / .mtl / _material*   the textured model
    out/statue_data_costs.spt            data costs (intermediate results)
    out/statue_labeling.vec              labeling (intermediate results)
    out/statue_view_selection.obj ...    view selection debug model
    out/statue_timings.csv               per-stage timings

The destination directory must already exist; nothing here creates it.
"""

from dataclasses import dataclass
from pathlib import Path

from texrecon.core.errors import InputError


@dataclass
class OutputPaths:
    """Typed container for all output paths of a run."""
    prefix: Path                 # Model prefix (prefix.obj, prefix.mtl, ...)
    conf: Path                   # Argument/settings dump
    data_costs: Path             # .spt data cost table
    labeling: Path               # .vec labeling
    view_selection_prefix: Path  # Debug model prefix
    timings: Path                # Stage timings CSV


def _sibling(prefix: Path, suffix: str) -> Path:
    return prefix.with_name(prefix.name + suffix)


def resolve_output_paths(out_prefix) -> OutputPaths:
    """
    Derive every output path from the output prefix.

    Raises:
        InputError: If the prefix names a directory or its parent directory
                    does not exist.
    """
    prefix = Path(out_prefix)
    if prefix.name in ("", ".", "..") or prefix.is_dir():
        raise InputError(f"Output prefix {out_prefix} must name a file prefix, not a directory")
    if not prefix.parent.is_dir():
        raise InputError(f"Destination directory {prefix.parent} does not exist")

    return OutputPaths(
        prefix=prefix,
        conf=_sibling(prefix, ".conf"),
        data_costs=_sibling(prefix, "_data_costs.spt"),
        labeling=_sibling(prefix, "_labeling.vec"),
        view_selection_prefix=_sibling(prefix, "_view_selection"),
        timings=_sibling(prefix, "_timings.csv"),
    )
