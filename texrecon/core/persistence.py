"""
Intermediate result files.

Two artifacts can be written after the expensive stages and fed back in on a
later run to skip them:

    <prefix>_data_costs.spt — the sparse data cost table.
        Layout (little endian):
            4 bytes   magic b"SPT" + format version (1)
            3 × u64   num_faces, num_views, nnz
            nnz ×     (face u32, view u32, cost f32)
        Costs are stored as float32, exactly as held in memory, so a reloaded
        table is bit-for-bit identical to the one that was saved.

    <prefix>_labeling.vec — the view label of every face.
        Layout: u64 count, then count × i64 labels (face id = position,
        INVALID_LABEL = -1).

Reusing either file is a caller decision: nothing here retries or falls back.
Any read/write failure raises PersistenceError carrying the underlying cause.
"""

import csv
from pathlib import Path

import numpy as np

from texrecon.core.data_costs import DataCosts
from texrecon.core.errors import PersistenceError, ValidationError

SPT_MAGIC = b"SPT\x01"
SPT_HEADER = np.dtype("<u8")
SPT_RECORD = np.dtype([("face", "<u4"), ("view", "<u4"), ("cost", "<f4")])
VEC_COUNT = np.dtype("<u8")
VEC_LABEL = np.dtype("<i8")


def save_data_costs(data_costs: DataCosts, path) -> None:
    faces, views, costs = data_costs.entries()
    records = np.empty(faces.size, dtype=SPT_RECORD)
    records["face"] = faces
    records["view"] = views
    records["cost"] = costs

    header = np.array(
        [data_costs.num_faces, data_costs.num_views, faces.size], dtype=SPT_HEADER
    )
    try:
        with open(path, "wb") as f:
            f.write(SPT_MAGIC)
            f.write(header.tobytes())
            f.write(records.tobytes())
    except OSError as e:
        raise PersistenceError(f"Could not write data cost file {path}: {e}")


def load_data_costs(path) -> DataCosts:
    """
    Read a data cost table written by save_data_costs.

    Raises:
        PersistenceError: If the file is missing, truncated, or not a data
                          cost file.
    """
    try:
        raw = Path(path).read_bytes()
    except OSError as e:
        raise PersistenceError(f"Could not read data cost file {path}: {e}")

    header_size = len(SPT_MAGIC) + 3 * SPT_HEADER.itemsize
    if len(raw) < header_size or raw[:len(SPT_MAGIC)] != SPT_MAGIC:
        raise PersistenceError(f"{path} is not a data cost file")

    num_faces, num_views, nnz = (
        int(v) for v in np.frombuffer(raw, dtype=SPT_HEADER, count=3, offset=len(SPT_MAGIC))
    )
    expected = header_size + nnz * SPT_RECORD.itemsize
    if len(raw) != expected:
        raise PersistenceError(
            f"Data cost file {path} is truncated or corrupt "
            f"(expected {expected} bytes, found {len(raw)})"
        )

    records = np.frombuffer(raw, dtype=SPT_RECORD, count=nnz, offset=header_size)
    try:
        return DataCosts(num_faces, num_views, records["face"], records["view"], records["cost"])
    except ValidationError as e:
        raise PersistenceError(f"Data cost file {path} is corrupt: {e}")


def save_labeling(labels, path) -> None:
    labels = np.asarray(labels, dtype=VEC_LABEL)
    try:
        with open(path, "wb") as f:
            f.write(np.array([labels.size], dtype=VEC_COUNT).tobytes())
            f.write(labels.tobytes())
    except OSError as e:
        raise PersistenceError(f"Could not write labeling file {path}: {e}")


def load_labeling(path) -> np.ndarray:
    """
    Read a labeling written by save_labeling.

    Only the file format is checked here; whether the labeling fits the
    mesh and scene is checked by view_selection.apply_labeling.
    """
    try:
        raw = Path(path).read_bytes()
    except OSError as e:
        raise PersistenceError(f"Could not read labeling file {path}: {e}")

    if len(raw) < VEC_COUNT.itemsize:
        raise PersistenceError(f"{path} is not a labeling file")
    count = int(np.frombuffer(raw, dtype=VEC_COUNT, count=1)[0])
    expected = VEC_COUNT.itemsize + count * VEC_LABEL.itemsize
    if len(raw) != expected:
        raise PersistenceError(
            f"Labeling file {path} is truncated or corrupt "
            f"(expected {expected} bytes, found {len(raw)})"
        )
    return np.frombuffer(raw, dtype=VEC_LABEL, count=count, offset=VEC_COUNT.itemsize).copy()


def write_string_to_file(path, text: str) -> None:
    try:
        Path(path).write_text(text)
    except OSError as e:
        raise PersistenceError(f"Could not write {path}: {e}")


def write_timings(path, timings) -> None:
    """Write (stage, seconds) rows as CSV."""
    try:
        with open(path, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(["stage", "seconds"])
            for stage, seconds in timings:
                writer.writerow([stage, f"{seconds:.6f}"])
    except OSError as e:
        raise PersistenceError(f"Could not write timings file {path}: {e}")
