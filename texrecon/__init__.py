"""
texrecon — Multi-view texture reconstruction for triangle meshes.

This is the top-level package. Given a triangle mesh and a set of calibrated
photographs, texrecon picks one photograph per face (MRF view selection),
cuts the mesh into texture patches, levels the color seams between patches
and packs everything into texture atlases for OBJ export.

The version string below is the single source of truth for the package
version, referenced by pyproject.toml.
"""

__version__ = "0.1.0"
