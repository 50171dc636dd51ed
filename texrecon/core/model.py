"""
Textured model assembly and OBJ export.

build_model() turns the packed atlases into a renderable model:

    - the mesh vertices and vertex normals, unchanged,
    - one texcoord per distinct atlas UV (deduplicated per atlas),
    - one material per atlas (material0000, material0001, ...) holding the
      faces textured from it,
    - one untextured group with the faces no view could see.

save_model() writes the model as a Wavefront OBJ bundle next to the output
prefix:

    <prefix>.obj                        geometry, texcoords, normals, groups
    <prefix>.mtl                        one material per atlas
    <prefix>_material0000_map_Kd.png    atlas images (Pillow)

Faces are grouped with one usemtl block per atlas. The MTL uses the plain
Ka/Kd/Ks and map_Kd directives.
"""

from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from PIL import Image

from texrecon.core.errors import PersistenceError

UNTEXTURED_MATERIAL = "untextured"


@dataclass
class MaterialGroup:
    """Faces sharing one atlas image."""

    name: str
    faces: np.ndarray          # (n,) face ids
    texcoord_ids: np.ndarray   # (n, 3) indices into Model.texcoords
    image: np.ndarray          # (size, size, 3) uint8

    @property
    def texture_suffix(self) -> str:
        return f"_{self.name}_map_Kd.png"


@dataclass
class Model:
    vertices: np.ndarray
    vertex_normals: np.ndarray
    faces: np.ndarray
    texcoords: np.ndarray
    groups: list[MaterialGroup] = field(default_factory=list)
    untextured_faces: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))


def build_model(mesh, atlases) -> Model:
    texcoords = []
    groups = []
    offset = 0
    textured = np.zeros(mesh.num_faces, dtype=bool)

    for i, atlas in enumerate(atlases):
        uv = atlas.texcoords.reshape(-1, 2)
        unique, inverse = np.unique(uv, axis=0, return_inverse=True)
        groups.append(
            MaterialGroup(
                name=f"material{i:04d}",
                faces=atlas.faces,
                texcoord_ids=inverse.reshape(-1, 3) + offset,
                image=atlas.image,
            )
        )
        texcoords.append(unique)
        offset += len(unique)
        textured[atlas.faces] = True

    return Model(
        vertices=np.asarray(mesh.vertices),
        vertex_normals=np.asarray(mesh.vertex_normals),
        faces=np.asarray(mesh.faces),
        texcoords=np.concatenate(texcoords) if texcoords else np.zeros((0, 2)),
        groups=groups,
        untextured_faces=np.flatnonzero(~textured),
    )


def _format_rows(tag, rows, fmt):
    return "".join(f"{tag} " + " ".join(fmt % v for v in row) + "\n" for row in rows)


def save_model(model: Model, prefix) -> Path:
    """
    Write the model as <prefix>.obj + <prefix>.mtl + one PNG per atlas.

    Returns:
        Path to the OBJ file.

    Raises:
        PersistenceError: If any output file cannot be written.
    """
    prefix = Path(prefix)
    obj_path = prefix.with_name(prefix.name + ".obj")
    mtl_path = prefix.with_name(prefix.name + ".mtl")

    try:
        with open(mtl_path, "w") as f:
            f.write("# Generated by texrecon\n")
            for group in model.groups:
                texture_name = prefix.name + group.texture_suffix
                Image.fromarray(group.image).save(prefix.with_name(texture_name))
                f.write(f"newmtl {group.name}\n")
                f.write("Ka 1.000000 1.000000 1.000000\n")
                f.write("Kd 1.000000 1.000000 1.000000\n")
                f.write("Ks 0.000000 0.000000 0.000000\n")
                f.write("illum 1\n")
                f.write(f"map_Kd {texture_name}\n\n")
            if model.untextured_faces.size:
                f.write(f"newmtl {UNTEXTURED_MATERIAL}\n")
                f.write("Kd 0.500000 0.500000 0.500000\n")
                f.write("illum 1\n")

        with open(obj_path, "w") as f:
            f.write("# Generated by texrecon\n")
            f.write(f"mtllib {mtl_path.name}\n")
            f.write(_format_rows("v", model.vertices, "%.6f"))
            f.write(_format_rows("vt", model.texcoords, "%.6f"))
            f.write(_format_rows("vn", model.vertex_normals, "%.6f"))

            # OBJ indices are 1-based.
            for group in model.groups:
                f.write(f"usemtl {group.name}\n")
                corners = model.faces[group.faces] + 1
                tex = group.texcoord_ids + 1
                for c, t in zip(corners.tolist(), tex.tolist()):
                    f.write(
                        f"f {c[0]}/{t[0]}/{c[0]} {c[1]}/{t[1]}/{c[1]} {c[2]}/{t[2]}/{c[2]}\n"
                    )
            if model.untextured_faces.size:
                f.write(f"usemtl {UNTEXTURED_MATERIAL}\n")
                for c in (model.faces[model.untextured_faces] + 1).tolist():
                    f.write(f"f {c[0]}//{c[0]} {c[1]}//{c[1]} {c[2]}//{c[2]}\n")
    except OSError as e:
        raise PersistenceError(f"Could not write model {obj_path}: {e}")

    return obj_path
