"""Tests for atlas packing, model building and OBJ export."""

import numpy as np
import pytest
from PIL import Image

from texrecon.core.atlas import ATLAS_PADDING, RectangularBin, TextureAtlas, generate_texture_atlases
from texrecon.core.errors import InputError
from texrecon.core.model import build_model, save_model
from texrecon.core.patches import TexturePatch, generate_texture_patches
from texrecon.core.seam_leveling import apply_zero_adjustments
from texrecon.core.settings import Settings


def _patch(face, width, height, value=0.5):
    texcoords = np.array([[[1.0, 1.0], [width - 2.0, 1.0], [1.0, height - 2.0]]])
    image = np.full((height, width, 3), value, dtype=np.float32)
    return TexturePatch(0, [face], texcoords, image)


def _overlaps(a, b):
    _, ax, ay, aw, ah = a
    _, bx, by, bw, bh = b
    return ax < bx + bw and bx < ax + aw and ay < by + bh and by < ay + ah


def test_bin_rejects_oversized_requests():
    packer = RectangularBin(16, 16)
    assert packer.insert(17, 4) is None
    assert packer.insert(16, 16) == (0, 0)
    assert packer.insert(1, 1) is None


def test_bin_placements_do_not_overlap():
    packer = RectangularBin(32, 32)
    rects = []
    for w, h in [(10, 12), (8, 8), (20, 5), (6, 14), (9, 9), (5, 5)]:
        position = packer.insert(w, h)
        assert position is not None
        rects.append((0, position[0], position[1], w, h))
    for i in range(len(rects)):
        _, x, y, w, h = rects[i]
        assert x + w <= 32 and y + h <= 32
        for j in range(i + 1, len(rects)):
            assert not _overlaps(rects[i], rects[j])


def test_every_patch_placed_exactly_once():
    rng = np.random.default_rng(11)
    sizes = rng.integers(5, 40, size=(25, 2))
    patches = [_patch(i, int(w), int(h)) for i, (w, h) in enumerate(sizes)]

    atlases = generate_texture_atlases(patches, Settings(max_atlas_dim=64))
    assert len(atlases) > 1

    placed = [p[0] for atlas in atlases for p in atlas.placements]
    assert sorted(placed) == list(range(len(patches)))

    for atlas in atlases:
        assert atlas.size <= 64
        for i, a in enumerate(atlas.placements):
            _, x, y, w, h = a
            assert x + w <= atlas.size and y + h <= atlas.size
            padded = (a[0], x, y, w + ATLAS_PADDING, h + ATLAS_PADDING)
            for b in atlas.placements[i + 1:]:
                assert not _overlaps(padded, b)


def test_atlas_size_is_power_of_two():
    atlases = generate_texture_atlases([_patch(0, 30, 20)], Settings())
    assert len(atlases) == 1
    assert atlases[0].size == 32


def test_patch_larger_than_atlas_raises():
    with pytest.raises(InputError, match="does not fit"):
        generate_texture_atlases([_patch(0, 70, 10)], Settings(max_atlas_dim=64))


def test_no_patches_no_atlases():
    assert generate_texture_atlases([], Settings()) == []


def test_atlas_texcoords_map_to_pixel_centers():
    atlas = TextureAtlas(32)
    patch = _patch(5, 10, 10, value=1.0)
    assert atlas.insert(patch, 0)
    atlas.finalize()

    assert atlas.faces.tolist() == [5]
    _, x, y, _, _ = atlas.placements[0]
    uv = atlas.texcoords[0, 0]
    np.testing.assert_allclose(uv, [(x + 1 + 0.5) / 32, 1 - (y + 1 + 0.5) / 32])
    assert atlas.image.dtype == np.uint8
    # Empty pixels are dilated from the patch.
    assert atlas.image.min() == 255


def test_model_groups_and_untextured_faces(strip_scene, settings, tmp_path):
    mesh, vertex_infos, graph, views = strip_scene
    graph.set_labels([0, -1])
    patches, _ = generate_texture_patches(graph, mesh, vertex_infos, views, settings)
    apply_zero_adjustments(patches, settings)
    atlases = generate_texture_atlases(patches, settings)

    model = build_model(mesh, atlases)
    assert [g.name for g in model.groups] == ["material0000"]
    assert model.groups[0].faces.tolist() == [0]
    assert model.untextured_faces.tolist() == [1]
    assert model.texcoords.shape == (3, 2)
    assert np.all((model.texcoords > 0) & (model.texcoords < 1))

    obj_path = save_model(model, tmp_path / "strip")
    assert obj_path == tmp_path / "strip.obj"
    obj = obj_path.read_text().splitlines()
    assert obj[1] == "mtllib strip.mtl"
    assert sum(line.startswith("v ") for line in obj) == 4
    assert sum(line.startswith("vt ") for line in obj) == 3
    assert "usemtl material0000" in obj
    assert "usemtl untextured" in obj
    textured = [line.split()[1:] for line in obj if line.startswith("f ") and "//" not in line]
    assert len(textured) == 1
    assert [corner.split("/")[0] for corner in textured[0]] == ["1", "2", "3"]
    assert sorted(corner.split("/")[1] for corner in textured[0]) == ["1", "2", "3"]
    assert "f 1//1 3//3 4//4" in obj

    mtl = (tmp_path / "strip.mtl").read_text()
    assert "map_Kd strip_material0000_map_Kd.png" in mtl
    with Image.open(tmp_path / "strip_material0000_map_Kd.png") as img:
        assert img.size == (atlases[0].size, atlases[0].size)
        red = np.asarray(img)[..., 0]
        assert red.max() == round(0.8 * 255)
