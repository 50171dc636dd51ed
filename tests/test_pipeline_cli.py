"""End-to-end runs of the texturing pipeline and the command line front end."""

import numpy as np
import pytest

from texrecon.__main__ import main, parse_arguments
from texrecon.core.data_costs import calculate_data_costs
from texrecon.core.errors import InputError, TexturingError, ValidationError
from texrecon.core.persistence import (
    load_data_costs,
    load_labeling,
    save_data_costs,
    save_labeling,
)
from texrecon.core.pipeline import STAGE_ORDER, PipelineStage, TexturingPipeline
from texrecon.core.settings import Arguments, Settings
from texrecon.core.workspace import resolve_output_paths


def _arguments(tmp_path, labeling=None, **kwargs):
    settings_kwargs = {
        key: kwargs.pop(key)
        for key in list(kwargs)
        if key in ("global_seam_leveling", "local_seam_leveling")
    }
    return Arguments(
        in_scene=tmp_path / "sparse",
        in_mesh=tmp_path / "mesh.ply",
        out_prefix=tmp_path / "out" / "strip",
        labeling_file=labeling,
        settings=Settings(geometric_visibility_test=False, num_threads=2, **settings_kwargs),
        **kwargs,
    )


@pytest.fixture
def out_dir(tmp_path):
    (tmp_path / "out").mkdir()
    return tmp_path / "out"


@pytest.fixture
def labeling_file(tmp_path):
    path = tmp_path / "labels.vec"
    save_labeling(np.array([0, 1]), path)
    return path


@pytest.mark.parametrize("global_leveling", [True, False])
@pytest.mark.parametrize("local_leveling", [True, False])
def test_run_with_labeling_file(tmp_path, out_dir, labeling_file, strip, strip_views,
                                global_leveling, local_leveling):
    arguments = _arguments(
        tmp_path,
        labeling=labeling_file,
        global_seam_leveling=global_leveling,
        local_seam_leveling=local_leveling,
    )
    pipeline = TexturingPipeline(arguments, mesh=strip, views=strip_views)
    obj_path = pipeline.run()

    assert obj_path == out_dir / "strip.obj"
    assert obj_path.is_file()
    assert (out_dir / "strip.mtl").is_file()
    assert (out_dir / "strip.conf").is_file()
    assert (out_dir / "strip_material0000_map_Kd.png").is_file()
    assert pipeline.graph.labels.tolist() == [0, 1]
    assert pipeline.data_costs is None
    assert len(pipeline.patches) == 2

    if global_leveling:
        assert pipeline.leveling_result is not None
        assert pipeline.leveling_result.discontinuity_after < pipeline.leveling_result.discontinuity_before
    else:
        assert pipeline.leveling_result is None
        for patch in pipeline.patches:
            assert not patch.adjust_values.any()


def test_stage_callbacks_follow_stage_order(tmp_path, out_dir, labeling_file, strip, strip_views):
    started, completed = [], []
    pipeline = TexturingPipeline(
        _arguments(tmp_path, labeling=labeling_file),
        mesh=strip,
        views=strip_views,
        on_stage_started=started.append,
        on_stage_completed=lambda stage, seconds: completed.append(stage),
    )
    pipeline.run()

    assert started == STAGE_ORDER
    assert completed == STAGE_ORDER
    assert [stage for stage, _ in pipeline.timings] == STAGE_ORDER


def test_wrong_labeling_file_stops_before_patches(tmp_path, out_dir, strip, strip_views):
    path = tmp_path / "labels.vec"
    save_labeling(np.array([0, 1, 1]), path)
    pipeline = TexturingPipeline(_arguments(tmp_path, labeling=path), mesh=strip, views=strip_views)

    with pytest.raises(ValidationError):
        pipeline.run()
    assert pipeline.patches is None
    assert not (out_dir / "strip.obj").exists()
    assert list(out_dir.iterdir()) == []


def test_labeling_with_unknown_view_is_rejected(tmp_path, out_dir, strip, strip_views):
    path = tmp_path / "labels.vec"
    save_labeling(np.array([0, 5]), path)
    pipeline = TexturingPipeline(_arguments(tmp_path, labeling=path), mesh=strip, views=strip_views)

    with pytest.raises(ValidationError):
        pipeline.run()


def test_intermediate_results_and_timings(tmp_path, out_dir, strip, strip_views):
    arguments = _arguments(tmp_path, write_intermediate_results=True, write_timings=True)
    pipeline = TexturingPipeline(arguments, mesh=strip, views=strip_views)
    pipeline.run()

    costs = load_data_costs(out_dir / "strip_data_costs.spt")
    assert (costs.num_faces, costs.num_views) == (2, 2)
    assert costs.nnz == 4

    labels = load_labeling(out_dir / "strip_labeling.vec")
    np.testing.assert_array_equal(labels, pipeline.graph.labels)
    assert set(labels.tolist()) <= {0, 1}

    rows = (out_dir / "strip_timings.csv").read_text().splitlines()
    assert rows[0] == "stage,seconds"
    assert [row.split(",")[0] for row in rows[1:]] == STAGE_ORDER


def test_data_cost_file_is_reused(tmp_path, out_dir, strip, strip_views):
    first = TexturingPipeline(
        _arguments(tmp_path, write_intermediate_results=True), mesh=strip, views=strip_views
    )
    first.run()

    arguments = _arguments(tmp_path, data_cost_file=out_dir / "strip_data_costs.spt")
    second = TexturingPipeline(arguments, mesh=strip, views=strip_views)
    second.run()

    assert second.graph.labels.tolist() == first.graph.labels.tolist()


def test_data_cost_file_for_another_mesh(tmp_path, out_dir, settings, cube, cube_views,
                                        strip, strip_views):
    path = tmp_path / "cube_data_costs.spt"
    save_data_costs(calculate_data_costs(cube, cube_views, settings), path)

    arguments = _arguments(tmp_path, data_cost_file=path)
    pipeline = TexturingPipeline(arguments, mesh=strip, views=strip_views)
    with pytest.raises(ValidationError, match="computed for"):
        pipeline.run()


def test_view_selection_model(tmp_path, out_dir, labeling_file, strip, strip_views):
    arguments = _arguments(tmp_path, labeling=labeling_file, write_view_selection_model=True)
    TexturingPipeline(arguments, mesh=strip, views=strip_views).run()

    assert (out_dir / "strip_view_selection.obj").is_file()
    assert (out_dir / "strip_view_selection.mtl").is_file()
    assert (out_dir / "strip_view_selection_material0000_map_Kd.png").is_file()


def test_missing_destination_directory(tmp_path, strip, strip_views):
    with pytest.raises(InputError, match="does not exist"):
        TexturingPipeline(_arguments(tmp_path), mesh=strip, views=strip_views)


def test_unexpected_errors_name_the_stage(tmp_path, out_dir, strip):
    # Reports one view but fails as soon as a stage touches it.
    class BrokenViews:
        def __len__(self):
            return 1

        def __iter__(self):
            raise RuntimeError("camera file unreadable")

        def __getitem__(self, index):
            raise RuntimeError("camera file unreadable")

    pipeline = TexturingPipeline(_arguments(tmp_path), mesh=strip, views=BrokenViews())
    with pytest.raises(TexturingError) as excinfo:
        pipeline.run()
    assert "Calculating Data Costs failed" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def test_parse_arguments_maps_flags(tmp_path):
    arguments = parse_arguments([
        "scene", "mesh.ply", str(tmp_path / "out"),
        "-d", "gmi",
        "-o", "gauss_clamping",
        "-s", "2.5",
        "--skip-geometric-visibility-test",
        "--skip-global-seam-leveling",
        "--keep-unseen-faces-untextured",
        "--max-atlas-dim", "2048",
        "--num-threads", "3",
        "--labeling-file", "labels.vec",
        "--write-timings",
    ])
    settings = arguments.settings

    assert settings.data_term == "gmi"
    assert settings.outlier_removal == "gauss_clamping"
    assert settings.smoothness == 2.5
    assert settings.geometric_visibility_test is False
    assert settings.global_seam_leveling is False
    assert settings.local_seam_leveling is True
    assert settings.fill_unseen_faces is False
    assert settings.max_atlas_dim == 2048
    assert settings.workers == 3
    assert str(arguments.labeling_file) == "labels.vec"
    assert arguments.write_timings is True
    assert arguments.write_intermediate_results is False


def test_parse_arguments_defaults():
    arguments = parse_arguments(["scene", "mesh.ply", "out"])
    assert arguments.settings == Settings()
    assert arguments.in_images is None
    assert arguments.data_cost_file is None


def test_invalid_setting_is_a_usage_error(capsys):
    with pytest.raises(SystemExit) as excinfo:
        parse_arguments(["scene", "mesh.ply", "out", "-s", "-1"])
    assert excinfo.value.code == 2
    assert "Smoothness must be non-negative" in capsys.readouterr().err


def test_cli_reports_errors_on_stderr(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["scene", "mesh.ply", str(tmp_path / "missing" / "out")])
    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert err.startswith("Error: ")
    assert "does not exist" in err


def test_settings_reject_unknown_modes():
    with pytest.raises(ValueError, match="Unknown data term"):
        Settings(data_term="colorful")
    with pytest.raises(ValueError, match="Unknown outlier removal"):
        Settings(outlier_removal="median")
    with pytest.raises(ValueError, match="atlas dimension"):
        Settings(max_atlas_dim=0)


def test_stage_constants_are_plain_strings():
    assert PipelineStage.DATA_COSTS == "data_costs"
    assert len(set(STAGE_ORDER)) == len(STAGE_ORDER)


def test_output_prefix_must_not_be_a_directory(tmp_path, out_dir):
    with pytest.raises(InputError, match="not a directory"):
        resolve_output_paths(out_dir)


def test_output_paths_share_the_prefix(tmp_path, out_dir):
    paths = resolve_output_paths(out_dir / "statue")
    assert paths.conf == out_dir / "statue.conf"
    assert paths.data_costs == out_dir / "statue_data_costs.spt"
    assert paths.labeling == out_dir / "statue_labeling.vec"
    assert paths.view_selection_prefix == out_dir / "statue_view_selection"
    assert paths.timings == out_dir / "statue_timings.csv"


def test_mismatched_data_cost_file_writes_nothing(tmp_path, out_dir, settings, cube, cube_views,
                                                  strip, strip_views):
    path = tmp_path / "cube_data_costs.spt"
    save_data_costs(calculate_data_costs(cube, cube_views, settings), path)

    arguments = _arguments(tmp_path, data_cost_file=path, write_intermediate_results=True)
    with pytest.raises(ValidationError):
        TexturingPipeline(arguments, mesh=strip, views=strip_views).run()
    assert list(out_dir.iterdir()) == []
