import pytest

from config import HarmonizeConfig
from errors import ConfigError, UnsupportedSelectionMethod


def make_config(**overrides):
    kwargs = dict(
        input_file="scene/sfm_data.json",
        matches_dir="scene/matches",
        out_dir="out",
        selection_method="full-frame",
        reference_id=0,
    )
    kwargs.update(overrides)
    return HarmonizeConfig(**kwargs)


def test_defaults_and_output_folder():
    cfg = make_config(selection_method="matched-points")
    assert cfg.describer_methods == ["SIFT"]
    assert cfg.geometric_model == "f"
    assert cfg.min_match_support == 120
    assert cfg.harmonized_dir.as_posix() == "out/matched-points_quantile-gain-offset"


def test_unsupported_selection_method_is_a_config_error():
    with pytest.raises(UnsupportedSelectionMethod):
        make_config(selection_method="vld")
    with pytest.raises(ConfigError):
        make_config(selection_method="")


def test_missing_reference_is_rejected():
    with pytest.raises(ConfigError, match="reference"):
        make_config(reference_id=None)


@pytest.mark.parametrize(
    "overrides",
    [
        {"geometric_model": "x"},
        {"describer_methods": [" ", ""]},
        {"num_workers": 0},
        {"min_match_support": 0},
        {"circle_radius": 0},
    ],
)
def test_out_of_range_options_are_rejected(overrides):
    with pytest.raises(ConfigError):
        make_config(**overrides)


def test_describers_are_normalized():
    cfg = make_config(describer_methods=["sift", " akaze "])
    assert cfg.describer_methods == ["SIFT", "AKAZE"]


def test_reference_must_be_a_known_view():
    cfg = make_config(reference_id=5)
    cfg.check_reference([1, 5, 9])
    with pytest.raises(ConfigError):
        cfg.check_reference([1, 9])
