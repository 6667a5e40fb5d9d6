import pytest

from forest_da.core.config import load_project_config, merge_configs, read_yaml_file
from forest_da.core.errors import ConfigurationError


def test_load_project_config(project_dir):
    cfg = load_project_config(project_dir)
    assert cfg.site_id == "TEST"
    assert cfg.ensemble_size == 20
    assert cfg.random_seed == 7
    assert cfg.fitted_names == ("alpha", "Rbasal")
    assert cfg.fitted["Rbasal"].sd == pytest.approx(0.00005)
    assert cfg.model.sigma_wood == pytest.approx(0.5)
    assert cfg.model.Q10 == pytest.approx(2.1)  # default kept
    assert cfg.initial_conditions["wood_carbon"].sd == pytest.approx(3.0)
    assert cfg.likelihood.nee == pytest.approx(0.01)
    assert cfg.resampling.algorithm == "systematic"
    assert cfg.look_back == 5 and cfg.horizon == 3
    assert cfg.driver_assignment == "cycle"
    assert cfg.publish.variables == ("nee", "lai")


def test_overrides_replace_single_keys_of_a_block(project_dir):
    cfg = load_project_config(project_dir, {"cycle": {"horizon": 10}, "data_assimilation": {"random_seed": 3}})
    assert cfg.horizon == 10
    assert cfg.look_back == 5
    assert cfg.random_seed == 3
    assert cfg.ensemble_size == 20


def test_merge_configs_precedence():
    merged = merge_configs({"a": {"x": 1, "y": 2}, "b": 1}, None, {"a": {"y": 3}, "b": None})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


def test_defaults_without_any_block(small_config):
    cfg = small_config()
    assert cfg.ensemble_size == 100
    assert cfg.fitted_names == ("alpha", "Rbasal")
    assert cfg.fitted["alpha"].sd == pytest.approx(0.005)
    assert cfg.look_back == 30 and cfg.horizon == 30
    assert not cfg.rejuvenation.enabled


@pytest.mark.parametrize(
    "blocks",
    [
        {"model": {"parameters": {"litterfall_length": 0}}},
        {"model": {"parameters": {"beta": 1.0}}},
        {"model": {"parameters": {"sigma_leaf": -0.1}}},
        {"model": {"initial_conditions": {"needles": 1.0}}},
        {"data_assimilation": {"fitted_parameters": {"alpha": {"initial": 0.02}}}},
        {"data_assimilation": {"fitted_parameters": {"gamma": {"initial": 1.0, "sd": 0.1}}}},
        {"data_assimilation": {"ensemble_size": 0}},
        {"data_assimilation": {"likelihood": {"obs_sd": {"wood": 0}}}},
        {"data_assimilation": {"likelihood": {"obs_sd": {"snow": 1.0}}}},
        {"data_assimilation": {"resampling": {"algorithm": "residual"}}},
        {"data_assimilation": {"rejuvenation": {"sigma": {"Q10": 0.1}}}},
        {"cycle": {"look_back": 0}},
        {"cycle": {"driver_assignment": "nearest"}},
    ],
)
def test_invalid_configuration_is_rejected(small_config, blocks):
    with pytest.raises(ConfigurationError):
        small_config(**blocks)


def test_missing_project_yaml(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_project_config(tmp_path)


def test_unparsable_yaml(tmp_path):
    path = tmp_path / "project.yml"
    path.write_text("site: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        read_yaml_file(path)
    empty = tmp_path / "empty.yml"
    empty.write_text("", encoding="utf-8")
    assert read_yaml_file(empty) == {}
