import logging

import pytest

from coretransport.config_utils import apply_overrides_dict, build_config, load_config, parse_override_value
from coretransport.errors import ConfigurationError
from coretransport.schema import NewtonConfig, SolverConfig


def test_defaults():
    cfg = SolverConfig()
    assert cfg.newton.theta == 1.0
    assert cfg.newton.line_search_multipliers == [1.0, 0.5, 0.25, 0.1, 0.01, 0.001]
    assert cfg.newton.feasibility == "reject"
    assert cfg.linear.condition_threshold == 1.0e6
    assert cfg.conservation.interval == 1000
    assert cfg.conservation.max_correction == 0.2


@pytest.mark.parametrize(
    "payload",
    [
        {"newton": {"theta": 1.5}},
        {"newton": {"line_search_multipliers": [0.5, 1.0]}},
        {"newton": {"line_search_multipliers": []}},
        {"newton": {"feasibility": "clip"}},
        {"timestep": {"min_dt": 1.0, "max_dt": 0.1}},
        {"conservation": {"laws": ["momentum"]}},
        {"plasma": {"ip": 15.0}},
    ],
)
def test_invalid_configuration_raises(payload):
    with pytest.raises(ConfigurationError):
        build_config(payload)


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError):
        build_config({"linear": {"sor_omega": 2.5}})


def test_overrides_are_applied_with_parsed_values():
    cfg = build_config(
        {"newton": {"max_iterations": 10}},
        ["newton.max_iterations=5", "newton.jacobian=analytic_linear", "conservation.enabled=false"],
    )
    assert cfg.newton.max_iterations == 5
    assert cfg.newton.jacobian == "analytic_linear"
    assert cfg.conservation.enabled is False


@pytest.mark.parametrize(
    "raw, expected",
    [("true", True), ("None", None), ("3", 3), ("2.5e-3", 2.5e-3), ("[1, 0.5]", [1, 0.5]), ("'x'", "x")],
)
def test_parse_override_value(raw, expected):
    assert parse_override_value(raw) == expected


def test_malformed_override_raises():
    with pytest.raises(ConfigurationError):
        apply_overrides_dict({}, ["newton.theta"])
    with pytest.raises(ConfigurationError):
        apply_overrides_dict({"newton": 3}, ["newton.theta=0.5"])


def test_load_config_from_yaml(tmp_path, caplog):
    path = tmp_path / "run.yml"
    path.write_text(
        "newton:\n  theta: 0.5\n  tol: 1.0e-8\ntimestep:\n  initial_dt: 2.0e-4\n",
        encoding="utf-8",
    )
    with caplog.at_level(logging.INFO, logger="coretransport.config_utils"):
        cfg = load_config(path, ["timestep.max_dt=0.05"])
    assert cfg.newton.theta == 0.5
    assert cfg.newton.tol == 1.0e-8
    assert cfg.timestep.initial_dt == 2.0e-4
    assert cfg.timestep.max_dt == 0.05
    assert "load_config" in caplog.text


def test_empty_and_invalid_yaml_roots(tmp_path):
    empty = tmp_path / "empty.yml"
    empty.write_text("", encoding="utf-8")
    assert load_config(empty) == SolverConfig()
    listed = tmp_path / "list.yml"
    listed.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(listed)


def test_newton_config_direct_validation_error_is_value_error():
    with pytest.raises(ValueError):
        NewtonConfig(stall_patience=0)
