"""Tests for [tool.runledger] configuration."""

from datetime import timedelta

import pytest

from runledger.config import LedgerConfig, find_pyproject, load_config
from runledger.exceptions import ValidationError
from runledger.loop import LoopPolicy


def _write_pyproject(directory, body):
    path = directory / "pyproject.toml"
    path.write_text(body)
    return path


class TestLoadConfig:
    def test_no_pyproject(self, tmp_path, monkeypatch):
        monkeypatch.setattr("runledger.config.find_pyproject", lambda start=None: None)
        assert load_config(tmp_path) == LedgerConfig()

    def test_no_section(self, tmp_path):
        _write_pyproject(tmp_path, '[project]\nname = "demo"\n')
        assert load_config(tmp_path) == LedgerConfig()

    def test_reads_section(self, tmp_path):
        _write_pyproject(
            tmp_path,
            "[tool.runledger]\n"
            'db = "data/agent-runs.db"\n'
            "timeout_seconds = 120\n"
            "max_iterations = 25\n"
            'in_flight_policy = "fail"\n'
            "unknown_key = true\n",
        )
        config = load_config(tmp_path)
        assert config.db == "data/agent-runs.db"
        assert config.timeout == timedelta(seconds=120)
        assert config.max_iterations == 25
        assert config.in_flight_policy == "fail"
        assert config.max_iterations_policy == "complete"

    def test_found_from_subdirectory(self, tmp_path):
        expected = _write_pyproject(tmp_path, '[tool.runledger]\ndb = "x.db"\n')
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        assert find_pyproject(nested) == expected.resolve()
        assert load_config(nested).db == "x.db"

    def test_invalid_value(self, tmp_path):
        _write_pyproject(tmp_path, '[tool.runledger]\nin_flight_policy = "ignore"\n')
        with pytest.raises(ValidationError, match="in_flight_policy"):
            load_config(tmp_path)


class TestLedgerConfig:
    def test_defaults(self):
        config = LedgerConfig()
        assert config.db == "./runs.db"
        assert config.timeout is None
        assert config.lease_ttl == timedelta(seconds=60)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_iterations": 0},
            {"max_iterations": True},
            {"lease_ttl_seconds": 0},
            {"timeout_seconds": -1},
            {"max_iterations_policy": "retry"},
        ],
    )
    def test_rejects(self, kwargs):
        with pytest.raises(ValidationError):
            LedgerConfig(**kwargs)

    def test_loop_policy_from_config(self):
        policy = LoopPolicy.from_config(LedgerConfig(max_iterations=3, in_flight_policy="fail", max_iterations_policy="fail"))
        assert policy == LoopPolicy(max_iterations=3, in_flight="fail", on_max_iterations="fail")
