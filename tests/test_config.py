"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from realm.__main__ import cli
from realm.config import Config, LoopConfig, ModelConfig, RoleConfig, load_config
from realm.exceptions import ConfigError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "realm.toml"
    path.write_text(text, encoding="utf-8")
    return path


class TestDefaults:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config(env={})

        assert config.model.model == "gemini-2.5-pro"
        assert config.model.summary_model == "gemini-2.5-flash"
        assert config.model.api_key == ""
        assert config.loop.max_iterations == 25
        assert config.loop.max_consecutive_failures == 2
        assert config.retry.max_retries == 3
        assert config.retry.base_multiplier == 5.0
        assert config.compression.enabled is True
        assert config.compression.threshold == 0.5
        assert config.compression.preserve_fraction == 0.3
        assert config.compression.token_limit == 1_000_000

    def test_finds_realm_toml_in_cwd(self, tmp_path, monkeypatch):
        _write(tmp_path, "[loop]\nmax_iterations = 7\n")
        monkeypatch.chdir(tmp_path)
        assert load_config(env={}).loop.max_iterations == 7


class TestLoadConfig:
    def test_full_file(self, tmp_path):
        path = _write(tmp_path, """
[model]
model = "gemini-2.5-flash"
api_key = "file-key-1234"
temperature = 0.2

[loop]
max_iterations = 40
max_consecutive_failures = 3
inter_call_delay_seconds = 0

[retry]
max_retries = 5
base_multiplier = 2.0

[compression]
threshold = 0.6
preserve_fraction = 0.25
token_limit = 200000

[roles.renderer]
max_iterations = 60
model = "gemini-2.5-pro"

[logging]
level = "debug"
event_log_path = "/tmp/realm-logs"
""")
        config = load_config(path, env={})

        assert config.model.model == "gemini-2.5-flash"
        assert config.model.api_key == "file-key-1234"
        assert config.model.temperature == 0.2
        assert config.loop.max_iterations == 40
        assert config.loop.inter_call_delay_seconds == 0.0
        assert config.retry.max_retries == 5
        assert config.compression.threshold == 0.6
        assert config.compression.token_limit == 200_000
        assert config.roles["renderer"].max_iterations == 60
        assert config.logging.level == "DEBUG"
        assert config.log_path == Path("/tmp/realm-logs")

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.toml", env={})

    def test_invalid_toml(self, tmp_path):
        path = _write(tmp_path, "[loop\nmax_iterations = ")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path, env={})

    @pytest.mark.parametrize("body", [
        "[compression]\nthreshold = 0\n",
        "[compression]\nthreshold = 1.5\n",
        "[compression]\npreserve_fraction = 1.0\n",
        "[compression]\npreserve_fraction = \"half\"\n",
    ])
    def test_fraction_validation(self, tmp_path, body):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, body), env={})

    def test_threshold_of_one_allowed(self, tmp_path):
        config = load_config(_write(tmp_path, "[compression]\nthreshold = 1.0\n"), env={})
        assert config.compression.threshold == 1.0

    def test_non_positive_iterations(self, tmp_path):
        with pytest.raises(ConfigError, match="positive"):
            load_config(_write(tmp_path, "[loop]\nmax_iterations = 0\n"), env={})

    def test_unknown_role(self, tmp_path):
        with pytest.raises(ConfigError, match="Unknown role 'poet'"):
            load_config(_write(tmp_path, "[roles.poet]\nmax_iterations = 3\n"), env={})

    @pytest.mark.parametrize("body, name", [
        ('[loop]\ninter_call_delay_seconds = "fast"\n', "loop.inter_call_delay_seconds"),
        ('[retry]\nmax_retries = "many"\n', "retry.max_retries"),
        ('[retry]\nbase_multiplier = "x"\n', "retry.base_multiplier"),
        ('[retry]\nmin_wait = [1]\n', "retry.min_wait"),
        ('[roles.analyst]\nmax_iterations = "lots"\n', "roles.analyst.max_iterations"),
        ('[roles.renderer]\nmax_consecutive_failures = "?"\n', "roles.renderer.max_consecutive_failures"),
        ('[model]\ntemperature = "warm"\n', "model.temperature"),
        ('[model]\ntimeout_seconds = "long"\n', "model.timeout_seconds"),
    ])
    def test_non_numeric_values_raise_config_error(self, tmp_path, body, name):
        with pytest.raises(ConfigError, match=name):
            load_config(_write(tmp_path, body), env={})

    def test_non_numeric_value_reported_by_cli(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        path = _write(tmp_path, '[loop]\ninter_call_delay_seconds = "fast"\n')
        result = CliRunner().invoke(cli, ["--config", str(path), "config"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output
        assert "loop.inter_call_delay_seconds must be a number" in result.output

    def test_negative_retries_clamped(self, tmp_path):
        config = load_config(_write(tmp_path, "[retry]\nmax_retries = -2\n"), env={})
        assert config.retry.max_retries == 0


class TestEnvironmentOverrides:
    def test_env_wins_over_file(self, tmp_path):
        path = _write(tmp_path, '[model]\napi_key = "file"\nmodel = "from-file"\n')
        config = load_config(path, env={
            "GEMINI_API_KEY": "env-key",
            "REALM_MODEL": "from-env",
            "REALM_SUMMARY_MODEL": "summary-env",
            "REALM_MAX_ITERATIONS": "12",
        })
        assert config.model.api_key == "env-key"
        assert config.model.model == "from-env"
        assert config.model.summary_model == "summary-env"
        assert config.loop.max_iterations == 12

    def test_bad_env_iterations(self, tmp_path):
        with pytest.raises(ConfigError, match="integer"):
            load_config(_write(tmp_path, ""), env={"REALM_MAX_ITERATIONS": "many"})


class TestRoleOverrides:
    def test_loop_for_applies_overrides(self):
        config = Config(
            loop=LoopConfig(max_iterations=25, max_consecutive_failures=2),
            roles={"renderer": RoleConfig(max_iterations=60)},
        )
        assert config.loop_for("renderer").max_iterations == 60
        assert config.loop_for("renderer").max_consecutive_failures == 2
        assert config.loop_for("analyst").max_iterations == 25

    def test_model_for(self):
        config = Config(roles={"analyst": RoleConfig(model="gemini-x")})
        assert config.model_for("analyst") == "gemini-x"
        assert config.model_for("validator") == "gemini-2.5-pro"

    def test_repr_redacts_api_key(self):
        model = ModelConfig(api_key="secret-abcd")
        assert "secret" not in repr(model)
        assert "***abcd" in repr(model)
