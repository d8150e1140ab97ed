"""Tests for project initialisation and configuration layering."""

from __future__ import annotations

from pathlib import Path

import pytest

from sagacity.config import (
    API_KEY_ENV,
    CONFIG_FILE,
    SAGACITY_DIR,
    apply_overrides,
    build_config,
    find_project_root,
    init_project,
    load_config,
    save_config,
    set_config_value,
)
from sagacity.errors import ConfigError
from sagacity.models import DEFAULT_EXTENSIONS, DEFAULT_MODEL, MODEL_LIMITS, SagacityConfig


class TestInitProject:
    def test_creates_directory_and_config(self, tmp_path):
        sagacity_dir = init_project(tmp_path)
        assert sagacity_dir == tmp_path.resolve() / SAGACITY_DIR
        assert (sagacity_dir / CONFIG_FILE).is_file()
        assert load_config(sagacity_dir).model == DEFAULT_MODEL

    def test_refuses_existing_directory(self, tmp_path):
        init_project(tmp_path)
        with pytest.raises(FileExistsError):
            init_project(tmp_path)

    def test_refuses_non_directory(self, tmp_path):
        target = tmp_path / "file.txt"
        target.write_text("x", encoding="utf-8")
        with pytest.raises(ValueError):
            init_project(target)

    def test_find_project_root_walks_up(self, tmp_path):
        init_project(tmp_path)
        nested = tmp_path / "src" / "deep"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path.resolve()

    def test_find_project_root_missing(self, tmp_path):
        assert find_project_root(tmp_path) is None


class TestLoad:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path)
        assert cfg.extensions == DEFAULT_EXTENSIONS
        assert cfg.top_k == 5

    def test_reads_values(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text(
            'model = "claude-3-haiku-20240307"\nconcurrency = 8\nextensions = ["rs", ".GO"]\n',
            encoding="utf-8",
        )
        cfg = load_config(tmp_path)
        assert cfg.model == "claude-3-haiku-20240307"
        assert cfg.concurrency == 8
        assert cfg.extensions == [".rs", ".go"]

    def test_malformed_toml(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text("model = ", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_out_of_range_temperature(self):
        with pytest.raises(ConfigError, match="temperature"):
            build_config({"temperature": 1.5})

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="colour"):
            build_config({"colour": "blue"})

    def test_empty_model_is_rejected(self):
        with pytest.raises(ConfigError):
            build_config({"model": "  "})

    def test_empty_extensions_are_rejected(self):
        with pytest.raises(ConfigError):
            build_config({"extensions": []})


class TestOverrides:
    def test_env_key_and_flags(self):
        cfg = apply_overrides(
            SagacityConfig(),
            {"model": "claude-3-opus-20240229", "top_k": None},
            environ={API_KEY_ENV: " sk-test "},
        )
        assert cfg.api_key == "sk-test"
        assert cfg.model == "claude-3-opus-20240229"
        assert cfg.top_k == 5

    def test_flag_beats_file(self, tmp_path):
        (tmp_path / CONFIG_FILE).write_text("concurrency = 2\n", encoding="utf-8")
        cfg = apply_overrides(load_config(tmp_path), {"concurrency": 6}, environ={})
        assert cfg.concurrency == 6

    def test_invalid_override_is_config_error(self):
        with pytest.raises(ConfigError):
            apply_overrides(SagacityConfig(), {"concurrency": 0}, environ={})


class TestSetValue:
    def test_numbers_are_parsed(self):
        cfg = set_config_value(SagacityConfig(), "temperature", "0.2")
        assert cfg.temperature == 0.2

    def test_bare_strings_are_accepted(self):
        cfg = set_config_value(SagacityConfig(), "model", "claude-3-haiku-20240307")
        assert cfg.model == "claude-3-haiku-20240307"

    def test_extensions_are_comma_separated(self):
        cfg = set_config_value(SagacityConfig(), "extensions", "rs, py,")
        assert cfg.extensions == [".rs", ".py"]

    def test_api_key_cannot_be_set(self):
        with pytest.raises(ConfigError):
            set_config_value(SagacityConfig(), "api_key", "secret")


def test_save_never_writes_api_key(tmp_path: Path) -> None:
    cfg = SagacityConfig(api_key="sk-secret", tokens_per_minute=1234, log_level="debug")
    save_config(tmp_path, cfg)
    text = (tmp_path / CONFIG_FILE).read_text(encoding="utf-8")
    assert "sk-secret" not in text

    loaded = load_config(tmp_path)
    assert loaded.api_key == ""
    assert loaded.tokens_per_minute == 1234
    assert loaded.log_level == "DEBUG"


@pytest.mark.parametrize("family", sorted(MODEL_LIMITS))
def test_rate_limits_follow_model_family(family: str) -> None:
    cfg = SagacityConfig(model=f"claude-3-{family}-20240229")
    assert cfg.rate_limits() == MODEL_LIMITS[family]


def test_explicit_rate_limits_win() -> None:
    cfg = SagacityConfig(model="claude-3-opus-20240229", requests_per_minute=7)
    assert cfg.rate_limits() == (7, 40_000, 2_500_000)
