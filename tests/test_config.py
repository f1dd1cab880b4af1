"""Tests for loading and validating the configuration file."""

import logging
from pathlib import Path

import pytest

from jellyfin_pr_migration import (
    DEFAULT_TABLE_NAME,
    ConfigurationError,
    load_config,
    normalize_base_url,
    resolve_config_path,
)


@pytest.fixture
def input_path(input_tsv):
    return input_tsv("2024-01-01 00:00:00\tu1\titem1\tMovie\tTest\tDirectPlay\tWeb\tChrome\t120")


def test_loads_minimal_config_with_defaults(write_config, input_path):
    config = load_config(write_config({"input_tsv_file_path": str(input_path)}))

    assert config.input_tsv_file_path == input_path
    assert config.output_tsv_file_path is None
    assert config.output_tsv_mode == "overwrite"
    assert config.sqlite_db_path is None
    assert config.sqlite_table_name == DEFAULT_TABLE_NAME
    assert config.http.max_retries == 1
    assert config.runtime.log_level == logging.INFO
    assert config.runtime.console_mode == "raw"


def test_base_urls_are_normalized(write_config, input_path):
    config = load_config(write_config({"input_tsv_file_path": str(input_path)}))

    assert config.instance_old.base_url == "http://old.local:8096"
    assert config.instance_new.base_url == "https://new.local"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("localhost:8096", "http://localhost:8096"),
        ("http://jf.example//", "http://jf.example"),
        (" https://jf.example/jellyfin/ ", "https://jf.example/jellyfin"),
    ],
)
def test_normalize_base_url(raw, expected):
    assert normalize_base_url(raw) == expected


def test_missing_required_settings_are_listed(write_config):
    path = write_config(
        {
            "instance_old": {"base_url": "", "api_token": "YOUR_OLD_INSTANCE_API_KEY"},
            "instance_new": {"base_url": "new.local"},
        }
    )
    with pytest.raises(ConfigurationError) as excinfo:
        load_config(path)

    message = str(excinfo.value)
    assert "input_tsv_file_path" in message
    assert "instance_old.base_url" in message
    assert "instance_old.api_token" in message
    assert "instance_new.api_token" in message
    assert "instance_new.base_url" not in message


def test_input_file_must_exist(write_config, tmp_path):
    path = write_config({"input_tsv_file_path": str(tmp_path / "missing.tsv")})
    with pytest.raises(ConfigurationError, match="does not exist"):
        load_config(path)


@pytest.mark.parametrize("mode", ["overwrite", "append"])
def test_output_tsv_must_differ_from_input(write_config, input_path, monkeypatch, mode):
    monkeypatch.chdir(input_path.parent)
    path = write_config(
        {
            "input_tsv_file_path": str(input_path),
            "output_tsv_file_path": f"./sub/../{input_path.name}",
            "output_tsv_mode": mode,
        }
    )
    with pytest.raises(ConfigurationError, match="same file"):
        load_config(path)
    assert input_path.read_text(encoding="utf-8").startswith("2024-01-01")


def test_sqlite_db_must_exist(write_config, input_path, tmp_path):
    path = write_config(
        {
            "input_tsv_file_path": str(input_path),
            "sqlite_db_path": str(tmp_path / "nope.db"),
        }
    )
    with pytest.raises(ConfigurationError, match="sqlite_db_path"):
        load_config(path)


@pytest.mark.parametrize("table_name", ["Playback Activity", "x; DROP TABLE y", "1abc"])
def test_table_name_must_be_identifier(write_config, input_path, playback_db, table_name):
    path = write_config(
        {
            "input_tsv_file_path": str(input_path),
            "sqlite_db_path": str(playback_db),
            "sqlite_table_name": table_name,
        }
    )
    with pytest.raises(ConfigurationError, match="sqlite_table_name"):
        load_config(path)


def test_invalid_enums_and_numbers_are_rejected(write_config, input_path):
    base = {"input_tsv_file_path": str(input_path)}
    with pytest.raises(ConfigurationError, match="output_tsv_mode"):
        load_config(write_config({**base, "output_tsv_mode": "merge"}))
    with pytest.raises(ConfigurationError, match="http.timeout_seconds"):
        load_config(write_config({**base, "http": {"timeout_seconds": "soon"}}))
    with pytest.raises(ConfigurationError, match="log_level"):
        load_config(write_config({**base, "runtime": {"log_level": "LOUD"}}))


def test_malformed_json_is_a_configuration_error(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid"):
        load_config(path)


def test_toml_config_is_supported(tmp_path, input_path):
    path = tmp_path / "config.toml"
    path.write_text(
        f"""
input_tsv_file_path = "{input_path.as_posix()}"
output_tsv_file_path = "{(tmp_path / 'out.tsv').as_posix()}"

[instance_old]
base_url = "old.local"
api_token = "old-token"

[instance_new]
base_url = "new.local/"
api_token = "new-token"
""",
        encoding="utf-8",
    )
    config = load_config(path)

    assert config.output_tsv_file_path == tmp_path / "out.tsv"
    assert config.instance_new.base_url == "http://new.local"


def test_describe_redacts_tokens(write_config, input_path):
    config = load_config(write_config({"input_tsv_file_path": str(input_path)}))
    described = config.describe()

    assert described["instance_old"]["api_token"] == "***"
    assert "old-token" not in repr(described)


def test_default_config_falls_back_to_example(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.example.json").write_text("{}", encoding="utf-8")

    assert resolve_config_path("config.json") == (tmp_path / "config.example.json").resolve()


def test_explicit_missing_config_is_an_error(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.example.json").write_text("{}", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="not found"):
        resolve_config_path(str(tmp_path / "custom.json"))


def test_existing_config_path_is_resolved(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{}", encoding="utf-8")
    assert resolve_config_path(str(path)) == Path(path).resolve()
