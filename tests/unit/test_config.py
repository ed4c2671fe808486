"""Unit tests for config loading, environment overrides, and target construction.

Covers:
  - Missing config file → Config.defaults(), no exception
  - YAML validation: missing/unsupported version, parse errors, non-mapping
    → SystemExit(1)
  - Environment overrides always win over the file
  - Model list parsing (comma separated, blanks dropped, empty keeps defaults)
  - Invalid LOG_LEVEL / LOG_FORMAT fall back to info / text
  - validate_required(): project and location are mandatory
  - build_proxy_target(): derived Vertex URL or explicit upstream.base_url
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from vertex_proxy.config import (
    SUPPORTED_VERSIONS,
    Config,
    build_proxy_target,
    format_api_host,
    load_config,
    parse_model_ids,
    validate_required,
)
from vertex_proxy.constants import DEFAULT_MODEL_IDS


def _write_config(tmp_path: Path, content: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


# ─── Missing config file ──────────────────────────────────────────────────────


class TestMissingConfigFile:

    def test_nonexistent_path_returns_defaults(self, tmp_path: Path) -> None:
        config = load_config(str(tmp_path / "nope.yaml"))
        assert config.path is None
        assert config.proxy.host == "0.0.0.0"
        assert config.proxy.port == 8080
        assert config.upstream.timeout == 300.0
        assert config.upstream.connect_timeout == 10.0
        assert config.logging.level == "info"
        assert config.logging.format == "text"
        assert config.models.available == list(DEFAULT_MODEL_IDS)
        assert config.vertex.project is None

    def test_env_overrides_apply_without_file(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VERTEXAI_PROJECT", "env-project")
        monkeypatch.setenv("VERTEXAI_LOCATION", "europe-west4")
        config = load_config()
        assert config.vertex.project == "env-project"
        assert config.vertex.location == "europe-west4"

    def test_working_directory_config_found(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".vertex-proxy").mkdir()
        (tmp_path / ".vertex-proxy" / "config.yaml").write_text(
            "version: 1\nvertex:\n  project: cwd-project\n"
        )
        monkeypatch.setattr(
            "vertex_proxy.config.DEFAULT_CONFIG_PATHS", [".vertex-proxy/config.yaml"]
        )
        config = load_config()
        assert config.vertex.project == "cwd-project"


# ─── YAML file ────────────────────────────────────────────────────────────────


class TestConfigFile:

    def test_full_file(self, tmp_path: Path) -> None:
        path = _write_config(
            tmp_path,
            """
            version: 1
            vertex:
              project: my-project
              location: us-central1
              api_host_format: "{location}-aiplatform.example.com"
            upstream:
              timeout: 120
              connect_timeout: 5
            proxy:
              host: 127.0.0.1
              port: 9090
            logging:
              level: DEBUG
              format: json
            models:
              available:
                - google/gemini-2.0-flash
            """,
        )
        config = load_config(path)

        assert config.path == path
        assert config.vertex.project == "my-project"
        assert config.vertex.location == "us-central1"
        assert config.vertex.api_host_format == "{location}-aiplatform.example.com"
        assert config.upstream.timeout == 120.0
        assert config.upstream.connect_timeout == 5.0
        assert config.proxy.host == "127.0.0.1"
        assert config.proxy.port == 9090
        assert config.logging.level == "debug"
        assert config.logging.format == "json"
        assert config.models.available == ["google/gemini-2.0-flash"]

    def test_version_only_gives_defaults(self, tmp_path: Path) -> None:
        config = load_config(_write_config(tmp_path, "version: 1\n"))
        assert config.version == 1
        assert config.proxy.port == 8080

    def test_env_var_config_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write_config(tmp_path, "version: 1\nvertex:\n  location: asia-east1\n")
        monkeypatch.setenv("VERTEX_PROXY_CONFIG", path)
        assert load_config().vertex.location == "asia-east1"

    def test_missing_version_exits(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        path = _write_config(tmp_path, "vertex:\n  project: p\n")
        with pytest.raises(SystemExit) as excinfo:
            load_config(path)
        assert excinfo.value.code == 1
        assert "version" in capsys.readouterr().err

    def test_empty_file_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write_config(tmp_path, ""))

    def test_unsupported_version_exits(
        self, tmp_path: Path, capsys: pytest.CaptureFixture
    ) -> None:
        with pytest.raises(SystemExit) as excinfo:
            load_config(_write_config(tmp_path, "version: 2\n"))
        assert excinfo.value.code == 1
        assert "Unsupported config version" in capsys.readouterr().err

    def test_invalid_yaml_exits(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit):
            load_config(_write_config(tmp_path, "version: 1\nvertex: [unclosed\n"))
        assert "Failed to parse" in capsys.readouterr().err

    def test_non_mapping_exits(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit):
            load_config(_write_config(tmp_path, "- just\n- a list\n"))

    def test_supported_versions(self) -> None:
        assert SUPPORTED_VERSIONS == frozenset({1})


# ─── Environment overrides ────────────────────────────────────────────────────


class TestEnvOverrides:

    def test_env_wins_over_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write_config(
            tmp_path,
            """
            version: 1
            vertex:
              project: file-project
              location: us-central1
            proxy:
              port: 9090
            """,
        )
        monkeypatch.setenv("VERTEXAI_PROJECT", "env-project")
        monkeypatch.setenv("PORT", "7000")
        monkeypatch.setenv("HOST", "127.0.0.1")

        config = load_config(path)
        assert config.vertex.project == "env-project"
        assert config.vertex.location == "us-central1"
        assert config.proxy.port == 7000
        assert config.proxy.host == "127.0.0.1"

    def test_api_host_format_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VERTEXAI_API_HOST_FORMAT", "%s-aiplatform.mtls.googleapis.com")
        config = load_config()
        assert config.vertex.api_host_format == "%s-aiplatform.mtls.googleapis.com"

    def test_invalid_port_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PORT", "eighty")
        with pytest.raises(SystemExit):
            load_config()

    def test_available_models_parsed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VERTEXAI_AVAILABLE_MODELS", " google/a , ,google/b,")
        assert load_config().models.available == ["google/a", "google/b"]

    def test_blank_available_models_keeps_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VERTEXAI_AVAILABLE_MODELS", " , ,")
        assert load_config().models.available == list(DEFAULT_MODEL_IDS)

    @pytest.mark.parametrize("level", ["debug", "INFO", "warn", "Warning", "error"])
    def test_valid_log_levels(self, level: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", level)
        assert load_config().logging.level == level.lower()

    def test_invalid_log_level_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "verbose")
        assert load_config().logging.level == "info"

    def test_invalid_log_format_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_FORMAT", "xml")
        assert load_config().logging.format == "text"

    def test_json_log_format(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_FORMAT", "JSON")
        assert load_config().logging.format == "json"


class TestParseModelIds:

    def test_single(self) -> None:
        assert parse_model_ids("google/gemini-2.5-pro") == ["google/gemini-2.5-pro"]

    def test_empty(self) -> None:
        assert parse_model_ids("") == []


# ─── Required settings and target ─────────────────────────────────────────────


def _config(project: str | None = "my-project", location: str | None = "us-central1") -> Config:
    config = Config.defaults()
    config.vertex.project = project
    config.vertex.location = location
    return config


class TestValidateRequired:

    def test_complete_config_passes(self) -> None:
        validate_required(_config())

    @pytest.mark.parametrize(
        "project,location", [(None, "us-central1"), ("p", None), ("", ""), (None, None)]
    )
    def test_missing_values_exit(
        self, project: str | None, location: str | None, capsys: pytest.CaptureFixture
    ) -> None:
        with pytest.raises(SystemExit) as excinfo:
            validate_required(_config(project, location))
        assert excinfo.value.code == 1
        assert "VERTEXAI_LOCATION and VERTEXAI_PROJECT must be set" in capsys.readouterr().err


class TestBuildProxyTarget:

    def test_format_api_host_brace_template(self) -> None:
        assert format_api_host("{location}-aiplatform.googleapis.com", "us-east5") == (
            "us-east5-aiplatform.googleapis.com"
        )

    def test_format_api_host_percent_template(self) -> None:
        assert format_api_host("%s-aiplatform.googleapis.com", "us-east5") == (
            "us-east5-aiplatform.googleapis.com"
        )

    def test_derived_vertex_url(self) -> None:
        target = build_proxy_target(_config())
        assert target.scheme == "https"
        assert target.host == "us-central1-aiplatform.googleapis.com"
        assert target.port is None
        assert target.path == (
            "/v1/projects/my-project/locations/us-central1/endpoints/openapi"
        )

    def test_missing_project_exits(self) -> None:
        with pytest.raises(SystemExit):
            build_proxy_target(_config(project=None))

    def test_base_url_override(self) -> None:
        config = _config(project=None, location=None)
        config.upstream.base_url = "http://127.0.0.1:9999/mock/"
        target = build_proxy_target(config)
        assert target.url == "http://127.0.0.1:9999/mock"

    def test_invalid_base_url_exits(self, capsys: pytest.CaptureFixture) -> None:
        config = _config()
        config.upstream.base_url = "ftp://example.com/files"
        with pytest.raises(SystemExit):
            build_proxy_target(config)
        assert "Invalid upstream URL" in capsys.readouterr().err
