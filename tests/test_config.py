"""
Tests for configuration loading.
"""

import pytest

from genstack.utils.config import Config


class TestConfigDefaults:

    def test_section_defaults(self):
        config = Config()
        assert config.commands.timeout_seconds == 120.0
        assert config.commands.max_output_size == 50_000
        assert config.circuit_breaker.threshold == 5
        assert config.circuit_breaker.reset_seconds == 60.0
        assert config.conflict_retry.max_attempts == 3
        assert config.readiness.max_attempts == 10
        assert config.containers.name_prefix == "gen-"
        assert config.generation.default_template == "vite-fullstack-base"
        assert config.generation.fix_max_tool_calls == 5
        assert config.generation.timeout_seconds == 1800.0
        assert config.generation.stuck_after_seconds == 300.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_CONTAINERS", "3")
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test,http://b.test")
        monkeypatch.setenv("LLM_MODEL", "local-model")
        monkeypatch.setenv("GENERATION_TIMEOUT_SECONDS", "90")

        config = Config()
        assert config.containers.max_containers == 3
        assert config.server.cors_origins == ["http://a.test", "http://b.test"]
        assert config.llm.model == "local-model"
        assert config.generation.timeout_seconds == 90.0


class TestConfigFile:

    def test_load_from_file_merges_sections(self, tmp_path):
        path = tmp_path / ".genstack.yaml"
        path.write_text(
            "commands:\n"
            "  timeout_seconds: 30\n"
            "circuit_breaker:\n"
            "  threshold: 2\n"
            "unknown_section:\n"
            "  foo: bar\n"
            "containers:\n"
            "  not_a_field: 1\n"
        )

        config = Config.load_from_file(path)
        assert config.commands.timeout_seconds == 30
        assert config.circuit_breaker.threshold == 2
        assert config.commands.max_output_size == 50_000
        assert not hasattr(config.containers, "not_a_field")

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.load_from_file(tmp_path / "missing.yaml")

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Config.load_from_file(path).server.port == Config().server.port

    def test_load_default_prefers_current_directory(self, tmp_path, monkeypatch):
        (tmp_path / ".genstack.yaml").write_text("server:\n  port: 9999\n")
        monkeypatch.chdir(tmp_path)
        assert Config.load_default().server.port == 9999

    def test_to_yaml_omits_api_key(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "sk-secret")
        dumped = Config().to_yaml()
        assert "sk-secret" not in dumped
        assert "api_key" not in dumped
        assert "circuit_breaker:" in dumped
