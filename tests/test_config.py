"""
Configuration Tests
-------------------
YAML loading, environment overrides and validation errors.
"""

import pytest

from infra.config import ConfigError, ConfigManager, SecretManager, load_config


def _write(tmp_path, text):
    path = tmp_path / "toolsmith.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestLoading:

    def test_defaults_when_file_missing(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), environ={})
        assert config.provider.name == "openai"
        assert config.orchestrator.max_steps == 10
        assert config.execution.default_timeout_seconds == 5.0

    def test_yaml_values(self, tmp_path):
        path = _write(tmp_path, """
provider:
  name: Anthropic
  model: claude-test
orchestrator:
  max_steps: 4
security:
  allowed_domains: [example.com]
""")
        config = load_config(path, environ={})
        assert config.provider.name == "anthropic"
        assert config.provider.model == "claude-test"
        assert config.orchestrator.max_steps == 4
        assert config.security.allowed_domains == ["example.com"]

    def test_shipped_config_is_valid(self, project_root):
        config = load_config(str(project_root / "config" / "toolsmith.yaml"), environ={})
        assert config.storage.db_path == "toolsmith.db"


class TestEnvironmentOverrides:

    def test_scalar_override(self, tmp_path):
        path = _write(tmp_path, "orchestrator:\n  max_steps: 4\n")
        config = load_config(path, environ={"TOOLSMITH_ORCHESTRATOR_MAX_STEPS": "7"})
        assert config.orchestrator.max_steps == 7

    def test_list_override(self, tmp_path):
        config = load_config(
            str(tmp_path / "absent.yaml"),
            environ={"TOOLSMITH_SECURITY_ALLOWED_DOMAINS": "a.com, b.org"},
        )
        assert config.security.allowed_domains == ["a.com", "b.org"]

    def test_get_dot_notation(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "absent.yaml"), environ={})
        assert manager.get("provider.model") == "gpt-4o-mini"
        assert manager.get("provider.missing", "fallback") == "fallback"


class TestValidation:

    def test_invalid_value(self, tmp_path):
        path = _write(tmp_path, "orchestrator:\n  max_steps: 0\n")
        with pytest.raises(ConfigError, match="orchestrator.max_steps"):
            load_config(path, environ={})

    def test_invalid_env_value(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "absent.yaml"),
                        environ={"TOOLSMITH_EXECUTION_DEFAULT_TIMEOUT_SECONDS": "soon"})

    def test_broken_yaml(self, tmp_path):
        path = _write(tmp_path, "provider: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path, environ={})

    @pytest.mark.parametrize("text", [
        "provider: openai\n",
        "security: [example.com]\n",
    ])
    def test_non_mapping_section(self, tmp_path, text):
        path = _write(tmp_path, text)
        section = text.split(":")[0]
        with pytest.raises(ConfigError, match=f"section '{section}' must be a mapping"):
            load_config(path, environ={})

    def test_empty_section_uses_defaults(self, tmp_path):
        config = load_config(_write(tmp_path, "provider:\n"), environ={})
        assert config.provider.name == "openai"

    def test_non_mapping_root(self, tmp_path):
        path = _write(tmp_path, "- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path, environ={})


class TestSecretManager:

    def test_lookup(self):
        secrets = SecretManager(environ={"OPENAI_API_KEY": "sk-1"})
        assert secrets.get_api_key("openai") == "sk-1"
        assert secrets.get_api_key("anthropic") is None
        assert secrets.list_available() == ["openai"]

    def test_override_variable(self):
        secrets = SecretManager(environ={"MY_KEY": "k"})
        assert secrets.get_api_key("openai", override_env="MY_KEY") == "k"
        assert secrets.env_var_for("openai", "MY_KEY") == "MY_KEY"

    def test_unknown_provider(self):
        assert SecretManager(environ={}).get_api_key("skynet") is None
