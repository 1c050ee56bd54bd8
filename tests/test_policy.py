"""Tests for the security policy enforcers."""

import os

import pytest

from mcp_server.policy import (
    CommandPolicy,
    PathPolicy,
    PolicyCategory,
    SecurityPolicies,
    StatementPolicy,
)
from shared.config import DEFAULT_ALLOWED_COMMANDS, DEFAULT_FORBIDDEN_KEYWORDS, PolicySettings


class TestPathPolicy:
    """Tests for path containment."""

    def test_allows_path_inside_root(self, tmp_path):
        """Test that a file below an allowed root is allowed."""
        policy = PathPolicy([str(tmp_path)])
        target = tmp_path / "notes" / "a.txt"

        decision = policy.evaluate(str(target))

        assert decision.allowed
        assert decision.category == PolicyCategory.PATH
        assert decision.target == os.path.realpath(target)

    def test_allows_root_itself(self, tmp_path):
        """Test that the allowed root itself is allowed."""
        policy = PathPolicy([str(tmp_path)])

        assert policy.evaluate(str(tmp_path)).allowed

    def test_denies_dotdot_escape(self, tmp_path):
        """Test that '..' segments are resolved before comparison."""
        root = tmp_path / "data"
        root.mkdir()
        policy = PathPolicy([str(root)])

        decision = policy.evaluate(str(root / ".." / "secret.txt"))

        assert not decision.allowed
        assert "not in allowed paths" in decision.reason

    def test_denies_sibling_with_common_prefix(self, tmp_path):
        """Test that /data2 is not considered inside /data."""
        root = tmp_path / "data"
        sibling = tmp_path / "data2"
        root.mkdir()
        sibling.mkdir()
        policy = PathPolicy([str(root)])

        assert not policy.evaluate(str(sibling / "file.txt")).allowed

    def test_denies_symlink_escape(self, tmp_path):
        """Test that a symlink pointing outside the root is denied."""
        root = tmp_path / "data"
        outside = tmp_path / "outside"
        root.mkdir()
        outside.mkdir()
        (outside / "secret.txt").write_text("secret")
        os.symlink(outside, root / "link")
        policy = PathPolicy([str(root)])

        assert not policy.evaluate(str(root / "link" / "secret.txt")).allowed

    def test_empty_allowlist_denies_everything(self, tmp_path):
        """Test that no configured paths means no access at all."""
        policy = PathPolicy([])

        decision = policy.evaluate(str(tmp_path))

        assert not decision.allowed
        assert "no allowed paths" in decision.reason

    def test_blank_entries_are_ignored(self):
        """Test that blank allowlist entries do not allow anything."""
        policy = PathPolicy(["", "   "])

        assert policy.allowed_roots == ()
        assert not policy.evaluate("/").allowed

    def test_denial_message_names_category(self, tmp_path):
        """Test that the denial message names the violated policy."""
        policy = PathPolicy([str(tmp_path / "data")])

        decision = policy.evaluate("/etc/passwd")

        assert "path containment" in decision.message
        assert not decision


class TestCommandPolicy:
    """Tests for the command whitelist."""

    def setup_method(self):
        """Set up test fixtures."""
        self.policy = CommandPolicy(DEFAULT_ALLOWED_COMMANDS)

    def test_exact_match_allowed(self):
        """Test that a whitelisted command is allowed."""
        decision = self.policy.evaluate("uptime")

        assert decision.allowed
        assert decision.target == "uptime"

    def test_whitespace_is_trimmed(self):
        """Test that surrounding whitespace is ignored."""
        decision = self.policy.evaluate("  hostname  ")

        assert decision.allowed
        assert decision.target == "hostname"

    def test_arguments_after_space_allowed(self):
        """Test that arguments separated by a space are allowed."""
        assert self.policy.evaluate("df -h").allowed

    def test_multi_word_entry(self):
        """Test that multi-word whitelist entries match exactly."""
        assert self.policy.evaluate("cat /proc/cpuinfo").allowed
        assert not self.policy.evaluate("cat /etc/shadow").allowed

    def test_prefix_without_space_denied(self):
        """Test that 'dfx' does not match the 'df' entry."""
        decision = self.policy.evaluate("dfx")

        assert not decision.allowed
        assert decision.category == PolicyCategory.COMMAND

    def test_unlisted_command_denied(self):
        """Test that an unlisted command is denied."""
        decision = self.policy.evaluate("rm -rf /")

        assert not decision.allowed
        assert "rm -rf /" in decision.reason

    def test_empty_command_denied(self):
        """Test that an empty command is denied."""
        assert not self.policy.evaluate("   ").allowed

    def test_empty_whitelist_denies_everything(self):
        """Test that an empty whitelist allows nothing."""
        assert not CommandPolicy([]).evaluate("uptime").allowed


class TestStatementPolicy:
    """Tests for the read-only statement filter."""

    def setup_method(self):
        """Set up test fixtures."""
        self.policy = StatementPolicy(DEFAULT_FORBIDDEN_KEYWORDS)

    def test_select_allowed(self):
        """Test that a plain SELECT is allowed."""
        decision = self.policy.evaluate("  SELECT * FROM users ")

        assert decision.allowed
        assert decision.target == "SELECT * FROM users"

    def test_non_select_denied(self):
        """Test that statements not starting with SELECT are denied."""
        decision = self.policy.evaluate("PRAGMA table_info(users)")

        assert not decision.allowed
        assert "only SELECT" in decision.reason

    @pytest.mark.parametrize("statement,keyword", [
        ("SELECT 1; DROP TABLE users", "drop"),
        ("select * from t; delete from t", "delete"),
        ("SELECT * FROM t WHERE x IN (SELECT 1); ATTACH 'x' AS y", "attach"),
    ])
    def test_forbidden_keyword_denied(self, statement, keyword):
        """Test that forbidden keywords anywhere in the statement are denied."""
        decision = self.policy.evaluate(statement)

        assert not decision.allowed
        assert keyword in decision.reason

    def test_keyword_inside_identifier_denied(self):
        """Test that the filter is conservative about identifiers."""
        assert not self.policy.evaluate("SELECT last_updated FROM t").allowed
        assert not self.policy.evaluate("SELECT created_at FROM t").allowed

    def test_case_insensitive(self):
        """Test that keyword matching ignores case."""
        assert not self.policy.evaluate("SeLeCt 1; DrOp TABLE t").allowed


class TestSecurityPolicies:
    """Tests for building the enforcers from settings."""

    def test_from_settings(self, tmp_path):
        """Test that each enforcer receives its configuration."""
        settings = PolicySettings(
            allowed_paths=[str(tmp_path)],
            allowed_commands=["echo"],
            forbidden_statement_keywords=["drop"],
        )

        policies = SecurityPolicies.from_settings(settings)

        assert policies.paths.evaluate(str(tmp_path / "x")).allowed
        assert policies.commands.evaluate("echo hi").allowed
        assert not policies.commands.evaluate("uptime").allowed
        assert policies.statements.evaluate("SELECT created_at FROM t").allowed

    def test_comma_separated_env(self, monkeypatch, tmp_path):
        """Test that list settings accept comma-separated environment values."""
        monkeypatch.setenv("POLICY_ALLOWED_PATHS", f"{tmp_path}/a, {tmp_path}/b")
        monkeypatch.setenv("POLICY_ALLOWED_COMMANDS", "echo,date")

        settings = PolicySettings()

        assert settings.allowed_paths == [f"{tmp_path}/a", f"{tmp_path}/b"]
        assert settings.allowed_commands == ["echo", "date"]


class TestSettingsFiles:
    """Tests for YAML configuration and log hygiene."""

    def test_from_yaml(self, tmp_path):
        """Test loading nested settings from a YAML file."""
        from shared.config import Settings

        path = tmp_path / "settings.yaml"
        path.write_text(
            "log_level: DEBUG\n"
            "server:\n"
            "  token: from-file\n"
            "  session_idle_minutes: 5\n"
            "policy:\n"
            "  allowed_commands: [echo]\n"
            "vault:\n"
            f"  path: {tmp_path}\n"
        )

        settings = Settings.from_yaml(path)

        assert settings.log_level == "DEBUG"
        assert settings.server.token == "from-file"
        assert settings.server.session_idle_minutes == 5
        assert settings.policy.allowed_commands == ["echo"]
        assert settings.vault.path == str(tmp_path)

    def test_missing_yaml_uses_defaults(self, tmp_path):
        """Test that an absent file means defaults."""
        from shared.config import load_yaml_config

        assert load_yaml_config(tmp_path / "absent.yaml") == {}

    def test_non_mapping_yaml_rejected(self, tmp_path):
        """Test that a YAML list is a configuration error."""
        from shared.config import load_yaml_config
        from shared.errors import ConfigurationError

        path = tmp_path / "settings.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            load_yaml_config(path)

    def test_drop_secrets(self):
        """Test that credential fields are masked in log events."""
        from shared.logging import drop_secrets

        event = drop_secrets(None, "info", {"event": "x", "Authorization": "Bearer t", "path": "/mcp"})

        assert event == {"event": "x", "Authorization": "[REDACTED]", "path": "/mcp"}

    def test_env_fills_keys_missing_from_yaml(self, monkeypatch, tmp_path):
        """Test that a YAML section does not hide environment values."""
        from shared.config import Settings

        monkeypatch.setenv("MCP_TOKEN", "from-env")
        path = tmp_path / "settings.yaml"
        path.write_text("server:\n  port: 9000\n")

        settings = Settings.from_yaml(path)

        assert settings.server.port == 9000
        assert settings.server.token == "from-env"
