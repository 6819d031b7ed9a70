import os
import pytest

from codeloop.config import AgentConfig, load_config
from codeloop.errors import PathNotAllowed
from codeloop.safety import Safety

# ---------------------------------------------------------------------------
# Path policy
# ---------------------------------------------------------------------------

def test_relative_paths_inside_root_are_allowed(config):
    safety = Safety(config)
    assert safety.allowed("lib/x.rb") is True
    assert safety.allowed("./lib/x.rb") is True
    assert safety.allowed("README") is True
    assert safety.allowed("a/../b.txt") is True

def test_escapes_and_absolute_paths_are_rejected(config):
    safety = Safety(config)
    for path in ["/etc/passwd", "../secret", "..", "~/.ssh/id_rsa", "C:/Windows/win.ini", "a/../../x", "\\share\\x"]:
        assert safety.allowed(path) is False, path

def test_empty_paths_are_rejected(config):
    safety = Safety(config)
    assert safety.allowed("") is False
    assert safety.allowed(None) is False
    assert safety.allowed("./") is False

def test_default_deny_globs(config):
    safety = Safety(config)
    assert safety.allowed(".git/config") is False
    assert safety.allowed("node_modules/pkg/index.js") is False
    assert safety.allowed("tmp/cache.bin") is False
    assert safety.allowed("log/dev.log") is False

def test_allow_globs_restrict_paths(tmp_path):
    safety = Safety(AgentConfig(repo_path=tmp_path, allow_globs=["src/**", "tests/**"]))
    assert safety.allowed("src/app.py") is True
    assert safety.allowed("tests/test_app.py") is True
    assert safety.allowed("setup.cfg") is False

def test_sandbox_root_inside_system_directory_fails_fast():
    for root in ("/etc", "/usr/src/app", "/var/tmp/work"):
        with pytest.raises(ValueError, match="system directory"):
            Safety(AgentConfig(repo_path=root))

def test_guard_returns_absolute_path(config):
    safety = Safety(config)
    full = safety.guard("./lib/x.rb")
    assert full == os.path.join(safety.root, "lib", "x.rb")

def test_guard_raises_for_rejected_path(config):
    safety = Safety(config)
    with pytest.raises(PathNotAllowed, match="not allowed"):
        safety.guard("../outside.txt")

# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------

def test_load_config_reads_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("CODELOOP_COMMAND_ALLOWLIST", "pytest, ruff check")
    monkeypatch.setenv("CODELOOP_DRY_RUN", "yes")
    monkeypatch.setenv("CODELOOP_MAX_CYCLES", "5")
    config = load_config(tmp_path)
    assert config.command_allowlist == ["pytest", "ruff check"]
    assert config.dry_run is True
    assert config.max_cycles == 5
    assert config.repo_path == tmp_path

def test_load_config_overrides_win(tmp_path, monkeypatch):
    monkeypatch.setenv("CODELOOP_MAX_CYCLES", "5")
    config = load_config(tmp_path, max_cycles=1)
    assert config.max_cycles == 1

def test_load_config_api_key_fallback(tmp_path, monkeypatch):
    monkeypatch.delenv("CODELOOP_API_KEY", raising=False)
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    assert load_config(tmp_path).api_key == "sk-test"

def test_model_for_role(config):
    config = config.model_copy(update={"reviewer_model": "openai/gpt-4o-mini"})
    assert config.model_for("reviewer") == "openai/gpt-4o-mini"
    assert config.model_for("planner") == "anthropic/claude-3.5-haiku"
