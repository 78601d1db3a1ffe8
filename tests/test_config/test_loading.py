from pathlib import Path

import chatpilot.config as config_module
from chatpilot.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  provider: ollama\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  provider: ollama\n"
            "  model: qwen3:32b\n"
            "tool_servers:\n"
            "  - id: files\n"
            "    command: files-server\n"
            "    auto_approve: true\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen3:32b"
    assert len(cfg.tool_servers) == 1
    assert cfg.tool_servers[0].id == "files"
    assert cfg.tool_servers[0].result_convention == "lenient"


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "query:\n"
            "  top_k: 8\n"
            "  preferred_language: de\n"
            "agent:\n"
            "  cleanup_delay_seconds: 5\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.query.top_k == 8
    assert cfg.query.preferred_language == "de"
    assert cfg.agent.cleanup_delay_seconds == 5


def test_defaults_match_documented_behaviour(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.query.top_k == 5
    assert cfg.query.preferred_language == "en"
    assert cfg.agent.cleanup_delay_seconds == 30
    assert cfg.agent.history_window == 10


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CHATPILOT_MODEL__MODEL", "llama3.2")
    monkeypatch.setenv("CHATPILOT_LOGGING__LEVEL", "DEBUG")

    cfg = Config()

    assert cfg.model.model == "llama3.2"
    assert cfg.logging.level == "DEBUG"


def test_approval_policy_and_server_lookup_skip_disabled_servers():
    cfg = Config(
        tool_servers=[
            {"id": "search", "name": "Web Search", "auto_approve": True},
            {"id": "shell", "auto_approve": False},
            {"id": "old", "auto_approve": True, "enabled": False},
        ]
    )

    policy = cfg.approval_policy()

    assert policy.is_auto_approved("search") is True
    assert policy.is_auto_approved("shell") is False
    assert policy.is_auto_approved("old") is False
    assert policy.is_auto_approved(None) is False
    assert cfg.get_tool_server("Web Search").id == "search"
    assert cfg.get_tool_server("old") is None


def test_save_round_trips_through_yaml(tmp_path: Path):
    path = tmp_path / "out" / "config.yaml"
    cfg = Config(prompts={"ask": "Hi {user.username}", "rules": [{"content": "Be brief", "modes": ["ask"]}]})

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.prompts.ask == "Hi {user.username}"
    assert loaded.prompts.rules[0].content == "Be brief"
    assert loaded.prompts.rules[0].modes == ["ask"]
