import json

import pytest

from clicktrail.config_manager import (
    DEFAULT_CONFIG,
    PROVIDER_HUGGINGFACE,
    PROVIDER_OPENAI,
    ConfigManager,
)


@pytest.fixture
def manager(tmp_path, monkeypatch):
    for name in ("OPENAI_API_KEY", "HF_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    manager = ConfigManager(config_dir=str(tmp_path), load_env=False)
    manager.update_section("capture", {"data_dir": str(tmp_path / "sessions")})
    return manager


def test_defaults_are_written_on_first_use(tmp_path):
    manager = ConfigManager(config_dir=str(tmp_path / "fresh"), load_env=False)
    stored = json.loads(manager.config_file.read_text())
    assert stored["capture"] == DEFAULT_CONFIG["capture"]
    assert stored["analysis"]["chunk_size"] == 10
    assert manager.get_add_click_marker() is True


def test_corrupt_config_is_reset_to_defaults(manager):
    manager.config_file.write_text("{ this is not json")
    assert manager.get_section("analysis") == DEFAULT_CONFIG["analysis"]
    json.loads(manager.config_file.read_text())


def test_provider_defaults(manager, monkeypatch):
    assert manager.get_provider() == PROVIDER_OPENAI
    monkeypatch.setenv("HF_TOKEN", "hf_env")
    assert manager.get_provider() == PROVIDER_HUGGINGFACE
    manager.set_provider(PROVIDER_OPENAI)
    assert manager.get_provider() == PROVIDER_OPENAI


def test_unknown_provider_is_rejected(manager):
    with pytest.raises(ValueError):
        manager.set_provider("anthropic")


def test_stored_key_overrides_environment(manager, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    assert manager.get_api_key(PROVIDER_OPENAI) == "sk-env"
    manager.set_api_key(PROVIDER_OPENAI, "sk-stored")
    assert manager.get_api_key(PROVIDER_OPENAI) == "sk-stored"
    manager.set_api_key(PROVIDER_OPENAI, None)
    assert manager.get_api_key(PROVIDER_OPENAI) == "sk-env"


def test_model_selection(manager):
    assert manager.get_model(PROVIDER_OPENAI) == "gpt-5"
    assert manager.get_model(PROVIDER_HUGGINGFACE) == "Qwen/Qwen3-VL-30B-A3B-Instruct:novita"
    manager.set_model("gpt-5-mini", PROVIDER_OPENAI)
    assert manager.get_model(PROVIDER_OPENAI) == "gpt-5-mini"
    manager.set_model(None, PROVIDER_OPENAI)
    assert manager.get_model(PROVIDER_OPENAI) is None


def test_machine_id_is_generated_once(tmp_path, manager):
    machine_id = manager.get_machine_id()
    assert machine_id == machine_id.upper()
    assert len(machine_id) == 36
    assert ConfigManager(config_dir=str(tmp_path), load_env=False).get_machine_id() == machine_id


def test_settings_mask_the_api_key(manager):
    manager.set_api_key(PROVIDER_OPENAI, "sk-proj-abcdefghijklmnop")
    settings = manager.get_settings()
    assert settings["api_key_configured"] is True
    assert settings["api_key_preview"] == "sk-pro...mnop"
    assert "abcdefghij" not in json.dumps(settings)
