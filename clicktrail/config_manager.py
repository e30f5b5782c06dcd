#!/usr/bin/env python3
"""
Configuration Manager for ClickTrail

Handles loading and saving capture and analysis settings from a local JSON
file. API keys fall back to environment variables (and a ``.env`` file) when
none are stored in the config.
"""

import json
import logging
import os
import uuid
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROVIDER_OPENAI = "openai"
PROVIDER_HUGGINGFACE = "huggingface"

# Environment variable consulted for each provider when no key is stored
PROVIDER_ENV_KEYS = {
    PROVIDER_OPENAI: "OPENAI_API_KEY",
    PROVIDER_HUGGINGFACE: "HF_TOKEN",
}

AVAILABLE_MODELS: Dict[str, List[str]] = {
    PROVIDER_OPENAI: ["gpt-5"],
    PROVIDER_HUGGINGFACE: ["Qwen/Qwen3-VL-30B-A3B-Instruct:novita"],
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "llm": {
        "provider": None,
        "models": {},
    },
    "api_keys": {},
    "capture": {
        "data_dir": "~/.local/share/clicktrail/sessions",
        "add_click_marker": True,
        "stability_interval_ms": 100,
        "stability_timeout_ms": 1000,
        "stability_window": 3,
    },
    "analysis": {
        "chunk_size": 10,
        "send_all_screenshots": False,
        "max_image_edge": 1920,
        "jpeg_quality": 70,
        "request_timeout": 120.0,
    },
}


class ConfigManager:
    """Manages ClickTrail configuration and the per-device machine id."""

    def __init__(self, config_dir: Optional[str] = None, load_env: bool = True):
        """Initialize the configuration manager.

        Args:
            config_dir: Directory to store config files. Defaults to ~/.config/clicktrail/
            load_env: Load a ``.env`` file into the environment for key fallback.
        """
        if config_dir is None:
            config_dir = os.path.expanduser("~/.config/clicktrail/")

        self.config_dir = Path(config_dir).expanduser()
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_file = self.config_dir / "clicktrail_config.json"
        self.machine_id_file = self.config_dir / "machine_id"

        if load_env:
            load_dotenv(override=False)

        self._ensure_default_config()

    def _ensure_default_config(self):
        """Ensure default configuration exists."""
        if not self.config_file.exists():
            config = deepcopy(DEFAULT_CONFIG)
            config["created_at"] = datetime.now().isoformat()
            self._save_config(config)

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file, filling any section missing on disk."""
        try:
            with open(self.config_file, "r") as f:
                stored = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            logger.warning(f"Config file {self.config_file} unreadable, restoring defaults")
            self.config_file.unlink(missing_ok=True)
            self._ensure_default_config()
            with open(self.config_file, "r") as f:
                stored = json.load(f)

        config = deepcopy(DEFAULT_CONFIG)
        for section, value in stored.items():
            if isinstance(value, dict) and isinstance(config.get(section), dict):
                config[section].update(value)
            else:
                config[section] = value
        return config

    def _save_config(self, config: Dict[str, Any]) -> None:
        """Save configuration to file."""
        config["updated_at"] = datetime.now().isoformat()
        with open(self.config_file, "w") as f:
            json.dump(config, f, indent=2)

    def get_section(self, section: str) -> Dict[str, Any]:
        return dict(self._load_config().get(section, {}))

    def update_section(self, section: str, values: Dict[str, Any]) -> None:
        config = self._load_config()
        config.setdefault(section, {}).update(values)
        self._save_config(config)

    # ─────────────────────────────── credentials
    def get_api_key(self, provider: str) -> Optional[str]:
        """Get the effective API key for a provider.

        A stored key overrides the environment variable for that provider.
        """
        config = self._load_config()
        stored = config.get("api_keys", {}).get(provider)
        if stored:
            return stored
        env_name = PROVIDER_ENV_KEYS.get(provider)
        return os.getenv(env_name) if env_name else None

    def set_api_key(self, provider: str, value: Optional[str]) -> None:
        config = self._load_config()
        keys = config.setdefault("api_keys", {})
        if value:
            keys[provider] = value
        else:
            keys.pop(provider, None)
        self._save_config(config)

    # ─────────────────────────────── provider / model
    def get_provider(self) -> str:
        """Return the configured provider.

        Without an explicit choice, HF_TOKEN in the environment selects the
        HuggingFace router, otherwise OpenAI.
        """
        provider = self._load_config()["llm"].get("provider")
        if provider in AVAILABLE_MODELS:
            return provider
        if os.getenv(PROVIDER_ENV_KEYS[PROVIDER_HUGGINGFACE]):
            return PROVIDER_HUGGINGFACE
        return PROVIDER_OPENAI

    def set_provider(self, provider: str) -> None:
        if provider not in AVAILABLE_MODELS:
            raise ValueError(f"Unknown provider: {provider}")
        self.update_section("llm", {"provider": provider})

    def get_model(self, provider: Optional[str] = None) -> Optional[str]:
        provider = provider or self.get_provider()
        models = self._load_config()["llm"].get("models", {})
        if provider in models:
            return models[provider]
        available = AVAILABLE_MODELS.get(provider, [])
        return available[0] if available else None

    def set_model(self, model: Optional[str], provider: Optional[str] = None) -> None:
        provider = provider or self.get_provider()
        config = self._load_config()
        models = config["llm"].setdefault("models", {})
        # An explicit None records "no model selected"
        models[provider] = model
        self._save_config(config)

    # ─────────────────────────────── capture / analysis
    def get_data_dir(self) -> Path:
        path = Path(self._load_config()["capture"]["data_dir"]).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_add_click_marker(self) -> bool:
        return bool(self._load_config()["capture"]["add_click_marker"])

    def set_add_click_marker(self, enabled: bool) -> None:
        self.update_section("capture", {"add_click_marker": bool(enabled)})

    def get_machine_id(self) -> str:
        """Return the stable id of this device, generating it on first use."""
        if self.machine_id_file.exists():
            machine_id = self.machine_id_file.read_text().strip()
            if machine_id:
                return machine_id
        machine_id = str(uuid.uuid4()).upper()
        self.machine_id_file.write_text(machine_id)
        logger.info(f"Generated machine id {machine_id}")
        return machine_id

    def get_settings(self) -> Dict[str, Any]:
        """Settings summary safe to show in a UI (keys are masked)."""
        provider = self.get_provider()
        key = self.get_api_key(provider)
        return {
            "provider": provider,
            "model": self.get_model(provider),
            "available_models": AVAILABLE_MODELS.get(provider, []),
            "api_key_configured": bool(key),
            "api_key_preview": (key[:6] + "..." + key[-4:]) if key and len(key) > 12 else None,
            "add_click_marker": self.get_add_click_marker(),
            "send_all_screenshots": bool(self.get_section("analysis")["send_all_screenshots"]),
            "data_dir": str(self.get_data_dir()),
        }


_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager
