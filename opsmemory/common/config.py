"""
Configuration Management for OpsMemory

Loads configuration from ~/.opsmemory/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("opsmemory.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".opsmemory"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
TEMPLATES_DIR = CONFIG_DIR / "templates"
STORE_PATH = CONFIG_DIR / "store.json"


@dataclass
class LLMConfig:
    """Synthesis / vision collaborator configuration"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.5-flash"
    timeout: float = 60.0

    def model_for(self, provider: str) -> str:
        return {
            "anthropic": self.anthropic_model,
            "openai": self.openai_model,
            "google": self.google_model,
        }.get(provider, "")


@dataclass
class ObserverConfig:
    """Ingestion and synthesis policy"""
    min_interval_changed: float = 5.0
    min_interval_unchanged: float = 30.0
    force_recheck_frames: int = 6
    force_recheck_seconds: float = 60.0
    session_ttl_seconds: float = 600.0
    synthesis_interval: float = 30.0
    synthesis_min_observations: int = 2
    transcript_min_entries: int = 3
    transcript_min_chars: int = 50
    transcript_window: int = 50
    similarity_threshold: float = 0.70
    listener_queue_size: int = 100
    deferred_synthesis: bool = True
    templates_dir: str = str(TEMPLATES_DIR)


@dataclass
class ServerConfig:
    """HTTP / WebSocket server configuration"""
    host: str = "0.0.0.0"
    port: int = 8090


@dataclass
class StoreConfig:
    """Durable document store configuration"""
    path: str = str(STORE_PATH)


@dataclass
class OpsMemoryConfig:
    """Main OpsMemory configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    observer: ObserverConfig = field(default_factory=ObserverConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    defaults = LLMConfig()
    return LLMConfig(
        provider=llm_data.get("provider", defaults.provider),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", defaults.openai_model),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", defaults.google_model),
        timeout=float(llm_data.get("timeout", defaults.timeout)),
    )


def _coerce(current, value):
    """Cast a file value to the type of the field default"""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    return type(current)(value)


def _parse_observer_config(data: dict) -> ObserverConfig:
    """Parse observer section from config dict.

    Unknown keys are ignored so older config files keep loading.
    """
    observer_data = data.get("observer", {})
    config = ObserverConfig()
    for key, value in observer_data.items():
        if hasattr(config, key):
            setattr(config, key, _coerce(getattr(config, key), value))
    return config


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server section from config dict"""
    server_data = data.get("server", {})
    return ServerConfig(
        host=server_data.get("host", "0.0.0.0"),
        port=int(server_data.get("port", 8090)),
    )


def _parse_store_config(data: dict) -> StoreConfig:
    """Parse store section from config dict"""
    store_data = data.get("store", {})
    return StoreConfig(path=store_data.get("path", str(STORE_PATH)))


def load_config() -> OpsMemoryConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.opsmemory/config.json)
    3. Default values
    """
    config = OpsMemoryConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.observer = _parse_observer_config(data)
            config.server = _parse_server_config(data)
            config.store = _parse_store_config(data)
        except (json.JSONDecodeError, IOError, ValueError, TypeError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    if os.getenv("OPSMEMORY_PORT"):
        config.server.port = int(os.getenv("OPSMEMORY_PORT"))
    if os.getenv("OPSMEMORY_HOST"):
        config.server.host = os.getenv("OPSMEMORY_HOST")
    if os.getenv("OPSMEMORY_STORE_PATH"):
        config.store.path = os.getenv("OPSMEMORY_STORE_PATH")
    if os.getenv("OPSMEMORY_TEMPLATES_DIR"):
        config.observer.templates_dir = os.getenv("OPSMEMORY_TEMPLATES_DIR")
    if os.getenv("OPSMEMORY_SESSION_TTL"):
        config.observer.session_ttl_seconds = float(os.getenv("OPSMEMORY_SESSION_TTL"))

    # LLM env var overrides (track env-sourced keys so they are never saved)
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "OPSMEMORY_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    return config


def save_config(config: OpsMemoryConfig) -> None:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "provider": config.llm.provider,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "google_api_key": config.llm.google_api_key,
        "google_model": config.llm.google_model,
        "timeout": config.llm.timeout,
    }
    for key in ("anthropic_api_key", "openai_api_key", "google_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    observer = config.observer
    data = {
        "llm": llm_section,
        "observer": {
            "min_interval_changed": observer.min_interval_changed,
            "min_interval_unchanged": observer.min_interval_unchanged,
            "force_recheck_frames": observer.force_recheck_frames,
            "force_recheck_seconds": observer.force_recheck_seconds,
            "session_ttl_seconds": observer.session_ttl_seconds,
            "synthesis_interval": observer.synthesis_interval,
            "synthesis_min_observations": observer.synthesis_min_observations,
            "transcript_min_entries": observer.transcript_min_entries,
            "transcript_min_chars": observer.transcript_min_chars,
            "transcript_window": observer.transcript_window,
            "similarity_threshold": observer.similarity_threshold,
            "listener_queue_size": observer.listener_queue_size,
            "deferred_synthesis": observer.deferred_synthesis,
            "templates_dir": observer.templates_dir,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
        "store": {
            "path": config.store.path,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    TEMPLATES_DIR.mkdir(parents=True, exist_ok=True)
