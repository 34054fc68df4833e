"""
Configuration Management for Triage

Loads configuration from ~/.triage/config.json and environment variables.
Each top-level key of the file maps onto one section dataclass below;
unknown keys are ignored and missing keys keep their defaults.
"""

import os
import json
from pathlib import Path
from dataclasses import asdict, dataclass, field, fields

CONFIG_DIR = Path.home() / ".triage"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"

SECRET_FIELDS = frozenset({
    "anthropic_api_key",
    "openai_api_key",
    "google_api_key",
    "slack_signing_secret",
    "figma_passcode",
    "email_webhook_secret",
})


@dataclass
class LLMConfig:
    """Completion provider configuration for the classifier"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"

    @property
    def model(self) -> str:
        """Model name for the selected provider"""
        if self.provider not in ("anthropic", "openai", "google"):
            return ""
        return getattr(self, f"{self.provider}_model")


@dataclass
class ServerConfig:
    """HTTP server configuration"""
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"


@dataclass
class SourcesConfig:
    """Inbound webhook secrets, one per source adapter"""
    slack_signing_secret: str = ""
    figma_passcode: str = ""
    email_webhook_secret: str = ""  # Svix "whsec_..." secret
    signature_tolerance_seconds: int = 300


@dataclass
class PipelineConfig:
    """Job orchestration settings"""
    max_attempts: int = 3
    backoff_base_delay: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_delay: float = 30.0
    classifier_timeout: float = 60.0
    destination_timeout: float = 15.0
    max_tasks: int = 5
    datastore_path: str = ""  # empty: in-memory only


@dataclass
class DestinationConfig:
    """Destination API settings"""
    notion_api_url: str = "https://api.notion.com/v1"
    notion_version: str = "2022-06-28"


@dataclass
class TriageConfig:
    """Main Triage configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    destinations: DestinationConfig = field(default_factory=DestinationConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_section(data: dict, name: str, cls):
    """Build section dataclass `cls` from data[name], ignoring unknown keys"""
    section = data.get(name) or {}
    known = {f.name for f in fields(cls) if not f.name.startswith("_")}
    return cls(**{k: v for k, v in section.items() if k in known})


def _parse_llm_config(data: dict) -> LLMConfig:
    return _parse_section(data, "llm", LLMConfig)


def _parse_server_config(data: dict) -> ServerConfig:
    return _parse_section(data, "server", ServerConfig)


def _parse_sources_config(data: dict) -> SourcesConfig:
    return _parse_section(data, "sources", SourcesConfig)


def _parse_pipeline_config(data: dict) -> PipelineConfig:
    return _parse_section(data, "pipeline", PipelineConfig)


def _parse_destination_config(data: dict) -> DestinationConfig:
    return _parse_section(data, "destinations", DestinationConfig)


# env var -> (section attribute on TriageConfig, field, converter)
_ENV_OVERRIDES = {
    "TRIAGE_PORT": ("server", "port", int),
    "TRIAGE_LOG_LEVEL": ("server", "log_level", str),
    "TRIAGE_MAX_ATTEMPTS": ("pipeline", "max_attempts", int),
    "TRIAGE_CLASSIFIER_TIMEOUT": ("pipeline", "classifier_timeout", float),
    "TRIAGE_DATASTORE_PATH": ("pipeline", "datastore_path", str),
    "SLACK_SIGNING_SECRET": ("sources", "slack_signing_secret", str),
    "FIGMA_WEBHOOK_PASSCODE": ("sources", "figma_passcode", str),
    "EMAIL_WEBHOOK_SECRET": ("sources", "email_webhook_secret", str),
    "TRIAGE_LLM_PROVIDER": ("llm", "provider", str),
    "ANTHROPIC_API_KEY": ("llm", "anthropic_api_key", str),
    "ANTHROPIC_MODEL": ("llm", "anthropic_model", str),
    "OPENAI_API_KEY": ("llm", "openai_api_key", str),
    "OPENAI_MODEL": ("llm", "openai_model", str),
    "GOOGLE_API_KEY": ("llm", "google_api_key", str),
    "GEMINI_API_KEY": ("llm", "google_api_key", str),
    "GOOGLE_MODEL": ("llm", "google_model", str),
}


def load_config() -> TriageConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.triage/config.json)
    3. Default values
    """
    config = TriageConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.server = _parse_server_config(data)
            config.sources = _parse_sources_config(data)
            config.pipeline = _parse_pipeline_config(data)
            config.destinations = _parse_destination_config(data)
        except (json.JSONDecodeError, IOError, TypeError) as e:
            print(f"[Config] Warning: Failed to load config file: {e}")

    for env_var, (section, attr, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_var)
        if not raw:
            continue
        setattr(getattr(config, section), attr, convert(raw))
        # secrets from the environment are remembered so save_config skips them
        if attr in SECRET_FIELDS:
            config._env_sourced_keys.add(attr)

    return config


def save_config(config: TriageConfig) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    data = asdict(config)
    data.pop("_env_sourced_keys", None)
    for section in data.values():
        for attr in SECRET_FIELDS.intersection(section):
            if attr in config._env_sourced_keys:
                section[attr] = ""

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Create the config and log directories"""
    for directory in (CONFIG_DIR, LOGS_DIR):
        directory.mkdir(parents=True, exist_ok=True)
