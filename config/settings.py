"""
Configuration loader for the OTP voice caller.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./otp_calls.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    flush_interval_s: float = 0                        # file backend: 0 writes through
    echo: bool = False
    pool_size: int = 10                                # ignored for sqlite
    max_overflow: int = 20
    pool_recycle_s: int = 1800


@dataclass
class VonageConfig:
    application_id: str = ""
    private_key: str = ""                              # PEM contents, "\n" escapes allowed
    private_key_path: str = ""                         # alternative to inline PEM
    from_number: str = ""
    api_base_url: str = "https://api.nexmo.com"
    timeout_s: float = 10.0

    @property
    def configured(self) -> bool:
        return bool(self.application_id and self.from_number
                    and (self.private_key or self.private_key_path))


@dataclass
class TranscriptionConfig:
    enabled: bool = False
    api_key: str = ""
    model: str = "nova-2"
    base_url: str = "https://api.deepgram.com/v1"
    timeout_s: float = 30.0


@dataclass
class CallConfig:
    default_language: str = "en-US"
    max_dtmf_attempts: int = 3
    dtmf_timeout_s: int = 10
    trigger_timeout_s: float = 15.0
    list_limit_max: int = 500


@dataclass
class BroadcastConfig:
    max_pending_messages: int = 100    # per-subscriber outbox before it is dropped


@dataclass
class Settings:
    app_name: str = "OTPVoiceCaller"
    debug: bool = False
    base_url: str = "http://localhost:8000"            # public URL the provider calls back
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    vonage: VonageConfig = field(default_factory=VonageConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    calls: CallConfig = field(default_factory=CallConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any, default: bool = False) -> bool:
    # env substitution turns booleans into strings
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "OTPCALL_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)
        settings.base_url = (raw.get("base_url") or settings.base_url).rstrip("/")

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url") or settings.database.url,
                store_backend=db.get("store_backend") or settings.database.store_backend,
                store_file_dir=db.get("store_file_dir") or settings.database.store_file_dir,
                flush_interval_s=float(db.get("flush_interval_s") or 0),
                echo=_as_bool(db.get("echo"), settings.debug),
                pool_size=int(db.get("pool_size") or DatabaseConfig.pool_size),
                max_overflow=int(db.get("max_overflow") or DatabaseConfig.max_overflow),
                pool_recycle_s=int(db.get("pool_recycle_s") or DatabaseConfig.pool_recycle_s),
            )

        if "vonage" in raw:
            v = raw["vonage"]
            settings.vonage = VonageConfig(
                application_id=v.get("application_id", ""),
                private_key=(v.get("private_key") or "").replace("\\n", "\n"),
                private_key_path=v.get("private_key_path", ""),
                from_number=v.get("from_number", ""),
                api_base_url=v.get("api_base_url") or VonageConfig.api_base_url,
                timeout_s=float(v.get("timeout_s") or VonageConfig.timeout_s),
            )

        if "transcription" in raw:
            t = raw["transcription"]
            settings.transcription = TranscriptionConfig(
                enabled=_as_bool(t.get("enabled")),
                api_key=t.get("api_key", ""),
                model=t.get("model") or TranscriptionConfig.model,
                base_url=t.get("base_url") or TranscriptionConfig.base_url,
                timeout_s=float(t.get("timeout_s") or TranscriptionConfig.timeout_s),
            )

        if "calls" in raw:
            c = raw["calls"]
            settings.calls = CallConfig(
                default_language=c.get("default_language") or CallConfig.default_language,
                max_dtmf_attempts=int(c.get("max_dtmf_attempts") or CallConfig.max_dtmf_attempts),
                dtmf_timeout_s=int(c.get("dtmf_timeout_s") or CallConfig.dtmf_timeout_s),
                trigger_timeout_s=float(c.get("trigger_timeout_s") or CallConfig.trigger_timeout_s),
                list_limit_max=int(c.get("list_limit_max") or CallConfig.list_limit_max),
            )

        if "broadcast" in raw:
            b = raw["broadcast"]
            settings.broadcast = BroadcastConfig(
                max_pending_messages=int(
                    b.get("max_pending_messages") or BroadcastConfig.max_pending_messages
                ),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
