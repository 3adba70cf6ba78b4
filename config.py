from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

DEFAULT_MODEL = "anthropic/claude-opus-4-6"


def get_config_dir() -> Path:
    return Path(os.getenv("PINCER_HOME", str(Path.home() / ".pincer")))


def get_config_path() -> Path:
    return get_config_dir() / "pincer.json"


class SystemConfig(BaseModel):
    version: str = Field(default="0.1.0")
    log_dir: Path = Field(default_factory=lambda: get_config_dir() / "logs")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        value = (v or "INFO").upper()
        if value not in valid_levels:
            raise ValueError(f"log_level must be one of: {sorted(valid_levels)}")
        return value


class APIKeysConfig(BaseModel):
    anthropic: Optional[str] = None
    openai: Optional[str] = None
    deepseek: Optional[str] = None
    zhipu: Optional[str] = None

    def has_any(self) -> bool:
        return any((self.anthropic, self.openai, self.deepseek, self.zhipu))


class AgentConfig(BaseModel):
    model: str = Field(default=DEFAULT_MODEL)
    max_tokens: int = Field(default=8192, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    workspace: Optional[Path] = None
    skills_dir: Optional[Path] = None
    browser_enabled: bool = Field(default=False)
    browser_headless: bool = Field(default=True)
    api_keys: APIKeysConfig = Field(default_factory=APIKeysConfig)


class GatewayConfig(BaseModel):
    port: int = Field(default=18789, ge=1, le=65535)
    bind: str = Field(default="loopback")
    token: Optional[str] = None

    @field_validator("bind")
    @classmethod
    def validate_bind(cls, v: str) -> str:
        value = (v or "loopback").lower()
        if value not in {"loopback", "all"}:
            raise ValueError("bind must be 'loopback' or 'all'")
        return value

    @property
    def host(self) -> str:
        return "127.0.0.1" if self.bind == "loopback" else "0.0.0.0"


class FeishuConfig(BaseModel):
    enabled: bool = Field(default=False)
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    verification_token: Optional[str] = None
    encrypt_key: Optional[str] = None
    api_endpoint: str = Field(default="https://open.feishu.cn/open-apis")
    dm_policy: str = Field(default="open")
    allow_from: List[str] = Field(default_factory=list)

    @field_validator("dm_policy")
    @classmethod
    def validate_dm_policy(cls, v: str) -> str:
        value = (v or "open").lower()
        if value not in {"open", "pairing"}:
            raise ValueError("dm_policy must be 'open' or 'pairing'")
        return value


class DiscordConfig(BaseModel):
    enabled: bool = Field(default=True)
    token: Optional[str] = None
    dm_policy: str = Field(default="pairing")
    allow_from: List[str] = Field(default_factory=list)

    @field_validator("dm_policy")
    @classmethod
    def validate_dm_policy(cls, v: str) -> str:
        value = (v or "pairing").lower()
        if value not in {"open", "pairing"}:
            raise ValueError("dm_policy must be 'open' or 'pairing'")
        return value


class ChannelsConfig(BaseModel):
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    feishu: FeishuConfig = Field(default_factory=FeishuConfig)


class StorageConfig(BaseModel):
    data_dir: Path = Field(default_factory=lambda: get_config_dir() / "sessions")


class PincerConfig(BaseSettings):
    system: SystemConfig = Field(default_factory=SystemConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = SettingsConfigDict(
        env_prefix="PINCER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # PINCER_* variables outrank values passed in from the config file.
        return env_settings, init_settings, dotenv_settings, file_secret_settings


# Flat provider/platform variables that map onto nested settings.
_ENV_OVERRIDES: Dict[str, tuple] = {
    "ANTHROPIC_API_KEY": ("agent", "api_keys", "anthropic"),
    "OPENAI_API_KEY": ("agent", "api_keys", "openai"),
    "DEEPSEEK_API_KEY": ("agent", "api_keys", "deepseek"),
    "ZHIPU_API_KEY": ("agent", "api_keys", "zhipu"),
    "PINCER_GATEWAY_PORT": ("gateway", "port"),
    "PINCER_GATEWAY_TOKEN": ("gateway", "token"),
    "DISCORD_BOT_TOKEN": ("channels", "discord", "token"),
    "FEISHU_APP_ID": ("channels", "feishu", "app_id"),
    "FEISHU_APP_SECRET": ("channels", "feishu", "app_secret"),
    "FEISHU_VERIFICATION_TOKEN": ("channels", "feishu", "verification_token"),
    "FEISHU_ENCRYPT_KEY": ("channels", "feishu", "encrypt_key"),
}


def _deep_merge(target: dict, source: dict) -> dict:
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(target.get(k), dict):
            _deep_merge(target[k], v)
        elif v is not None and v != "":
            target[k] = v
    return target


def _env_overrides(environ: Optional[Dict[str, str]] = None) -> dict:
    environ = os.environ if environ is None else environ
    overrides: dict = {}
    for var, path in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        node = overrides
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value

    keys = overrides.get("agent", {}).get("api_keys", {})
    # A single configured provider picks its own default model.
    if set(keys) == {"deepseek"}:
        overrides["agent"]["model"] = "deepseek/deepseek-chat"
    elif set(keys) == {"zhipu"}:
        overrides["agent"]["model"] = "zhipu/glm-4-flash"
    return overrides


def _read_config_file(config_path: Path) -> dict:
    if not config_path.exists():
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {config_path}: top level must be an object")
        return {}
    return data


def load_config(config_path: Optional[Path] = None) -> PincerConfig:
    """Build the effective configuration.

    Sources, highest first: process environment (``PINCER_*`` settings and
    the flat provider/platform variables), the JSON config file, defaults.
    """
    merged_data = _read_config_file(config_path or get_config_path())
    _deep_merge(merged_data, _env_overrides())
    cfg = PincerConfig(**merged_data)

    if not cfg.agent.api_keys.has_any():
        logger.warning("No model API key configured; agent runs will use the stub runner")

    return cfg


def save_config(cfg: PincerConfig, config_path: Optional[Path] = None) -> Path:
    config_path = config_path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = cfg.model_dump(mode="json", exclude_none=True)
    with config_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    return config_path
