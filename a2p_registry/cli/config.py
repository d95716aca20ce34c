"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./a2p.yaml (working directory)
3. ~/.a2p/config.yaml (user home)

Environment variables override YAML: A2P_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
With no config file, defaults plus environment overrides apply.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

_SECRET_FIELDS = frozenset({"api_key", "operator_api_key", "webhook_secret"})


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    url: str = "sqlite:///./a2p_registry.db"
    echo: bool = False


class GatewayConfig(BaseModel):
    """Upstream compliance API settings."""

    base_url: str = "http://localhost:9400"
    api_key: str = ""
    timeout_seconds: float = 15.0
    transport_retries: int = 2

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class InventoryConfig(BaseModel):
    """Phone-number inventory service settings."""

    base_url: str = "http://localhost:9500"
    api_key: str = ""
    timeout_seconds: float = 10.0


class OrchestratorConfig(BaseModel):
    """Orchestrator policy knobs."""

    reconciliation_timeout_seconds: int = Field(default=900, ge=1)
    max_cas_retries: int = Field(default=5, ge=1)
    sweep_batch_size: int = Field(default=100, ge=1)


class APIConfig(BaseModel):
    """HTTP API settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    api_key: str = ""
    operator_api_key: str = ""
    webhook_secret: str = ""
    log_level: str = "info"


class A2PConfig(BaseModel):
    """Top-level configuration for the A2P registration service."""

    database: DatabaseConfig = DatabaseConfig()
    gateway: GatewayConfig = GatewayConfig()
    inventory: InventoryConfig = InventoryConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    api: APIConfig = APIConfig()

    def masked(self) -> dict[str, Any]:
        """Return the config as a dict with secret values masked."""
        data = self.model_dump()
        for section in data.values():
            for key in list(section):
                if key in _SECRET_FIELDS and section[key]:
                    section[key] = "****"
        return data


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "a2p.yaml",
        Path.cwd() / "a2p.yml",
        Path.home() / ".a2p" / "config.yaml",
        Path.home() / ".a2p" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce(section_model: type[BaseModel], field_name: str, value: str) -> Any:
    """Coerce an env string to the field's declared scalar type."""
    field_info = section_model.model_fields.get(field_name)
    annotation = field_info.annotation if field_info else str
    if annotation is bool:
        return value.lower() in ("1", "true", "yes")
    if annotation is int:
        return int(value)
    if annotation is float:
        return float(value)
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply A2P_<SECTION>_<KEY> env var overrides to config data.

    For example, ``A2P_GATEWAY_BASE_URL`` maps to section ``gateway``,
    field ``base_url``. Unknown sections and fields are ignored.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "A2P_"
    sections = {
        name: field.annotation
        for name, field in A2PConfig.model_fields.items()
    }
    known_sections = sorted(sections, key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        for section in known_sections:
            section_prefix = section + "_"
            if not suffix.startswith(section_prefix):
                continue
            field_name = suffix[len(section_prefix):]
            section_model = sections[section]
            if field_name not in section_model.model_fields:
                break
            if not isinstance(data.get(section), dict):
                data[section] = {}
            try:
                data[section][field_name] = _coerce(section_model, field_name, value)
            except ValueError:
                logger.warning("Ignoring %s: cannot parse %r", key, value)
            break
    return data


def load_config(config_path: str | None = None) -> A2PConfig:
    """Load configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.a2p/).

    Returns:
        Parsed and validated A2PConfig.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return A2PConfig(**data)
