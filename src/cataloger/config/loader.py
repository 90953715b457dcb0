"""Resolve a CatalogerConfig from YAML files, environment and overrides.

Later sources win, merged section by section:

    defaults < ~/.config/cataloger/config.yaml < <repo>/.cataloger/config.yaml
             < CATALOGER__SECTION__KEY env vars < load_config(**overrides)
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from cataloger.config.models import (
    CatalogerConfig,
    DatabaseConfig,
    LoggingConfig,
    SamplingConfig,
    ScanConfig,
)
from cataloger.core.errors import ConfigError

GLOBAL_CONFIG_PATH = Path("~/.config/cataloger/config.yaml").expanduser()
CATALOGER_DIR = ".cataloger"
KB_FILENAME = "knowledge.db"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Mapping stored at ``path``; empty when the file does not exist."""
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError.parse_error(str(path), str(e)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError.parse_error(str(path), "top-level YAML value must be a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """``override`` on top of ``base``; nested mappings merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _settings_for(file_config: dict[str, Any]) -> type[BaseSettings]:
    """Settings class whose lowest-priority source is ``file_config``."""

    class CatalogerSettings(BaseSettings):
        model_config = SettingsConfigDict(
            env_prefix="CATALOGER__",
            env_nested_delimiter="__",
            case_sensitive=False,
        )

        logging: LoggingConfig = LoggingConfig()
        scan: ScanConfig = ScanConfig()
        sampling: SamplingConfig = SamplingConfig()
        database: DatabaseConfig = DatabaseConfig()

        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            return (init_settings, env_settings, InitSettingsSource(settings_cls, file_config))

    return CatalogerSettings


def load_config(repo_root: Path | None = None, **overrides: Any) -> CatalogerConfig:
    """Resolve configuration for ``repo_root`` (default: the working directory).

    ``overrides`` are per-section dicts, e.g. ``scan={"max_workers": 4}``.

    Raises:
        ConfigError: On unreadable YAML or a value that fails validation.
    """
    root = repo_root or Path.cwd()
    file_config = _deep_merge(
        _load_yaml(GLOBAL_CONFIG_PATH),
        _load_yaml(root / CATALOGER_DIR / "config.yaml"),
    )
    try:
        settings = _settings_for(file_config)(**overrides)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ConfigError.invalid_value(location, first.get("input"), first["msg"]) from e
    return CatalogerConfig.model_validate(settings.model_dump())


def get_kb_path(repo_root: Path, config: CatalogerConfig | None = None) -> Path:
    """Knowledge base file: ``database.path`` when set, else ``<repo>/.cataloger/knowledge.db``."""
    config = config or load_config(repo_root)
    if config.database.path:
        return Path(config.database.path).expanduser()
    return repo_root / CATALOGER_DIR / KB_FILENAME
