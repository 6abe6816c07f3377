from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    logs_dir: str


@dataclass(frozen=True)
class CatalogConfig:
    categories: list[str]
    region: str
    now_playing_max_pages: int
    window_min_days_ago: int
    window_max_days_ago: int
    excluded_genre_ids: list[int]


@dataclass(frozen=True)
class PricingConfig:
    search_cost_per_request: float
    extraction_input_per_million: float
    extraction_output_per_million: float


@dataclass(frozen=True)
class ProvidersConfig:
    timeout_seconds: int
    extraction_timeout_seconds: int
    user_agent: str
    search_result_count: int
    search_country: str
    extraction_model: str
    extraction_temperature: float
    extraction_max_tokens: int
    generation_model: str
    generation_temperature: float
    generation_max_tokens: int
    pricing: PricingConfig


@dataclass(frozen=True)
class QueueConfig:
    name: str
    batch_size: int
    max_batch_size: int
    max_attempts: int
    visibility_seconds: int
    retry_delay_seconds: int
    max_concurrency: int
    poll_interval_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    job_name: str
    stale_run_seconds: int
    history_limit: int


@dataclass(frozen=True)
class RoastsConfig:
    default_language: str
    recent_limit: int


@dataclass(frozen=True)
class StreamingConfig:
    enabled: bool
    region: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    catalog: CatalogConfig
    providers: ProvidersConfig
    queue: QueueConfig
    jobs: JobsConfig
    roasts: RoastsConfig
    streaming: StreamingConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "PlotBurn",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "logs_dir": "/data/logs",
    },
    "catalog": {
        "categories": ["now_playing", "popular"],
        "region": "IN",
        "now_playing_max_pages": 10,
        "window_min_days_ago": 10,
        "window_max_days_ago": 3,
        "excluded_genre_ids": [99, 10402],
    },
    "providers": {
        "timeout_seconds": 30,
        "extraction_timeout_seconds": 60,
        "user_agent": "PlotBurn/0.1",
        "search_result_count": 20,
        "search_country": "IN",
        "extraction_model": "grok-4-1-fast-non-reasoning",
        "extraction_temperature": 0.3,
        "extraction_max_tokens": 10000,
        "generation_model": "claude-sonnet-4-5-20250929",
        "generation_temperature": 0.7,
        "generation_max_tokens": 1024,
        "pricing": {
            "search_cost_per_request": 0.005,
            "extraction_input_per_million": 0.2,
            "extraction_output_per_million": 0.5,
        },
    },
    "queue": {
        "name": "movie-processing",
        "batch_size": 100,
        "max_batch_size": 5,
        "max_attempts": 3,
        "visibility_seconds": 300,
        "retry_delay_seconds": 60,
        "max_concurrency": 2,
        "poll_interval_seconds": 5,
    },
    "jobs": {
        "job_name": "daily_enrichment",
        "stale_run_seconds": 3600,
        "history_limit": 10,
    },
    "roasts": {
        "default_language": "en",
        "recent_limit": 5,
    },
    "streaming": {
        "enabled": True,
        "region": "IN",
    },
}

CONFIG_KEY = "config.runtime"

API_KEY_ENV = {
    "tmdb": "PB_TMDB_API_KEY",
    "brave": "PB_BRAVE_API_KEY",
    "xai": "PB_XAI_API_KEY",
    "anthropic": "PB_ANTHROPIC_API_KEY",
}


def get_api_key(provider: str) -> str | None:
    env_name = API_KEY_ENV.get(provider)
    if not env_name:
        raise ConfigError(f"unknown provider: {provider}")
    value = os.environ.get(env_name, "").strip()
    return value or None


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def default_config() -> Config:
    return _build_config(_deep_copy(DEFAULT_CONFIG))


def load_config_file(path: str) -> dict[str, Any]:
    """Read a YAML config file and merge it over the defaults."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")
    merged = _merge(_deep_copy(DEFAULT_CONFIG), raw)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError("Invalid config file: " + "; ".join(errors))
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if not isinstance(item, type(sample)) or isinstance(item, bool):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    queue = cfg["queue"]
    for key in ("batch_size", "max_batch_size", "max_attempts", "max_concurrency"):
        if queue[key] < 1:
            errors.append(f"config.runtime.queue.{key} must be >= 1")
    if not cfg["catalog"]["categories"]:
        errors.append("config.runtime.catalog.categories must not be empty")
    catalog = cfg["catalog"]
    if catalog["window_max_days_ago"] > catalog["window_min_days_ago"]:
        errors.append(
            "config.runtime.catalog.window_max_days_ago must not exceed window_min_days_ago"
        )
    if cfg["providers"]["timeout_seconds"] <= 0:
        errors.append("config.runtime.providers.timeout_seconds must be positive")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    catalog_cfg = cfg.get("catalog") or {}
    providers_cfg = cfg.get("providers") or {}
    queue_cfg = cfg.get("queue") or {}
    jobs_cfg = cfg.get("jobs") or {}
    roasts_cfg = cfg.get("roasts") or {}
    streaming_cfg = cfg.get("streaming") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        logs_dir=str(paths_cfg.get("logs_dir")),
    )

    catalog = CatalogConfig(
        categories=[str(item) for item in catalog_cfg.get("categories")],
        region=str(catalog_cfg.get("region")),
        now_playing_max_pages=int(catalog_cfg.get("now_playing_max_pages")),
        window_min_days_ago=int(catalog_cfg.get("window_min_days_ago")),
        window_max_days_ago=int(catalog_cfg.get("window_max_days_ago")),
        excluded_genre_ids=[int(item) for item in catalog_cfg.get("excluded_genre_ids")],
    )

    pricing_cfg = providers_cfg.get("pricing") or {}
    pricing = PricingConfig(
        search_cost_per_request=float(pricing_cfg.get("search_cost_per_request")),
        extraction_input_per_million=float(pricing_cfg.get("extraction_input_per_million")),
        extraction_output_per_million=float(pricing_cfg.get("extraction_output_per_million")),
    )

    providers = ProvidersConfig(
        timeout_seconds=int(providers_cfg.get("timeout_seconds")),
        extraction_timeout_seconds=int(providers_cfg.get("extraction_timeout_seconds")),
        user_agent=str(providers_cfg.get("user_agent")),
        search_result_count=int(providers_cfg.get("search_result_count")),
        search_country=str(providers_cfg.get("search_country")),
        extraction_model=str(providers_cfg.get("extraction_model")),
        extraction_temperature=float(providers_cfg.get("extraction_temperature")),
        extraction_max_tokens=int(providers_cfg.get("extraction_max_tokens")),
        generation_model=str(providers_cfg.get("generation_model")),
        generation_temperature=float(providers_cfg.get("generation_temperature")),
        generation_max_tokens=int(providers_cfg.get("generation_max_tokens")),
        pricing=pricing,
    )

    queue = QueueConfig(
        name=str(queue_cfg.get("name")),
        batch_size=int(queue_cfg.get("batch_size")),
        max_batch_size=int(queue_cfg.get("max_batch_size")),
        max_attempts=int(queue_cfg.get("max_attempts")),
        visibility_seconds=int(queue_cfg.get("visibility_seconds")),
        retry_delay_seconds=int(queue_cfg.get("retry_delay_seconds")),
        max_concurrency=int(queue_cfg.get("max_concurrency")),
        poll_interval_seconds=int(queue_cfg.get("poll_interval_seconds")),
    )

    jobs = JobsConfig(
        job_name=str(jobs_cfg.get("job_name")),
        stale_run_seconds=int(jobs_cfg.get("stale_run_seconds")),
        history_limit=int(jobs_cfg.get("history_limit")),
    )

    roasts = RoastsConfig(
        default_language=str(roasts_cfg.get("default_language")),
        recent_limit=int(roasts_cfg.get("recent_limit")),
    )

    streaming = StreamingConfig(
        enabled=bool(streaming_cfg.get("enabled")),
        region=str(streaming_cfg.get("region")),
    )

    return Config(
        app=app,
        paths=paths,
        catalog=catalog,
        providers=providers,
        queue=queue,
        jobs=jobs,
        roasts=roasts,
        streaming=streaming,
    )


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
