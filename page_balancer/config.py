"""Configuration service for the fan-out executor and the partitioner.

Configuration is layered:

* built-in defaults (:data:`DEFAULTS`),
* an optional YAML document (path argument or ``PAGE_BALANCER_CONFIG``),
* environment overrides using the ``PAGE_BALANCER__`` prefix, where a double
  underscore separates nested keys, e.g.
  ``PAGE_BALANCER__PARTITION__MAX_GROUPS=8``.

A process-wide singleton is available through :meth:`Config.singleton` and is
what :func:`get_executor_value` and :func:`get_partition_value` read from.
"""
from __future__ import annotations

import copy
import decimal
import math
import numbers
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import yaml

from .errors import InvalidConfiguration

__all__ = [
    "Config",
    "DEFAULTS",
    "LoggerSettings",
    "PartitionSettings",
    "get_executor_value",
    "get_partition_value",
]


CONFIG_PATH_ENV = "PAGE_BALANCER_CONFIG"
ENV_PREFIX = "PAGE_BALANCER__"

DEFAULTS: Mapping[str, Any] = {
    "executor": {
        "degree_of_parallelism": None,
        "propagate_context": False,
        "show_progress": False,
        "thread_name_prefix": "fan-out",
    },
    "partition": {
        "round_deviation_up_to": 0.0,
        "max_groups": 16,
        "score_tolerance": 0.0,
        "degree_of_parallelism": None,
    },
    "logger": {
        "level": "INFO",
        "namespace": "page_balancer",
        "sinks": [{"type": "console", "stream": "stderr"}],
    },
}

_MISSING = object()


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _parse_env_value(raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _env_overrides(environ: Mapping[str, str], prefix: str) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(prefix):
            continue
        path = [part.lower() for part in name[len(prefix):].split("__") if part]
        if not path:
            continue
        cursor = overrides
        for part in path[:-1]:
            nested = cursor.get(part)
            if not isinstance(nested, dict):
                nested = {}
                cursor[part] = nested
            cursor = nested
        cursor[path[-1]] = _parse_env_value(raw)
    return overrides


def _coerce(value: Any, typ: Any, key: str) -> Any:
    if typ is Any or value is None:
        return value
    if typ is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1", "false", "no", "off", "0"}:
            return value.strip().lower() in {"true", "yes", "on", "1"}
        raise InvalidConfiguration(f"configuration key {key} must be a boolean, got {value!r}")
    if typ in (int, float):
        if isinstance(value, bool):
            raise InvalidConfiguration(f"configuration key {key} must be numeric, got {value!r}")
        if typ is int and isinstance(value, numbers.Integral):
            return int(value)
        if typ is float and isinstance(value, (numbers.Real, decimal.Decimal)):
            return float(value)
        if isinstance(value, str):
            try:
                return typ(value)
            except ValueError as exc:
                raise InvalidConfiguration(f"configuration key {key} must be {typ.__name__}, got {value!r}") from exc
        if typ is int and isinstance(value, float) and value.is_integer():
            return int(value)
        raise InvalidConfiguration(f"configuration key {key} must be {typ.__name__}, got {value!r}")
    if typ is dict and isinstance(value, Mapping):
        return value
    if isinstance(value, typ):
        return value
    raise InvalidConfiguration(f"configuration key {key} has incompatible type: {type(value)!r}")


class Config:
    """Immutable view over merged configuration data."""

    _singleton: Optional["Config"] = None
    _singleton_lock = threading.Lock()

    def __init__(self, data: Mapping[str, Any], *, source: Optional[Path] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(dict(data))
        self.source = source

    @classmethod
    def load(
        cls,
        path: Union[str, Path, None] = None,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
        env_prefix: Optional[str] = ENV_PREFIX,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Config":
        environ = os.environ if environ is None else environ
        data = _deep_merge(DEFAULTS, defaults or {})
        source: Optional[Path] = None
        if path is None:
            path = environ.get(CONFIG_PATH_ENV) or None
        if path is not None:
            source = Path(path).expanduser().resolve()
            if not source.exists():
                raise InvalidConfiguration(f"configuration file not found: {source}")
            with source.open("r", encoding="utf-8") as handle:
                try:
                    loaded = yaml.safe_load(handle)
                except yaml.YAMLError as exc:
                    raise InvalidConfiguration(f"invalid YAML in {source}: {exc}") from exc
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, Mapping):
                raise InvalidConfiguration(f"configuration root in {source} must be a mapping")
            data = _deep_merge(data, loaded)
        if env_prefix:
            data = _deep_merge(data, _env_overrides(environ, env_prefix))
        return cls(data, source=source)

    # -------------------- singleton --------------------
    @classmethod
    def singleton(cls) -> "Config":
        with cls._singleton_lock:
            if cls._singleton is None:
                cls._singleton = cls.load()
            return cls._singleton

    @classmethod
    def load_singleton(cls, path: Union[str, Path, None] = None, **kwargs: Any) -> "Config":
        cfg = cls.load(path, **kwargs)
        cls.set_singleton(cfg)
        return cfg

    @classmethod
    def set_singleton(cls, cfg: Optional["Config"]) -> None:
        with cls._singleton_lock:
            cls._singleton = cfg

    # -------------------- access --------------------
    def get(self, dotted: str, default: Any = None) -> Any:
        cursor: Any = self._data
        for part in dotted.split("."):
            if isinstance(cursor, Mapping) and part in cursor:
                cursor = cursor[part]
            else:
                return default
        return copy.deepcopy(cursor)

    def section(self, name: str) -> Dict[str, Any]:
        value = self.get(name, {})
        if not isinstance(value, Mapping):
            raise InvalidConfiguration(f"configuration section {name} must be a mapping")
        return dict(value)

    def export(self, fmt: str = "dict") -> Any:
        if fmt == "dict":
            return copy.deepcopy(self._data)
        if fmt == "yaml":
            return yaml.safe_dump(self._data, sort_keys=True)
        raise ValueError(f"unsupported export format: {fmt!r}")


def _get_value(section: str, key: str, typ: Any, default: Any = _MISSING, *, required: bool = False) -> Any:
    dotted = f"{section}.{key}"
    raw = Config.singleton().get(dotted, _MISSING)
    if raw is _MISSING or raw is None:
        if required:
            raise InvalidConfiguration(f"missing required configuration key {dotted}")
        return None if default is _MISSING else default
    return _coerce(raw, typ, dotted)


def get_executor_value(key: str, typ: Any, default: Any = None, *, required: bool = False) -> Any:
    return _get_value("executor", key, typ, default, required=required)


def get_partition_value(key: str, typ: Any, default: Any = None, *, required: bool = False) -> Any:
    return _get_value("partition", key, typ, default, required=required)


def _validate_round_up(value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (numbers.Real, decimal.Decimal)):
        raise InvalidConfiguration(f"round_deviation_up_to must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value) or value < 0:
        raise InvalidConfiguration(f"round_deviation_up_to must be finite and >= 0, got {value!r}")
    return value


def _validate_max_groups(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise InvalidConfiguration(f"max_groups must be an integer, got {value!r}")
    value = int(value)
    if value < 2:
        raise InvalidConfiguration(f"max_groups must be >= 2, got {value}")
    return value


@dataclass(frozen=True)
class PartitionSettings:
    """Tuning parameters of :class:`page_balancer.page_splitter.PageSplitter`."""

    round_deviation_up_to: float = field(default_factory=lambda: get_partition_value("round_deviation_up_to", float, 0.0))
    max_groups: int = field(default_factory=lambda: get_partition_value("max_groups", int, 16))
    score_tolerance: float = field(default_factory=lambda: get_partition_value("score_tolerance", float, 0.0))
    degree_of_parallelism: Optional[int] = field(default_factory=lambda: get_partition_value("degree_of_parallelism", int))

    def __post_init__(self) -> None:
        object.__setattr__(self, "round_deviation_up_to", _validate_round_up(self.round_deviation_up_to))
        object.__setattr__(self, "max_groups", _validate_max_groups(self.max_groups))
        tolerance = self.score_tolerance
        if isinstance(tolerance, bool) or not isinstance(tolerance, numbers.Real) or not math.isfinite(tolerance) or tolerance < 0:
            raise InvalidConfiguration(f"score_tolerance must be finite and >= 0, got {tolerance!r}")
        object.__setattr__(self, "score_tolerance", float(tolerance))
        degree = self.degree_of_parallelism
        if degree is not None:
            if isinstance(degree, bool) or not isinstance(degree, numbers.Integral):
                raise InvalidConfiguration(f"degree_of_parallelism must be an integer, got {degree!r}")
            object.__setattr__(self, "degree_of_parallelism", int(degree))

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "PartitionSettings":
        if data is None:
            return cls()
        kwargs: Dict[str, Any] = {}
        if data.get("round_deviation_up_to") is not None:
            kwargs["round_deviation_up_to"] = _coerce(data["round_deviation_up_to"], float, "partition.round_deviation_up_to")
        if data.get("max_groups") is not None:
            kwargs["max_groups"] = _coerce(data["max_groups"], int, "partition.max_groups")
        if data.get("score_tolerance") is not None:
            kwargs["score_tolerance"] = _coerce(data["score_tolerance"], float, "partition.score_tolerance")
        if "degree_of_parallelism" in data:
            kwargs["degree_of_parallelism"] = _coerce(data["degree_of_parallelism"], int, "partition.degree_of_parallelism")
        return cls(**kwargs)

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None) -> "PartitionSettings":
        cfg = cfg or Config.singleton()
        return cls.from_mapping(cfg.section("partition"))


@dataclass(frozen=True)
class LoggerSettings:
    level: str = "INFO"
    namespace: str = "page_balancer"
    sinks: Sequence[Union[str, Mapping[str, Any]]] = ({"type": "console", "stream": "stderr"},)
    app: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "LoggerSettings":
        if data is None:
            return cls()
        sinks: List[Union[str, Mapping[str, Any]]] = list(data.get("sinks") or [{"type": "console", "stream": "stderr"}])
        return cls(
            level=str(data.get("level", "INFO")).upper(),
            namespace=str(data.get("namespace", "page_balancer")),
            sinks=tuple(sinks),
            app=dict(data.get("app") or {}),
        )
