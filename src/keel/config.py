"""Application configuration.

Provides the tree sources (:class:`DictSource`, :class:`EnvSource`,
:class:`JsonFileSource`, :class:`YamlFileSource`), the immutable
:class:`ApplicationConfig`, and the :func:`configuration` builder that
deep-merges sources in order.
"""

import json
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

from .exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}

_PROVIDER_KEYS = {"deferred", "priority", "environment", "dependencies", "metadata"}


class TreeSource:
    """Base class for configuration sources.

    Subclasses must implement :meth:`get_tree` to return a nested mapping.
    """

    def get_tree(self) -> Mapping[str, Any]:
        raise NotImplementedError


class DictSource(TreeSource):
    """Tree source backed by an in-memory dictionary.

    Example:
        >>> DictSource({"name": "billing", "debug": True}).get_tree()["name"]
        'billing'
    """

    def __init__(self, data: Mapping[str, Any]):
        self._data = data

    def get_tree(self) -> Mapping[str, Any]:
        return self._data


class EnvSource(TreeSource):
    """Tree source built from prefixed environment variables.

    ``KEEL_DEBUG=1`` becomes ``{"debug": "1"}``. A double underscore nests,
    so ``KEEL_PROVIDERS__MailerProvider__PRIORITY=5`` becomes
    ``{"providers": {"MailerProvider": {"priority": "5"}}}``. The first and
    last segments are lower-cased; segments in between keep their case so
    they can name provider classes.

    Args:
        prefix: Only variables starting with this prefix are read.
        environ: Mapping to read instead of ``os.environ``.
    """

    def __init__(self, prefix: str = "KEEL_", environ: Optional[Mapping[str, str]] = None) -> None:
        self.prefix = prefix
        self._environ = environ

    def get_tree(self) -> Mapping[str, Any]:
        environ = self._environ if self._environ is not None else os.environ
        tree: Dict[str, Any] = {}
        for key, value in environ.items():
            if not key.startswith(self.prefix) or len(key) == len(self.prefix):
                continue
            parts = key[len(self.prefix):].split("__")
            parts[0] = parts[0].lower()
            parts[-1] = parts[-1].lower()
            node = tree
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
        return tree


class JsonFileSource(TreeSource):
    """Tree source that reads configuration from a JSON file.

    Raises:
        ConfigurationError: If the file cannot be loaded or parsed.
    """

    def __init__(self, path: str):
        self._path = path

    def get_tree(self) -> Mapping[str, Any]:
        try:
            with open(self._path, encoding="utf-8") as f:
                return json.load(f)
        except Exception as e:
            raise ConfigurationError(f"Failed to load JSON config: {e}")


class YamlFileSource(TreeSource):
    """Tree source that reads configuration from a YAML file.

    Requires ``PyYAML`` (``pip install keel-ioc[yaml]``).

    Raises:
        ConfigurationError: If PyYAML is not installed, or if the file
            cannot be loaded or parsed.
    """

    def __init__(self, path: str):
        self._path = path

    def get_tree(self) -> Mapping[str, Any]:
        try:
            import yaml
        except Exception:
            raise ConfigurationError("PyYAML not installed")
        try:
            with open(self._path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return data
        except Exception as e:
            raise ConfigurationError(f"Failed to load YAML config: {e}")


def _deep_merge(a: Any, b: Any) -> Any:
    if isinstance(a, dict) and isinstance(b, dict):
        out = dict(a)
        for k, v in b.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return b


def _to_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE:
            return True
        if v in _FALSE:
            return False
    raise ConfigurationError(f"Invalid boolean for '{key}': {value!r}")


def _to_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid integer for '{key}': {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid integer for '{key}': {value!r}")


def _to_names(value: Any) -> Any:
    if isinstance(value, str):
        parts = [p.strip() for p in value.split(",") if p.strip()]
        return parts[0] if len(parts) == 1 else tuple(parts)
    return tuple(value)


def _provider_overrides(name: str, raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Provider config for '{name}' must be a mapping")
    unknown = set(raw) - _PROVIDER_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown provider option(s) for '{name}': {', '.join(sorted(unknown))}")
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        where = f"providers.{name}.{key}"
        if key == "deferred":
            out[key] = _to_bool(value, where)
        elif key == "priority":
            out[key] = _to_int(value, where)
        elif key == "environment":
            out[key] = None if value is None else _to_names(value)
        elif key == "dependencies":
            names = _to_names(value)
            out[key] = (names,) if isinstance(names, str) else names
        else:
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"'{where}' must be a mapping")
            out[key] = dict(value)
    return out


@dataclass(frozen=True)
class ApplicationConfig:
    """Immutable application settings.

    Attributes:
        name: Application name.
        version: Application version string.
        environment: Active environment; providers configured for other
            environments are skipped.
        debug: Log lifecycle events at INFO instead of DEBUG.
        timezone: Default timezone name.
        locale: Default locale.
        providers: Per-provider-class overrides of the registration options.
        extra: Top-level keys not recognised above.
    """

    name: str = "keel"
    version: str = "0.0.0"
    environment: str = "production"
    debug: bool = False
    timezone: str = "UTC"
    locale: str = "en"
    providers: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ApplicationConfig":
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                extra[key] = value
            elif key == "debug":
                kwargs[key] = _to_bool(value, key)
            elif key == "providers":
                if not isinstance(value, Mapping):
                    raise ConfigurationError("'providers' must be a mapping of provider name to options")
                kwargs[key] = {str(n): _provider_overrides(str(n), v) for n, v in value.items()}
            else:
                kwargs[key] = str(value)
        return cls(extra=extra, **kwargs)

    def provider_config(self, name: str) -> Dict[str, Any]:
        """Return the overrides configured for the provider class *name* (possibly empty)."""
        return dict(self.providers.get(name, {}))


def configuration(*sources: TreeSource, overrides: Optional[Mapping[str, Any]] = None) -> ApplicationConfig:
    """Build an :class:`ApplicationConfig` from *sources*, later sources winning.

    Args:
        *sources: Tree sources, merged in order.
        overrides: Nested values applied after every source.

    Raises:
        ConfigurationError: If a source has an unknown type, cannot be read,
            or holds an invalid value.

    Example:
        >>> cfg = configuration(
        ...     DictSource({"name": "billing", "environment": "staging"}),
        ...     EnvSource(prefix="BILLING_"),
        ...     overrides={"debug": True},
        ... )
    """
    merged: Dict[str, Any] = {}
    for src in sources:
        if not isinstance(src, TreeSource):
            raise ConfigurationError(f"Unknown configuration source type: {type(src)}")
        tree = src.get_tree()
        if not isinstance(tree, Mapping):
            raise ConfigurationError(f"Configuration source {type(src).__name__} did not produce a mapping")
        merged = _deep_merge(merged, dict(tree))
    if overrides:
        merged = _deep_merge(merged, dict(overrides))
    return ApplicationConfig.from_mapping(merged)
