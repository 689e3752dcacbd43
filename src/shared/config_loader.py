"""Завантаження YAML конфігурацій."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from src.shared.errors import ConfigurationError

log = logging.getLogger(__name__)


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Зчитує YAML файл та повертає його вміст як dict.

    Args:
        path: Шлях до файлу.

    Returns:
        Вміст файлу як словник (порожній, якщо файл порожній).

    Raises:
        FileNotFoundError: Якщо файл не знайдено.
        ConfigurationError: Якщо YAML некоректний або корінь не є mapping.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {p} must be a mapping, got {type(data).__name__}")
    log.debug("Loaded config %s (%d top-level keys)", p.name, len(data or {}))
    return data or {}


def load_optional_yaml(path: str | Path) -> dict[str, Any]:
    """Як ``load_yaml``, але відсутній файл дає порожній dict."""
    p = Path(path)
    if not p.exists():
        log.info("Optional config %s not found, using defaults", p)
        return {}
    return load_yaml(p)


def section(cfg: dict[str, Any], key: str) -> dict[str, Any]:
    """Повертає вкладену секцію конфігурації, перевіряючи її тип.

    Raises:
        ConfigurationError: Якщо секція існує, але не є mapping.
    """
    value = cfg.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{key}' must be a mapping")
    return value
