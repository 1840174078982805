# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/stolos_bootstrap/config/loader.py

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from stolos_bootstrap.errors import ConfigError
from .models import BootstrapConfig

log = logging.getLogger("stolos")

SECRETS_ENV = "STOLOS_SECRETS_FILE"


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(config_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. STOLOS_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the bootstrap config
    """
    env = os.environ.get(SECRETS_ENV)
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("%s=%s does not exist, skipping", SECRETS_ENV, env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML (or JSON) file, expanding ${ENV_VAR} references."""
    try:
        raw = path.read_text()
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_config(path: str | Path) -> BootstrapConfig:
    """
    Load and validate a bootstrap config (YAML, or JSON which YAML accepts).

    OAuth client secrets usually live in a ``secrets.yaml`` with the same
    structure, discovered through ``STOLOS_SECRETS_FILE`` or next to the
    config file, and deep-merged before validation. ``${ENV_VAR}``
    placeholders are expanded in both files.
    """
    path = Path(path)
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    try:
        return BootstrapConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid bootstrap config {path}:\n{exc}") from exc
