#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Config loading and resolution for updatectl.yaml.

This module provides:
- load_config(): Load YAML config, resolve ${ENV} placeholders, return typed UpdatectlConfig
- parse_registries(): Turn registry declarations into engine credentials
- load_security_advisories(): Read the pre-computed vulnerability list
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import urlparse

import yaml
from marshmallow import EXCLUDE, ValidationError

from .errors import ConfigurationError
from .schema import Credential, RegistryConfig, SecurityAdvisory, UpdateConfig, UpdatectlConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "updatectl.yaml"

_PLACEHOLDER = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}")

# Registry types whose credential identifies the feed by `registry` (scheme stripped)
_REGISTRY_KEYED_TYPES = ("docker_registry", "npm_registry")
# Registry types that must not carry `url` in the credential
_URL_DROPPED_TYPES = ("docker_registry", "npm_registry", "terraform_registry", "python_index")


def resolve_placeholders(value: Any, environ: Dict[str, str] | None = None) -> Any:
    """
    Replace ${NAME} placeholders in every string of a parsed YAML document.

    Unset variables resolve to an empty string and are logged at warning.

    Args:
        value: Parsed YAML (dict, list or scalar)
        environ: Environment mapping (default: os.environ)

    Returns:
        A copy of value with placeholders substituted
    """
    if environ is None:
        environ = dict(os.environ)

    if isinstance(value, dict):
        return {k: resolve_placeholders(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_placeholders(v, environ) for v in value]
    if not isinstance(value, str):
        return value

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in environ:
            logger.warning(f"Environment variable '{name}' is not set; using an empty value")
            return ""
        return environ[name]

    return _PLACEHOLDER.sub(_substitute, value)


def _validate_updates(config: UpdatectlConfig) -> None:
    for index, update in enumerate(config.updates):
        if not update.directory and not update.directories:
            raise ConfigurationError(
                f"Update #{index} ({update.package_ecosystem}) must set 'directory' or 'directories'"
            )

    configured = set(config.registries)
    referenced = {name for update in config.updates for name in (update.registries or []) if name != "*"}

    missing = sorted(referenced - configured)
    if missing:
        raise ConfigurationError(f"Referenced registries {missing} have not been configured under 'registries'")

    uses_wildcard = any("*" in (update.registries or []) for update in config.updates)
    unreferenced = sorted(configured - referenced)
    if unreferenced and not uses_wildcard:
        raise ConfigurationError(f"Registries {unreferenced} are not referenced by any update")


def load_config(path: Path | str = DEFAULT_CONFIG_FILE, environ: Dict[str, str] | None = None) -> UpdatectlConfig:
    """
    Load and validate the runner configuration.

    Returns a fully typed, frozen UpdatectlConfig dataclass ready for use.

    Args:
        path: Path to the YAML configuration file
        environ: Environment used to resolve ${NAME} placeholders (default: os.environ)

    Returns:
        UpdatectlConfig frozen dataclass

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If config validation fails
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigurationError(f"Invalid config in {path}: expected a mapping at the top level")

    resolved = resolve_placeholders(raw_config, environ)

    try:
        config = UpdatectlConfig.Schema().load(resolved)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config in {path}: {e.messages}") from e

    assert isinstance(config, UpdatectlConfig)
    _validate_updates(config)
    parse_registries(config.registries)

    logger.info(f"Loaded config: {len(config.updates)} update(s) for {config.host.repository}")
    return config


def registry_to_credential(name: str, registry: RegistryConfig) -> Credential:
    """
    Map one registry declaration to the engine's credential record.

    The engine expects different locator fields per registry type:
    npm/docker use `registry`, terraform/composer use `host`, python
    indexes use `index-url`, everything else keeps `url`.

    Raises:
        ConfigurationError: If the registry is malformed
    """
    registry_type = registry.type.replace("-", "_")

    if registry_type == "hex_organization" and not registry.organization:
        raise ConfigurationError(f"Registry '{name}' of type '{registry.type}' is missing 'organization'")
    if registry_type == "hex_repository" and not registry.repo:
        raise ConfigurationError(f"Registry '{name}' of type '{registry.type}' is missing 'repo'")
    if not (registry.url or registry.host or registry.registry) and registry_type != "hex_organization":
        raise ConfigurationError(f"Registry '{name}' must set 'url', 'host' or 'registry'")

    url = registry.url
    host = registry.host
    locator = registry.registry
    index_url = None

    if url:
        parsed = urlparse(url)
        if parsed.scheme and parsed.hostname:
            if registry_type in _REGISTRY_KEYED_TYPES and not locator:
                locator = re.sub(r"^https?://", "", url)
            if not host and registry_type not in _REGISTRY_KEYED_TYPES:
                host = parsed.hostname
        if registry_type == "python_index":
            index_url = url
        if registry_type in _URL_DROPPED_TYPES:
            url = None

    return Credential(
        type=registry_type,
        host=host,
        url=url,
        registry=locator,
        index_url=index_url,
        username=registry.username,
        password=registry.password,
        token=registry.token,
        key=registry.key,
        auth_key=registry.auth_key,
        organization=registry.organization,
        repo=registry.repo,
        public_key_fingerprint=registry.public_key_fingerprint,
        replaces_base=registry.replaces_base,
    )


def parse_registries(registries: Dict[str, RegistryConfig]) -> Dict[str, Credential]:
    """Map every declared registry to a credential, keyed by registry name."""
    return {name: registry_to_credential(name, registry) for name, registry in registries.items()}


def registries_for_update(update: UpdateConfig, credentials: Dict[str, Credential]) -> List[Credential]:
    """Credentials an update block may use: its referenced registries, or all for '*'."""
    names = update.registries or []
    if "*" in names:
        return list(credentials.values())
    return [credentials[name] for name in names if name in credentials]


def select_updates(config: UpdatectlConfig) -> List[tuple[int, UpdateConfig]]:
    """Return (index, update) pairs, limited to reconcile.target_update_ids when set."""
    targets = set(config.reconcile.target_update_ids)
    return [(i, update) for i, update in enumerate(config.updates) if not targets or i in targets]


def load_security_advisories(path: Path | str) -> List[SecurityAdvisory]:
    """
    Load pre-computed security advisories from a JSON file.

    The file holds a list of advisory records; unknown keys are ignored.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If the file is not a valid advisory list
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Security advisories file not found: {path}")

    try:
        with open(path) as f:
            data = json.load(f)
        advisories = SecurityAdvisory.Schema(many=True).load(data, unknown=EXCLUDE)
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid security advisories in {path}: {e}") from e

    logger.debug(f"Loaded {len(advisories)} security advisories from {path}")
    return list(advisories)
