"""Config Loader - Builds ClientConfig from YAML files or the environment.

YAML files support ${ENV_VAR} substitution so secrets such as the service
token need not be written to disk. config_from_env() reads the variables the
CI platform exports to every step.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError as PydanticValidationError

from ti_client.models import ClientConfig

# Environment variables exported by the platform.
TI_SERVICE_ENDPOINT_ENV = "HARNESS_TI_SERVICE_ENDPOINT"
TI_SERVICE_TOKEN_ENV = "HARNESS_TI_SERVICE_TOKEN"
ACCOUNT_ID_ENV = "HARNESS_ACCOUNT_ID"
ORG_ID_ENV = "HARNESS_ORG_ID"
PROJECT_ID_ENV = "HARNESS_PROJECT_ID"
PIPELINE_ID_ENV = "HARNESS_PIPELINE_ID"
BUILD_ID_ENV = "HARNESS_BUILD_ID"
STAGE_ID_ENV = "HARNESS_STAGE_ID"
STEP_ID_ENV = "HARNESS_STEP_ID"
INFRA_ENV = "HARNESS_INFRA"
REPO_LINK_ENV = "DRONE_REPO_LINK"
COMMIT_SHA_ENV = "DRONE_COMMIT_SHA"
COMMIT_LINK_ENV = "DRONE_COMMIT_LINK"
SKIP_VERIFY_ENV = "HARNESS_TI_SKIP_VERIFY"
ADDITIONAL_CERTS_DIR_ENV = "HARNESS_ADDITIONAL_CERTS_DIR"
MTLS_CERTS_ENV = "HARNESS_MTLS_CERTS"
MTLS_KEY_ENV = "HARNESS_MTLS_KEY"

VM_INFRA = "VM"

_ENV_FIELDS = {
    "endpoint": TI_SERVICE_ENDPOINT_ENV,
    "token": TI_SERVICE_TOKEN_ENV,
    "account_id": ACCOUNT_ID_ENV,
    "org_id": ORG_ID_ENV,
    "project_id": PROJECT_ID_ENV,
    "pipeline_id": PIPELINE_ID_ENV,
    "build_id": BUILD_ID_ENV,
    "stage_id": STAGE_ID_ENV,
    "repo": REPO_LINK_ENV,
    "sha": COMMIT_SHA_ENV,
    "commit_link": COMMIT_LINK_ENV,
    "additional_certs_dir": ADDITIONAL_CERTS_DIR_ENV,
    "mtls_client_cert": MTLS_CERTS_ENV,
    "mtls_client_key": MTLS_KEY_ENV,
}

_TRUE_VALUES = {"1", "t", "true", "yes", "on"}

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


class ConfigError(Exception):
    """Raised when configuration loading fails."""


def load_client_config(config_path: Path | str) -> ClientConfig:
    """Load client configuration from YAML with ${ENV_VAR} substitution."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return ClientConfig.model_validate(raw_config)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def config_from_env(environ: Mapping[str, str] | None = None, **overrides: Any) -> ClientConfig:
    """Build a ClientConfig from platform environment variables.

    Missing variables become empty strings; operations validate what they
    need when called. Keyword overrides win over the environment.
    """
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {field: env.get(name, "") for field, name in _ENV_FIELDS.items()}
    values["skip_verify"] = env.get(SKIP_VERIFY_ENV, "").strip().lower() in _TRUE_VALUES
    values.update(overrides)
    try:
        return ClientConfig.model_validate(values)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid config from environment: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_PATTERN.sub(replacer, s)
