"""
Configuration loading for the flash arbitrage engine.

Reads the YAML file once at startup, validates it against
``config_schema.ArbitrageConfig`` and resolves secrets from the environment
(a ``.env`` file next to the process is honoured).
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from .config_schema import ArbitrageConfig
from .exceptions import ConfigurationError


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if config_dict is None:
        raise ConfigurationError(f"Empty configuration file: {config_path}")
    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Top level of {config_path} must be a mapping")

    return config_dict


def parse_config(config_dict: Dict[str, Any]) -> ArbitrageConfig:
    """Validate a configuration dictionary."""
    try:
        return ArbitrageConfig(**config_dict)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e.error_count()} error(s)",
            {"errors": e.errors(include_url=False)},
        ) from e


def load_config(
    config_path: Union[str, Path], env_file: Optional[Union[str, Path]] = None
) -> ArbitrageConfig:
    """
    Load, validate and freeze the runtime configuration.

    Environment overrides: ``ARB_RPC_URL`` replaces ``rpc_url`` and
    ``ARB_PROGRAM_ADDRESS`` replaces ``program_address``.

    Raises:
        ConfigurationError: If the file is missing, malformed or invalid
    """
    load_dotenv(env_file)

    config_dict = load_yaml_config(config_path)

    rpc_override = os.getenv("ARB_RPC_URL")
    if rpc_override:
        config_dict["rpc_url"] = rpc_override
    program_override = os.getenv("ARB_PROGRAM_ADDRESS")
    if program_override:
        config_dict["program_address"] = program_override

    return parse_config(config_dict)


def resolve_private_key(config: ArbitrageConfig) -> str:
    """Read the signing key named by ``private_key_env`` from the environment."""
    key = os.getenv(config.private_key_env)
    if not key:
        raise ConfigurationError(
            f"Missing signing key: environment variable {config.private_key_env} is not set"
        )
    return key
