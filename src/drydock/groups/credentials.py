"""Credential mapping — credential contract values to container env and files.

A template's ``credential_mapping.env`` maps target env var names to credential
field names. A trailing ``?`` marks the field optional::

    {"AWS_ACCESS_KEY_ID": "accessKeyId", "AWS_SESSION_TOKEN": "sessionToken?"}
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from drydock.errors import ConfigurationError

DEFAULT_AWS_REGION = "us-east-1"


def map_to_env(credential: Mapping[str, Any], mapping: Mapping[str, str]) -> dict[str, str]:
    """Resolve *mapping* against *credential*.

    Raises ConfigurationError naming the first required field that is missing
    or None. Optional fields that are absent are left out.
    """
    env: dict[str, str] = {}
    for env_key, field in mapping.items():
        optional = field.endswith("?")
        key = field[:-1] if optional else field
        value = credential.get(key)
        if value is not None:
            env[env_key] = str(value)
        elif not optional:
            raise ConfigurationError(
                f"Required credential field missing: {key}",
                details={"field": key, "env": env_key},
            )
    return env


def map_to_files(credential: Mapping[str, Any]) -> dict[str, str] | None:
    """Render AWS ``credentials`` and ``config`` INI files, or None for non-AWS shapes."""
    access_key = credential.get("accessKeyId")
    secret_key = credential.get("secretAccessKey")
    if not access_key or not secret_key:
        return None

    creds = [
        "[default]",
        f"aws_access_key_id = {access_key}",
        f"aws_secret_access_key = {secret_key}",
    ]
    if credential.get("sessionToken"):
        creds.append(f"aws_session_token = {credential['sessionToken']}")

    region = credential.get("region") or DEFAULT_AWS_REGION
    config = ["[default]", f"region = {region}", "output = json"]

    return {"credentials": "\n".join(creds), "config": "\n".join(config)}
