"""Resolution of object store credentials from an external source."""

from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

from pydantic import BaseModel, SecretStr

from .config import CredentialsConfig
from .errors import ConfigError


class Credentials(BaseModel):
    """Access key pair; the secret never shows up in repr() or logs."""

    access_key_id: SecretStr
    secret_access_key: SecretStr


def resolve_credentials(
    config: CredentialsConfig, environ: Optional[Mapping[str, str]] = None
) -> Optional[Credentials]:
    """
    Resolve credentials once at startup.

    Args:
        config: Credential provider configuration
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Credentials for the 'env' provider, None for 'default' so that boto3
        falls back to its own credential chain (instance profile, ~/.aws, ...)

    Raises:
        ConfigError: if a required variable is missing or empty
    """
    logger = logging.getLogger(__name__)

    if config.provider == "default":
        logger.debug("Using boto3 default credential chain")
        return None

    if environ is None:
        environ = os.environ

    missing = [
        name
        for name in (config.access_key_id_var, config.secret_access_key_var)
        if not environ.get(name)
    ]
    if missing:
        raise ConfigError(
            f"Missing credential environment variables: {', '.join(missing)}"
        )

    logger.debug(
        f"Credentials resolved from ${config.access_key_id_var} and ${config.secret_access_key_var}"
    )
    return Credentials(
        access_key_id=environ[config.access_key_id_var],
        secret_access_key=environ[config.secret_access_key_var],
    )
