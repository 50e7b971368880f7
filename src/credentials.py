"""
Credential resolution - turns a secret payload into registry credentials.

The only supported secret format is the one created by
``kubectl create secret docker-registry``: a ``kubernetes.io/dockerconfigjson``
secret whose ``.dockerconfigjson`` key holds a Docker config document.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple, Union

from errors import (
    CredentialNotFound,
    InvalidCredentialPayload,
    UnsupportedCredentialType,
)
from models import Secret

logger = logging.getLogger(__name__)

DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"


@dataclass(frozen=True)
class BasicAuthenticator:
    """Username/password credentials, sent as HTTP basic auth or to a token realm."""

    username: str
    password: str = field(repr=False)

    kind = "basic"

    def credentials(self) -> Tuple[str, str]:
        return self.username, self.password


@dataclass(frozen=True)
class BearerAuthenticator:
    """A registry token sent verbatim as a bearer token."""

    token: str = field(repr=False)

    kind = "bearer"


Authenticator = Union[BasicAuthenticator, BearerAuthenticator]


def _auths_section(config: Mapping[str, Any]) -> Mapping[str, Any]:
    # The document's top-level key is matched case-insensitively
    for key, value in config.items():
        if key.lower() == "auths":
            if not isinstance(value, Mapping):
                raise InvalidCredentialPayload("auths must be an object")
            return value
    return {}


def _authenticator_from_entry(entry: Mapping[str, Any]) -> Authenticator:
    """Build an authenticator from one ``auths`` entry."""
    if not isinstance(entry, Mapping):
        raise InvalidCredentialPayload("auth entry must be an object")

    username = entry.get("username") or ""
    password = entry.get("password") or ""
    if username or password:
        return BasicAuthenticator(username=username, password=password)

    encoded = entry.get("auth")
    if encoded:
        try:
            decoded = base64.b64decode(encoded, validate=True).decode()
        except (binascii.Error, TypeError, UnicodeDecodeError) as e:
            raise InvalidCredentialPayload(f"invalid auth field: {e}")
        user, sep, secret = decoded.partition(":")
        if not sep:
            raise InvalidCredentialPayload("auth field must be user:password")
        return BasicAuthenticator(username=user, password=secret)

    token = entry.get("registrytoken")
    if token:
        return BearerAuthenticator(token=token)

    raise InvalidCredentialPayload("auth entry has no usable credentials")


def resolve(
    payload: Union[bytes, str, Mapping[str, Any]],
    secret_type: str,
    registry_host: str,
    secret_name: Optional[str] = None,
) -> Authenticator:
    """
    Resolve credentials for a registry from a secret payload.

    Args:
        payload: The Docker config document (raw JSON or already decoded).
        secret_type: The secret's type tag.
        registry_host: Registry host to look up; matched exactly.
        secret_name: ``namespace/name`` of the secret, for error messages.

    Returns:
        An authenticator for the registry.

    Raises:
        UnsupportedCredentialType: The type tag is not dockerconfigjson.
        InvalidCredentialPayload: The payload is not a valid config document.
        CredentialNotFound: The document has no entry for the host.
    """
    if secret_type != DOCKER_CONFIG_JSON_TYPE:
        raise UnsupportedCredentialType(secret_type)

    if isinstance(payload, Mapping):
        config = payload
    else:
        try:
            config = json.loads(payload)
        except (ValueError, TypeError) as e:
            raise InvalidCredentialPayload(f"invalid docker config: {e}")
        if not isinstance(config, dict):
            raise InvalidCredentialPayload("docker config must be an object")

    auths = _auths_section(config)
    if registry_host not in auths:
        raise CredentialNotFound(registry_host, secret_name)

    authenticator = _authenticator_from_entry(auths[registry_host])
    logger.debug(
        f"Resolved {authenticator.kind} credentials for {registry_host} "
        f"from secret {secret_name}"
    )
    return authenticator


def authenticator_from_secret(secret: Secret, registry_host: str) -> Authenticator:
    """Resolve credentials for ``registry_host`` from a stored secret."""
    if secret.type != DOCKER_CONFIG_JSON_TYPE:
        raise UnsupportedCredentialType(secret.type)

    payload = secret.data.get(DOCKER_CONFIG_JSON_KEY)
    if payload is None:
        raise InvalidCredentialPayload(
            f"secret {secret.key} has no {DOCKER_CONFIG_JSON_KEY} key"
        )
    return resolve(payload, secret.type, registry_host, str(secret.key))