"""SSH credential handling and dial error hints."""

from __future__ import annotations

import io
import logging
import os
from typing import Any

import paramiko
from paramiko import ECDSAKey, Ed25519Key, RSAKey

from windbag.shared.exceptions import AuthenticationError
from windbag.shared.models import WorkerEndpoint

logger = logging.getLogger(__name__)

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (RSAKey, Ed25519Key, ECDSAKey)

HINT_INVALID_KEY = "please check if the configured key or specified key file is a valid SSH Private Key"
HINT_NO_METHODS = (
    "please check if you are able to SSH to the node using the specified SSH Private Key "
    "and if you have configured the correct SSH username"
)
HINT_ENCRYPTED_KEY = (
    "using encrypted private keys is only supported using ssh-agent, "
    "please configure to use the `SSH_AUTH_SOCK` environment variable"
)
HINT_TIMEOUT = (
    "please check if the node is up and is accepting SSH connections "
    "or check network policies and firewall rules"
)

# Matched case-insensitively against the low-level error text, first hit wins.
_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("no key found", "not a valid", "invalid key", "could not parse"), HINT_INVALID_KEY),
    (("no supported methods remain", "authentication failed", "no authentication methods"), HINT_NO_METHODS),
    (("cannot decode encrypted private keys", "private key file is encrypted", "encrypted"), HINT_ENCRYPTED_KEY),
    (("operation timed out", "timed out", "timeout"), HINT_TIMEOUT),
)


def dial_hint(message: str) -> str | None:
    """Pick a human-actionable hint for a low-level dial error message."""
    lowered = message.lower()
    for patterns, hint in _HINTS:
        if any(p in lowered for p in patterns):
            return hint
    return None


def load_private_key(pem: str, certificate: str | None = None) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key, optionally attaching a signed certificate.

    Args:
        pem: Private key contents.
        certificate: ``ssh-*-cert-v01@openssh.com`` public certificate contents.

    Returns:
        The parsed key.

    Raises:
        AuthenticationError: If the key is encrypted or no supported key type parses it.
    """
    key: paramiko.PKey | None = None
    for key_class in _KEY_CLASSES:
        try:
            key = key_class.from_private_key(io.StringIO(pem))
            break
        except paramiko.PasswordRequiredException as exc:
            raise AuthenticationError(
                "failed to parse SSH private key: cannot decode encrypted private keys", hint=HINT_ENCRYPTED_KEY
            ) from exc
        except (paramiko.SSHException, ValueError):
            continue

    if key is None:
        raise AuthenticationError("failed to parse SSH private key: no key found", hint=HINT_INVALID_KEY)

    if certificate:
        try:
            key.load_certificate(paramiko.PublicBlob.from_string(certificate.strip()))
        except (ValueError, paramiko.SSHException) as exc:
            raise AuthenticationError(f"failed to parse SSH certificate: {exc}") from exc
    return key


def connect_kwargs(endpoint: WorkerEndpoint, *, timeout: float) -> dict[str, Any]:
    """Build ``paramiko.SSHClient.connect`` keyword arguments for ``endpoint``.

    Agent delegation is tried first: when requested and ``SSH_AUTH_SOCK`` is
    set, only agent keys are offered.

    Raises:
        AuthenticationError: If neither a password nor a private key is configured.
    """
    cred = endpoint.ssh
    if not cred.has_secret:
        raise AuthenticationError(
            f"cannot dial to SSH server {endpoint.address} as the authentication is incomplete"
        )

    kwargs: dict[str, Any] = {
        "hostname": endpoint.host,
        "port": endpoint.port,
        "username": cred.username,
        "timeout": timeout,
        "banner_timeout": timeout,
        "auth_timeout": timeout,
        "allow_agent": False,
        "look_for_keys": False,
    }

    if cred.with_agent:
        sock = os.environ.get("SSH_AUTH_SOCK")
        if sock:
            logger.debug("using SSH_AUTH_SOCK: %s", sock)
            kwargs["allow_agent"] = True
            return kwargs

    if cred.private_key:
        kwargs["pkey"] = load_private_key(cred.private_key, cred.certificate)
    if cred.password:
        kwargs["password"] = cred.password
    return kwargs
