"""Registry credential lookup keyed by normalised hostname."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from docker.auth import INDEX_NAME, INDEX_URL, convert_to_hostname

from windbag.docker.image import ImageReference
from windbag.shared.models import RegistryCredential

logger = logging.getLogger(__name__)

_INDEX_ALIASES = (INDEX_NAME, "index.docker.io")


def normalize_registry_address(address: str) -> str:
    """``docker.io`` -> ``https://index.docker.io/v1/``, bare hosts gain ``https://``."""
    if address in _INDEX_ALIASES:
        return INDEX_URL
    if not address.startswith(("https://", "http://")):
        return f"https://{address}"
    return address


def registry_hostname(address: str) -> str:
    return convert_to_hostname(normalize_registry_address(address))


@dataclass(frozen=True, slots=True)
class RegistryAuth:
    """One stored credential."""

    address: str
    server_address: str
    username: str
    password: str
    login_timeout: int = 300


class RegistryAuthStore:
    """In-memory credential table; a later registration for a hostname replaces the earlier one."""

    def __init__(self) -> None:
        self._auths: dict[str, RegistryAuth] = {}

    @classmethod
    def from_credentials(cls, credentials: Iterable[RegistryCredential]) -> RegistryAuthStore:
        store = cls()
        for cred in credentials:
            store.register([cred.address], cred.username, cred.password, login_timeout=cred.login_timeout)
        return store

    def register(self, addresses: Iterable[str], username: str, password: str, *, login_timeout: int = 300) -> str:
        """Store one credential under every address's hostname.

        Returns:
            The hostname of the last address, or ``""`` if none were given.
        """
        last = ""
        for address in addresses:
            server = normalize_registry_address(address)
            hostname = convert_to_hostname(server)
            if hostname in self._auths:
                logger.debug("replacing registry credential for %s", hostname)
            self._auths[hostname] = RegistryAuth(
                address=address,
                server_address=server,
                username=username,
                password=password,
                login_timeout=login_timeout,
            )
            last = hostname
        return last

    def lookup(self, image_or_host: str) -> RegistryAuth | None:
        """Find the credential for a registry host or for the registry of an image."""
        direct = self._auths.get(registry_hostname(image_or_host))
        if direct is not None:
            return direct
        ref = ImageReference.parse(image_or_host)
        return self._auths.get(registry_hostname(ref.registry))

    def __iter__(self) -> Iterator[RegistryAuth]:
        return iter(self._auths.values())

    def __len__(self) -> int:
        return len(self._auths)
