"""
FLUXWARDEN credential vault.

Per-node storage of session credentials. Credentials are sealed with a
process-lifetime Fernet key when sealing is enabled; otherwise they are kept
as plain opaque bytes (degraded mode, reported once per process).
Nothing here is ever written to disk.
"""

from __future__ import annotations

import logging
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from fluxwarden.control_plane.registry import NodeRegistry
from fluxwarden.shared.errors import SealingError
from fluxwarden.shared.logging import RedactingFilter, get_redactor

logger = logging.getLogger("fluxwarden.vault")


class SecretStore(Protocol):
    """Sealing capability."""

    sealing: bool

    def seal(self, data: bytes) -> bytes: ...

    def unseal(self, sealed: bytes) -> bytes: ...


class FernetSecretStore:
    """Seals with a random key that lives only as long as the process."""

    sealing = True

    def __init__(self, key: bytes | None = None) -> None:
        self._fernet = Fernet(key or Fernet.generate_key())

    def seal(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def unseal(self, sealed: bytes) -> bytes:
        return self._fernet.decrypt(sealed)


class PassthroughSecretStore:
    """No sealing available: bytes are stored as given."""

    sealing = False

    def seal(self, data: bytes) -> bytes:
        return data

    def unseal(self, sealed: bytes) -> bytes:
        return sealed


def select_secret_store(seal_credentials: bool = True) -> SecretStore:
    """Pick the secret store once at startup."""
    if seal_credentials:
        return FernetSecretStore()
    return PassthroughSecretStore()


class CredentialVault:
    """
    Stores node credentials on the registry's Node records.

    Every stored token is registered with the log redactor so it can never
    appear in a log line, and released again once no node holds it.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        secret_store: SecretStore,
        redactor: RedactingFilter | None = None,
    ) -> None:
        self.registry = registry
        self.secret_store = secret_store
        self.redactor = redactor or get_redactor()
        self._degraded_reported = False

    @property
    def degraded(self) -> bool:
        return not self.secret_store.sealing

    def store(self, node_id: str, raw_token: str) -> None:
        node = self.registry.require(node_id)
        previous = self._peek(node_id)
        self.redactor.add_secret(raw_token)
        data = raw_token.encode("utf-8")
        if self.secret_store.sealing:
            node.credential = self.secret_store.seal(data)
            node.credential_sealed = True
        else:
            if not self._degraded_reported:
                logger.warning(
                    "Credential sealing unavailable; storing session tokens unsealed in memory."
                )
                self._degraded_reported = True
            node.credential = data
            node.credential_sealed = False
        node.authenticated = True
        if previous is not None and previous != raw_token:
            self._release_secret(previous)

    def retrieve(self, node_id: str) -> str | None:
        node = self.registry.require(node_id)
        if node.credential is None:
            return None
        if not node.credential_sealed:
            return node.credential.decode("utf-8")
        try:
            return self.secret_store.unseal(node.credential).decode("utf-8")
        except InvalidToken as exc:
            raise SealingError(node_id, "invalid token or key") from exc

    def _peek(self, node_id: str) -> str | None:
        try:
            return self.retrieve(node_id)
        except SealingError:
            return None

    def _release_secret(self, token: str) -> None:
        """Stop masking a token once no node holds it any more."""
        for node in self.registry:
            if node.credential is not None and self._peek(node.node_id) == token:
                return
        self.redactor.discard_secret(token)

    def clear(self, node_id: str) -> bool:
        """Forget a node's credential. Returns True if one was present."""
        node = self.registry.require(node_id)
        previous = self._peek(node_id)
        had_credential = node.credential is not None
        node.credential = None
        node.credential_sealed = False
        node.authenticated = False
        if previous is not None:
            self._release_secret(previous)
        return had_credential

    def has_credential(self, node_id: str) -> bool:
        return self.registry.require(node_id).credential is not None
