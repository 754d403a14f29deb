"""OS keyring access, keyed by the vault's opaque id."""
import logging

import keyring

from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "lockvault"


class KeyringStore:
    def __init__(self, service: str = SERVICE_NAME) -> None:
        self.service = service

    def save(self, vault_id: str, secret: bytes | bytearray) -> None:
        keyring.set_password(self.service, vault_id, bytes(secret).decode("utf-8"))

    def get(self, vault_id: str) -> bytearray | None:
        """Stored secret as a buffer the caller must zero, or None if there is none."""
        value = keyring.get_password(self.service, vault_id)
        if value is None:
            return None
        return bytearray(value.encode("utf-8"))

    def delete(self, vault_id: str) -> bool:
        try:
            keyring.delete_password(self.service, vault_id)
        except PasswordDeleteError:
            return False
        return True

    def has(self, vault_id: str) -> bool:
        try:
            return keyring.get_password(self.service, vault_id) is not None
        except KeyringError as e:
            logger.debug("keyring unavailable: %s", e)
            return False
