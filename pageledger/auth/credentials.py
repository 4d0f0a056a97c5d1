"""Keyring-backed storage of archive passwords, keyed by archive path."""

import hashlib
import logging
from typing import Optional

import keyring
import keyring.errors

log = logging.getLogger(__name__)

DEFAULT_SERVICE = "PageLedger-ArchivePasswords"


def _account_for_path(path: str) -> str:
    """Keyring account name for an archive path (hashed so paths do not show up in the keychain UI)."""
    return hashlib.sha256(path.encode("utf-8")).hexdigest()


class PasswordStore:
    """
    Stores archive passwords in the OS keyring (Windows Credential Manager,
    macOS Keychain, Linux Secret Service). The history ledger calls
    delete_password when an entry is removed.
    """

    def __init__(self, service: str = DEFAULT_SERVICE) -> None:
        self.service = service

    def save_password(self, path: str, password: str) -> None:
        """Store password for the archive at path."""
        keyring.set_password(self.service, _account_for_path(path), password)

    def get_password(self, path: str) -> Optional[str]:
        """
        Return the stored password for path, or None.
        On keyring read error returns None so the caller can ask again and overwrite it.
        """
        try:
            return keyring.get_password(self.service, _account_for_path(path))
        except Exception as e:
            log.warning("Could not read stored password: %s", e)
            return None

    def delete_password(self, path: str) -> None:
        """Remove the stored password for path; missing entries are ignored."""
        try:
            keyring.delete_password(self.service, _account_for_path(path))
        except keyring.errors.PasswordDeleteError:
            pass
