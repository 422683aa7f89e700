"""
Secure credential storage for the authpipe client.

This module persists the access/refresh token pair using the system keyring
or an encrypted file as fallback, so credentials survive process restarts.
"""

import os
import json
import logging
import threading
from pathlib import Path
from typing import Optional, Dict, Any

import keyring
from cryptography.fernet import Fernet, InvalidToken

from authpipe.shared.exceptions import CredentialStoreError, ErrorCode
from authpipe.shared.interfaces import ICredentialStore
from authpipe.shared.models import Credentials

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = 'access_token'
REFRESH_TOKEN_KEY = 'refresh_token'

# Both tokens live in one keyring entry / one file so they change together
CREDENTIALS_ENTRY = 'credentials'


def _write_private(path: Path, data: bytes) -> None:
    """Create a new file readable only by the owner and write data to it."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)


class SecureCredentialStore(ICredentialStore):
    """
    Durable storage for the current access/refresh token pair.

    Uses the system keyring when available, falls back to a Fernet-encrypted
    file. All reads and writes are serialized so a reader never observes a
    half-updated pair.
    """

    def __init__(
        self,
        service_name: str = "authpipe",
        storage_dir: Optional[str] = None,
        use_keyring: bool = True
    ):
        self.service_name = service_name
        self.keyring_available = use_keyring and self._check_keyring_availability()
        self.storage_path = self._get_storage_path(storage_dir)
        self.key_path = self.storage_path.with_suffix('.key')

        self._lock = threading.Lock()
        self._encryption_key: Optional[bytes] = None

        logger.info(f"Credential storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        test_key = f"{self.service_name}_test"
        try:
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_storage_path(self, storage_dir: Optional[str]) -> Path:
        """Get path for encrypted file storage."""
        if storage_dir:
            config_dir = Path(storage_dir).expanduser()
        else:
            xdg_config = os.environ.get('XDG_CONFIG_HOME')
            if xdg_config:
                config_dir = Path(xdg_config) / 'authpipe'
            else:
                config_dir = Path.home() / '.config' / 'authpipe'

        return config_dir / 'credentials.enc'

    def _get_encryption_key(self) -> bytes:
        """Get or create the encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            _write_private(self.key_path, key)
        except FileExistsError:
            # Another process created the key first
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        self._encryption_key = key
        return key

    def get(self) -> Credentials:
        """
        Read the stored credentials.

        Returns:
            Credentials, with None for any token that is not stored

        Raises:
            CredentialStoreError: If the backing storage cannot be read
        """
        with self._lock:
            try:
                if self.keyring_available:
                    data = self._read_keyring()
                else:
                    data = self._read_file()
            except CredentialStoreError:
                raise
            except Exception as e:
                logger.error(f"Failed to read credentials: {e}")
                raise CredentialStoreError(
                    f"Failed to read credentials: {e}",
                    error_code=ErrorCode.STORAGE_READ_FAILED,
                    cause=e
                )

        return Credentials.from_dict(data) if data else Credentials()

    def set(self, credentials: Credentials) -> None:
        """
        Replace the stored credentials.

        Args:
            credentials: New token pair

        Raises:
            CredentialStoreError: If the backing storage cannot be written
        """
        data = credentials.to_dict()

        with self._lock:
            try:
                if self.keyring_available:
                    self._write_keyring(data)
                else:
                    self._write_file(data)
            except Exception as e:
                logger.error(f"Failed to store credentials: {e}")
                raise CredentialStoreError(
                    f"Failed to store credentials: {e}",
                    error_code=ErrorCode.STORAGE_WRITE_FAILED,
                    cause=e
                )

        logger.debug("Credentials stored")

    def clear(self) -> None:
        """
        Remove both tokens from durable storage.

        Raises:
            CredentialStoreError: If the backing storage cannot be written
        """
        with self._lock:
            try:
                if self.keyring_available:
                    self._delete_keyring()
                else:
                    self._delete_file()
            except Exception as e:
                logger.error(f"Failed to clear credentials: {e}")
                raise CredentialStoreError(
                    f"Failed to clear credentials: {e}",
                    error_code=ErrorCode.STORAGE_WRITE_FAILED,
                    cause=e
                )

        logger.info("Stored credentials cleared")

    def _read_keyring(self) -> Optional[Dict[str, Any]]:
        value = keyring.get_password(self.service_name, CREDENTIALS_ENTRY)
        return json.loads(value) if value else None

    def _write_keyring(self, data: Dict[str, Any]) -> None:
        keyring.set_password(self.service_name, CREDENTIALS_ENTRY, json.dumps(data))

    def _delete_keyring(self) -> None:
        if keyring.get_password(self.service_name, CREDENTIALS_ENTRY) is not None:
            keyring.delete_password(self.service_name, CREDENTIALS_ENTRY)

    def _read_file(self) -> Optional[Dict[str, Any]]:
        """Read and decrypt the credentials file."""
        if not self.storage_path.exists():
            return None

        encrypted_data = self.storage_path.read_bytes()
        try:
            decrypted_data = Fernet(self._get_encryption_key()).decrypt(encrypted_data)
        except InvalidToken:
            raise CredentialStoreError(
                f"Credentials file {self.storage_path} cannot be decrypted",
                error_code=ErrorCode.STORAGE_READ_FAILED
            )
        return json.loads(decrypted_data.decode('utf-8'))

    def _write_file(self, data: Dict[str, Any]) -> None:
        """Encrypt and atomically replace the credentials file."""
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        encrypted_data = Fernet(self._get_encryption_key()).encrypt(json.dumps(data).encode('utf-8'))

        tmp_path = self.storage_path.with_suffix('.tmp')
        if tmp_path.exists():
            tmp_path.unlink()
        _write_private(tmp_path, encrypted_data)
        os.replace(tmp_path, self.storage_path)

    def _delete_file(self) -> None:
        if self.storage_path.exists():
            self.storage_path.unlink()


class InMemoryCredentialStore(ICredentialStore):
    """Process-local credential store with no persistence."""

    def __init__(self, credentials: Optional[Credentials] = None):
        self._lock = threading.Lock()
        self._credentials = credentials or Credentials()

    def get(self) -> Credentials:
        with self._lock:
            return self._credentials

    def set(self, credentials: Credentials) -> None:
        with self._lock:
            self._credentials = credentials

    def clear(self) -> None:
        with self._lock:
            self._credentials = Credentials()
