"""
GPG encryption for backup archives.

Public keys are fetched from a key server into a private keyring and archives
are encrypted for that key before upload.
"""

import os
import shutil
import logging
import tempfile
from typing import Optional

import gnupg

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when key retrieval or encryption fails."""
    pass


class GPGEncryptor:
    """Encrypts files for a single recipient fetched from a key server."""

    def __init__(self, gnupghome: Optional[str] = None):
        """
        Initialize the encryptor.

        Args:
            gnupghome: Keyring directory. A private temporary keyring is
                created on first use when omitted.
        """
        self.gnupghome = gnupghome
        self.fingerprint = None
        self._gpg = None
        self._owns_home = False

    @property
    def gpg(self) -> gnupg.GPG:
        """Lazily created gnupg handle (requires the gpg binary)."""
        if self._gpg is None:
            if self.gnupghome is None:
                self.gnupghome = tempfile.mkdtemp(prefix='arclift_gnupg_')
                self._owns_home = True
            try:
                self._gpg = gnupg.GPG(gnupghome=self.gnupghome)
            except (OSError, ValueError) as e:
                raise EncryptionError(f"Failed to initialize gpg: {e}")
        return self._gpg

    def fetch_public_key(self, key_id: str, key_server: str):
        """
        Import a public key from a key server.

        Args:
            key_id: Key ID or fingerprint
            key_server: Key server host, e.g. keyserver.ubuntu.com

        Raises:
            EncryptionError: If no key could be imported
        """
        logger.debug(f"Receiving key {key_id} from {key_server}")
        result = self.gpg.recv_keys(key_server, key_id)

        if not result.fingerprints:
            raise EncryptionError(f"Failed to fetch public key {key_id} from {key_server}")

        self.fingerprint = result.fingerprints[0]
        logger.info(f"Imported public key {self.fingerprint}")

    def encrypt_file(self, path: str) -> str:
        """
        Encrypt a file for the fetched key.

        Args:
            path: File to encrypt

        Returns:
            Path of the encrypted file ({path}.gpg)

        Raises:
            EncryptionError: If no key is loaded or encryption fails
        """
        if not self.fingerprint:
            raise EncryptionError("No public key loaded. Call fetch_public_key() first.")

        output_path = f"{path}.gpg"

        try:
            with open(path, 'rb') as f:
                result = self.gpg.encrypt_file(
                    f,
                    recipients=[self.fingerprint],
                    output=output_path,
                    armor=False,
                    always_trust=True
                )
        except OSError as e:
            raise EncryptionError(f"Failed to read {path}: {e}")

        if not result.ok:
            if os.path.exists(output_path):
                os.remove(output_path)
            raise EncryptionError(f"Encryption failed: {result.status}")

        return output_path

    def close(self):
        """
        Drop the gpg handle and the imported key.

        A temporary keyring created by this encryptor is deleted; a keyring
        passed in by the caller is left alone. The encryptor can be used
        again afterwards.
        """
        self._gpg = None
        self.fingerprint = None

        if self._owns_home and self.gnupghome:
            try:
                shutil.rmtree(self.gnupghome)
            except OSError as e:
                logger.warning(f"Failed to remove temporary keyring {self.gnupghome}: {e}")
            self.gnupghome = None
            self._owns_home = False
