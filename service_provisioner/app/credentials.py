"""
Encryption of generated SSH private keys before they are stored.
"""

import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from shared.errors import ClawCloudException
from shared.logging import get_logger

logger = get_logger("provisioner.credentials")


class CredentialVault:
    """
    Encrypts generated private keys for storage and decrypts them when a
    create is repeated with the same key pair.
    """

    def __init__(self, master_key: Optional[str] = None, salt: bytes = b"clawcloud-credentials"):
        """
        Initialize the vault.

        Args:
            master_key: Master key the Fernet key is derived from. When omitted
                an ephemeral key is generated and stored credentials become
                unreadable after a restart.
            salt: PBKDF2 salt
        """
        if master_key:
            self._fernet = Fernet(self._derive_key(master_key, salt))
            self.ephemeral = False
        else:
            logger.warning("No credential key configured, using an ephemeral key")
            self._fernet = Fernet(Fernet.generate_key())
            self.ephemeral = True

    @staticmethod
    def _derive_key(master_key: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(master_key.encode()))

    def encrypt(self, secret: str) -> str:
        """
        Encrypt a secret.

        Args:
            secret: Plain text, e.g. an OpenSSH private key

        Returns:
            Fernet token as text
        """
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a secret produced by ``encrypt``.

        Raises:
            ClawCloudException: if the token was not produced with this key
        """
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            logger.error("Failed to decrypt credential")
            raise ClawCloudException("CREDENTIAL_DECRYPT_FAILED", "Credential cannot be decrypted") from e
