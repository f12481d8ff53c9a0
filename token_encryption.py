"""
Secret Encryption Module

Encrypts TOTP shared secrets before they are written to the user record in
Redis. Uses AES-256-GCM; the user id is bound in as associated data so a
ciphertext copied onto another user's record fails to decrypt.
"""

import base64
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


class SecretEncryption:
    """
    Encrypts/decrypts MFA secrets using AES-256-GCM.

    Stored format is base64(nonce || ciphertext || tag).
    """

    KEY_SIZE = 32  # 256 bits for AES-256
    NONCE_SIZE = 12  # 96 bits recommended for GCM
    TAG_SIZE = 16

    def __init__(self, master_key: str):
        """
        Initialize secret encryption.

        Args:
            master_key: Base64-encoded 32-byte key (MFA_ENCRYPTION_KEY)

        Raises:
            ValueError: If the key is missing or malformed
        """
        if not master_key:
            raise ValueError(
                "MFA_ENCRYPTION_KEY is empty. Generate a key with: "
                "python -c 'import os,base64; print(base64.b64encode(os.urandom(32)).decode())'"
            )

        try:
            key_bytes = base64.b64decode(master_key, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {e}")

        if len(key_bytes) != self.KEY_SIZE:
            raise ValueError(f"Master key must be {self.KEY_SIZE} bytes (got {len(key_bytes)})")

        self.cipher = AESGCM(key_bytes)
        logging.info("MFA secret encryption initialized with AES-256-GCM")

    @staticmethod
    def generate_key() -> str:
        """Return a fresh base64 key suitable for MFA_ENCRYPTION_KEY."""
        return base64.b64encode(os.urandom(SecretEncryption.KEY_SIZE)).decode('ascii')

    def encrypt(self, plaintext: str, context: str) -> str:
        """
        Encrypt a secret for one user.

        Args:
            plaintext: Secret to encrypt
            context: Owner id, authenticated but not encrypted

        Returns:
            Base64-encoded nonce || ciphertext || tag
        """
        nonce = os.urandom(self.NONCE_SIZE)
        sealed = self.cipher.encrypt(nonce, plaintext.encode('utf-8'), context.encode('utf-8'))
        return base64.b64encode(nonce + sealed).decode('ascii')

    def decrypt(self, ciphertext_b64: str, context: str) -> str:
        """
        Decrypt a secret previously sealed for the same owner.

        Args:
            ciphertext_b64: Output of encrypt()
            context: Owner id used at encryption time

        Returns:
            Plaintext secret

        Raises:
            ValueError: If the data is truncated, tampered or sealed for someone else
        """
        try:
            raw = base64.b64decode(ciphertext_b64, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Decryption failed: {e}")

        if len(raw) < self.NONCE_SIZE + self.TAG_SIZE:
            raise ValueError("Encrypted data too short")

        nonce, sealed = raw[:self.NONCE_SIZE], raw[self.NONCE_SIZE:]
        try:
            return self.cipher.decrypt(nonce, sealed, context.encode('utf-8')).decode('utf-8')
        except InvalidTag:
            logging.error(f"MFA secret authentication failed for {context}")
            raise ValueError("Decryption failed: authentication tag mismatch")


def build_secret_encryption(master_key: Optional[str]) -> Optional[SecretEncryption]:
    """
    Build the cipher when a key is configured.

    Args:
        master_key: MFA_ENCRYPTION_KEY value or None

    Returns:
        SecretEncryption, or None to store secrets as plain Base32
    """
    if not master_key:
        logging.warning("MFA_ENCRYPTION_KEY not set - TOTP secrets are stored unencrypted")
        return None
    return SecretEncryption(master_key)
