"""Credential vault: AES-256-GCM encryption for secrets stored at rest.

Ciphertext format (all hex): ``nonce:authTag:ciphertext``

The vault key comes from process configuration (ENCRYPTION_KEY) and is
stretched once with scrypt. Without a key the vault is disabled and both
encrypt and decrypt return their input unchanged; values encrypted earlier
stay unreadable until the key is restored.

Rotating the key requires re-encrypting every stored value; no migration
is provided here.
"""

import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from clawhub.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

NONCE_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def _is_hex(value: str) -> bool:
    return bool(_HEX_RE.match(value)) and len(value) % 2 == 0


def mask_token(token: str | None) -> str | None:
    """Mask a sensitive token for display.

    Shows the first 10 and last 4 characters. Short tokens are fully hidden.

    >>> mask_token("1234567890abcdefghij")
    '1234567890...ghij'
    """
    if not token:
        return None
    if len(token) <= 14:
        return "***"
    return f"{token[:10]}...{token[-4:]}"


class CredentialVault:
    """Symmetric authenticated encryption for secret strings."""

    def __init__(self, key: str | None, salt: str = "fasterclaw-salt") -> None:
        if key is not None and not key.strip():
            raise ConfigurationError(
                "ENCRYPTION_KEY is set but empty. "
                "Generate one with: openssl rand -hex 32"
            )
        self._aead: AESGCM | None = None
        if key:
            kdf = Scrypt(salt=salt.encode(), length=KEY_LENGTH, n=2**14, r=8, p=1)
            self._aead = AESGCM(kdf.derive(key.encode()))

    @property
    def enabled(self) -> bool:
        return self._aead is not None

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext into ``nonce:authTag:ciphertext``.

        Returns plaintext unchanged when the vault is disabled.
        """
        if self._aead is None:
            return plaintext

        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a value produced by encrypt().

        Values not in the three-segment hex format, or that fail
        authentication, are returned unchanged (legacy cleartext).
        """
        if self._aead is None:
            return ciphertext

        parts = ciphertext.split(":")
        if len(parts) != 3:
            return ciphertext

        nonce_hex, tag_hex, payload_hex = parts
        if not (_is_hex(nonce_hex) and _is_hex(tag_hex) and _is_hex(payload_hex)):
            return ciphertext

        nonce = bytes.fromhex(nonce_hex)
        tag = bytes.fromhex(tag_hex)
        if len(nonce) != NONCE_LENGTH or len(tag) != AUTH_TAG_LENGTH:
            return ciphertext

        try:
            plaintext = self._aead.decrypt(nonce, bytes.fromhex(payload_hex) + tag, None)
        except InvalidTag:
            logger.warning("Vault authentication failed, returning value as stored")
            return ciphertext
        return plaintext.decode("utf-8")

    def mask(self, token: str | None) -> str | None:
        return mask_token(token)
