"""Password-gated custody of user signing keys.

Private keys are stored as Fernet tokens (AES-128-CBC with HMAC) under a key
derived with PBKDF2 from the user's password and ID. Decrypted key material
only exists inside an ``unlock()`` scope.
"""

import base64
import hashlib
import logging
import os
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken
from eth_account import Account
from eth_account.signers.local import LocalAccount

from gaslesspay.errors import SigningError

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
BLOB_SEPARATOR = ":"


def derive_key_from_password(password: str, salt: Optional[bytes] = None) -> tuple[str, bytes]:
    """Derive a Fernet key from a password using PBKDF2.

    Args:
        password: User-provided password
        salt: Optional salt (generated if not provided)

    Returns:
        Tuple of (base64-encoded key, salt)
    """
    if salt is None:
        salt = os.urandom(16)

    # PBKDF2 with SHA256, 100k iterations
    key = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt,
        PBKDF2_ITERATIONS,
        dklen=32,
    )

    # Fernet requires base64-encoded key
    fernet_key = base64.urlsafe_b64encode(key)
    return fernet_key.decode(), salt


def _master_password(password: str, user_id: str) -> str:
    return f"{password}{BLOB_SEPARATOR}{user_id}"


class KeyVault(Protocol):
    """Capability that turns an encrypted key blob into a usable signer."""

    def unlock(
        self, encrypted_key: Optional[str], user_id: str, password: str
    ) -> AbstractAsyncContextManager[LocalAccount]: ...


class PasswordKeyVault:
    """Encrypts private keys per user and hands out scoped signers.

    Usage:
        vault = PasswordKeyVault()
        blob = vault.encrypt_private_key(key_hex, user_id="42", password="...")
        async with vault.unlock(blob, "42", "...") as signer:
            signer.sign_message(...)
    """

    def encrypt_private_key(self, private_key: str, user_id: str, password: str) -> str:
        """Encrypt a hex private key.

        Returns:
            Blob of the form ``<salt hex>:<fernet token>``
        """
        fernet_key, salt = derive_key_from_password(_master_password(password, str(user_id)))
        token = Fernet(fernet_key.encode()).encrypt(private_key.encode()).decode()
        return f"{salt.hex()}{BLOB_SEPARATOR}{token}"

    def _decrypt(self, encrypted_key: str, user_id: str, password: str) -> str:
        try:
            salt_hex, token = encrypted_key.split(BLOB_SEPARATOR, 1)
            salt = bytes.fromhex(salt_hex)
        except ValueError:
            raise SigningError("Stored signing key is malformed")

        fernet_key, _ = derive_key_from_password(_master_password(password, str(user_id)), salt)
        try:
            return Fernet(fernet_key.encode()).decrypt(token.encode()).decode()
        except InvalidToken:
            raise SigningError("Unable to unlock signing key: invalid password")

    @asynccontextmanager
    async def unlock(
        self, encrypted_key: Optional[str], user_id: str, password: str
    ) -> AsyncIterator[LocalAccount]:
        """Yield a signer for the duration of the block.

        Raises:
            SigningError: If the key is missing or cannot be decrypted
        """
        if not encrypted_key:
            raise SigningError(f"No signing key provisioned for user {user_id}")

        private_key = self._decrypt(encrypted_key, user_id, password)
        try:
            signer = Account.from_key(private_key)
        except ValueError as e:
            raise SigningError(f"Stored signing key is invalid: {e}")
        finally:
            del private_key

        logger.debug(f"Signing key unlocked for user {user_id}")
        try:
            yield signer
        finally:
            del signer
            logger.debug(f"Signing key released for user {user_id}")
