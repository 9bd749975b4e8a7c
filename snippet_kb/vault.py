"""
KeyVault — device-bound envelope encryption for the service credential.

Layout of the persisted values (all in the ``kv`` table)::

    vault.master.ciphertext   AES-256-GCM(wrapping_key, master_key)
    vault.master.salt         16 random bytes
    vault.master.iv           12 random bytes
    vault.master.iterations   PBKDF2 iteration count (ASCII integer)
    vault.secret.iv           12 random bytes
    vault.secret.ciphertext   AES-256-GCM(master_key, credential)

The wrapping key is PBKDF2-HMAC-SHA256 over the device identity string and
the salt, so copying the database to another machine does not carry the
credential with it.  Nothing secret is ever stored in plaintext.
"""

from __future__ import annotations

import logging
import os
import string
import threading
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .device import device_identity
from .errors import CorruptionError, InvalidFormat
from .progress import ProgressReporter, ProgressTask
from .store.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PBKDF2_ITERATIONS = 600_000
KEY_BYTES = 32
SALT_BYTES = 16
IV_BYTES = 12

MIN_SECRET_LENGTH = 8
MAX_SECRET_LENGTH = 512

_PREFIX = "vault."
_MASTER_CT = "vault.master.ciphertext"
_MASTER_SALT = "vault.master.salt"
_MASTER_IV = "vault.master.iv"
_MASTER_ITER = "vault.master.iterations"
_SECRET_IV = "vault.secret.iv"
_SECRET_CT = "vault.secret.ciphertext"

# Associated data binds each ciphertext to its role.
_MASTER_AAD = b"snippet_kb/master-key/v1"
_SECRET_AAD = b"snippet_kb/credential/v1"

_ALLOWED_CHARS = frozenset(string.ascii_letters + string.digits + string.punctuation)


class VaultState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"


def validate_secret(secret: object) -> str:
    """Return the normalised secret or raise :class:`InvalidFormat`."""
    if not isinstance(secret, str):
        raise InvalidFormat("credential must be a string")
    value = secret.strip()
    if not value:
        raise InvalidFormat("credential is empty")
    if not MIN_SECRET_LENGTH <= len(value) <= MAX_SECRET_LENGTH:
        raise InvalidFormat(
            f"credential must be {MIN_SECRET_LENGTH}-{MAX_SECRET_LENGTH} characters"
        )
    if any(ch not in _ALLOWED_CHARS for ch in value):
        raise InvalidFormat("credential contains whitespace or non-printable characters")
    return value


def derive_wrapping_key(identity: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(identity.encode("utf-8"))


class KeyVault:
    """
    Stores one secret credential under device-bound envelope encryption.

    Parameters
    ----------
    kv:
        Key/value persistence for the vault values.
    identity:
        Device identity string.  Defaults to :func:`device_identity`.
    iterations:
        PBKDF2 iteration count used when generating new key material.
        Existing material is always unwrapped with its stored count.
    """

    def __init__(self, kv: KeyValueStore, identity: Optional[str] = None,
                 iterations: Optional[int] = None) -> None:
        self._kv = kv
        self._identity = identity or device_identity()
        self._iterations = iterations or PBKDF2_ITERATIONS
        self._lock = threading.RLock()
        self._master_key: Optional[bytes] = None

    # ------------------------------------------------------------------
    # Master key
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        if self._kv.get(_MASTER_CT) is None:
            return VaultState.UNINITIALIZED
        return VaultState.INITIALIZED

    def initialize(self, reporter: Optional[ProgressReporter] = None) -> None:
        """Generate and persist wrapped master key material (idempotent)."""
        with self._lock:
            if self.state is VaultState.INITIALIZED:
                logger.debug("[KeyVault] Already initialized")
                return

            if reporter:
                reporter.report(0.1, "generating master key")
            master_key = AESGCM.generate_key(bit_length=KEY_BYTES * 8)
            salt = os.urandom(SALT_BYTES)
            iv = os.urandom(IV_BYTES)

            if reporter:
                reporter.report(0.2, "deriving wrapping key")
            wrapping_key = derive_wrapping_key(self._identity, salt, self._iterations)

            if reporter:
                reporter.report(0.9, "storing wrapped key")
            ciphertext = AESGCM(wrapping_key).encrypt(iv, master_key, _MASTER_AAD)
            self._kv.set_many({
                _MASTER_CT: ciphertext,
                _MASTER_SALT: salt,
                _MASTER_IV: iv,
                _MASTER_ITER: str(self._iterations).encode("ascii"),
            })
            self._master_key = master_key
            logger.info("[KeyVault] Initialized new master key material")

    def initialize_task(self) -> ProgressTask[None]:
        """Run :meth:`initialize` in the background with progress events."""
        return ProgressTask(self.initialize, name="snippet-kb-vault-init").start()

    def _unwrap_master_key(self) -> bytes:
        if self._master_key is not None:
            return self._master_key

        values = self._kv.get_many(_MASTER_CT, _MASTER_SALT, _MASTER_IV, _MASTER_ITER)
        if _MASTER_CT not in values:
            raise CorruptionError("vault has a credential but no master key")
        missing = [k for k in (_MASTER_SALT, _MASTER_IV, _MASTER_ITER) if k not in values]
        if missing:
            raise CorruptionError(f"vault key material incomplete: {missing}")
        try:
            iterations = int(values[_MASTER_ITER].decode("ascii"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise CorruptionError("vault iteration count unreadable") from exc
        if len(values[_MASTER_IV]) != IV_BYTES or iterations <= 0:
            raise CorruptionError("vault key parameters malformed")

        wrapping_key = derive_wrapping_key(self._identity, values[_MASTER_SALT], iterations)
        try:
            master_key = AESGCM(wrapping_key).decrypt(
                values[_MASTER_IV], values[_MASTER_CT], _MASTER_AAD
            )
        except InvalidTag as exc:
            logger.error("[KeyVault] Master key failed authentication")
            raise CorruptionError(
                "master key could not be authenticated on this device"
            ) from exc
        self._master_key = master_key
        return master_key

    # ------------------------------------------------------------------
    # Secret
    # ------------------------------------------------------------------

    def store_secret(self, secret: str) -> None:
        """Validate, encrypt and persist *secret*, replacing any previous one."""
        value = validate_secret(secret)
        with self._lock:
            self.initialize()
            master_key = self._unwrap_master_key()
            iv = os.urandom(IV_BYTES)
            ciphertext = AESGCM(master_key).encrypt(iv, value.encode("utf-8"), _SECRET_AAD)
            self._kv.set_many({_SECRET_IV: iv, _SECRET_CT: ciphertext})
        logger.info("[KeyVault] Stored credential")

    def get_secret(self) -> Optional[str]:
        """Return the stored credential, or None if nothing is stored.

        Raises
        ------
        CorruptionError
            If the stored data fails authentication.
        """
        with self._lock:
            values = self._kv.get_many(_SECRET_IV, _SECRET_CT)
            if _SECRET_CT not in values:
                return None
            if len(values.get(_SECRET_IV, b"")) != IV_BYTES:
                raise CorruptionError("credential IV missing or malformed")
            master_key = self._unwrap_master_key()
            try:
                plaintext = AESGCM(master_key).decrypt(
                    values[_SECRET_IV], values[_SECRET_CT], _SECRET_AAD
                )
            except InvalidTag as exc:
                logger.error("[KeyVault] Credential failed authentication")
                raise CorruptionError(
                    "stored credential is corrupted; enter it again"
                ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptionError("stored credential is not valid text") from exc

    def has_secret(self) -> bool:
        """True if a credential is stored and decrypts cleanly."""
        try:
            return self.get_secret() is not None
        except CorruptionError:
            return False

    def clear(self) -> None:
        """Delete every vault value, including the master key material."""
        with self._lock:
            self._kv.delete_prefix(_PREFIX)
            self._master_key = None
        logger.info("[KeyVault] Cleared vault")
