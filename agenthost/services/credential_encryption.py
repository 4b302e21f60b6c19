"""AES-256-GCM encryption for stored integration tokens.

The rest of the orchestrator only sees ``TokenCipher``: an opaque
encrypt/decrypt capability. Plaintext tokens exist only in the short-lived
variables used to build a delivery payload or a token refresh request.

Key source precedence:
    1. AGENTHOST_CREDENTIAL_KEY env var (base64-encoded 32-byte key)
    2. AGENTHOST_CREDENTIAL_KEY_FILE env var (path to raw key file)
    3. platformdirs data dir file (auto-generated on first use, 0600)

Ciphertext format: versioned JSON envelope
``{"v": 1, "alg": "AES-256-GCM", "nonce": "<b64>", "ct": "<b64>"}`` with
the additional authenticated data binding a token to its integration and
field, so an access token cannot be swapped into another row.
"""

import base64
import binascii
import json
import logging
import os
import stat

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from agenthost.utils.paths import get_data_dir

logger = logging.getLogger(__name__)

KEY_FILENAME = ".agenthost_key"
_CURRENT_VERSION = 1
_ALGORITHM = "AES-256-GCM"
_REQUIRED_KEY_LENGTH = 32
_NONCE_LENGTH = 12


class CredentialDecryptionError(Exception):
    """Raised when a token envelope cannot be decrypted for any reason."""


def _read_key_file(path: str, label: str) -> bytes:
    if os.path.islink(path):
        raise ValueError(f"{label} {path} is a symlink; refusing to follow it")
    with open(path, "rb") as f:
        key = f.read()
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"{label} {path} has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
        )
    return key


def get_or_create_key(key_dir: str | None = None) -> bytes:
    """Load or generate the 32-byte AES-256 key.

    Args:
        key_dir: Directory for the generated key file (source 3 only).

    Returns:
        32-byte key.

    Raises:
        ValueError: If a configured key is malformed or has the wrong length.
    """
    env_key = os.environ.get("AGENTHOST_CREDENTIAL_KEY", "").strip()
    if env_key:
        try:
            key = base64.b64decode(env_key, validate=True)
        except binascii.Error as e:
            raise ValueError(f"AGENTHOST_CREDENTIAL_KEY contains invalid base64: {e}") from e
        if len(key) != _REQUIRED_KEY_LENGTH:
            raise ValueError(
                f"AGENTHOST_CREDENTIAL_KEY has invalid length {len(key)} "
                f"(expected {_REQUIRED_KEY_LENGTH})"
            )
        return key

    env_key_file = os.environ.get("AGENTHOST_CREDENTIAL_KEY_FILE", "").strip()
    if env_key_file:
        if not os.path.isfile(env_key_file):
            raise ValueError(f"AGENTHOST_CREDENTIAL_KEY_FILE does not exist: {env_key_file}")
        return _read_key_file(env_key_file, "Key file")

    directory = key_dir or str(get_data_dir())
    os.makedirs(directory, exist_ok=True)
    key_path = os.path.join(directory, KEY_FILENAME)

    if os.path.exists(key_path):
        key = _read_key_file(key_path, "Key file")
        mode = stat.S_IMODE(os.stat(key_path).st_mode)
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            logger.warning("Key file %s has permissions %o; chmod 600 recommended", key_path, mode)
        return key

    key = os.urandom(_REQUIRED_KEY_LENGTH)
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # another process created it between the exists() check and here
        return _read_key_file(key_path, "Key file")
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.info("Generated new credential key at %s", key_path)
    return key


def encrypt_token(plaintext: str, key: bytes, aad: str = "") -> str:
    """Encrypt one token to a JSON envelope string.

    Raises:
        ValueError: If key is not exactly 32 bytes.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"Encryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )
    nonce = os.urandom(_NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(
        nonce, plaintext.encode("utf-8"), aad.encode("utf-8") if aad else None
    )
    return json.dumps({
        "v": _CURRENT_VERSION,
        "alg": _ALGORITHM,
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ct": base64.b64encode(ciphertext).decode("ascii"),
    })


def decrypt_token(envelope_text: str, key: bytes, aad: str = "") -> str:
    """Decrypt an envelope produced by encrypt_token.

    Raises:
        CredentialDecryptionError: On any malformed envelope, wrong key or
            AAD mismatch.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise CredentialDecryptionError(
            f"Decryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )
    try:
        envelope = json.loads(envelope_text)
    except (json.JSONDecodeError, TypeError) as e:
        raise CredentialDecryptionError(f"Invalid envelope format: {e}") from e
    if not isinstance(envelope, dict):
        raise CredentialDecryptionError("Invalid envelope format: not an object")

    if envelope.get("v") != _CURRENT_VERSION:
        raise CredentialDecryptionError(f"Unsupported envelope version {envelope.get('v')}")
    if envelope.get("alg") != _ALGORITHM:
        raise CredentialDecryptionError(f"Unsupported algorithm {envelope.get('alg')!r}")

    try:
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ct"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise CredentialDecryptionError(f"Malformed envelope fields: {e}") from e
    if len(nonce) != _NONCE_LENGTH:
        raise CredentialDecryptionError(f"Invalid nonce length {len(nonce)}")

    try:
        plaintext = AESGCM(key).decrypt(
            nonce, ciphertext, aad.encode("utf-8") if aad else None
        )
    except InvalidTag as e:
        raise CredentialDecryptionError("Decryption failed: authentication tag mismatch") from e
    return plaintext.decode("utf-8")


class TokenCipher:
    """Encrypt/decrypt capability bound to one key.

    Example:
        cipher = TokenCipher.from_environment()
        stored = cipher.encrypt("ya29...", aad=token_aad(integration, "access"))
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != _REQUIRED_KEY_LENGTH:
            raise ValueError(
                f"Key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
            )
        self._key = key

    @classmethod
    def from_environment(cls, key_dir: str | None = None) -> "TokenCipher":
        return cls(get_or_create_key(key_dir))

    def encrypt(self, plaintext: str, aad: str = "") -> str:
        return encrypt_token(plaintext, self._key, aad)

    def decrypt(self, envelope_text: str, aad: str = "") -> str:
        return decrypt_token(envelope_text, self._key, aad)


def token_aad(user_id: str, provider: str, field: str) -> str:
    """AAD binding a token envelope to its owner, provider and field."""
    return f"integration:{user_id}:{provider}:{field}"
