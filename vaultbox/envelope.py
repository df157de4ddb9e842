# vaultbox/envelope.py
"""
Encryption envelope for vault content and emergency key sharing.

 - derive_key(password, salt): PBKDF2-HMAC-SHA256, 100,000 iterations, 32-byte key
 - encrypt / decrypt: AES-256-GCM, base64(nonce || ciphertext || tag)
 - wrap_key_for_contact / unwrap_key: RSA-OAEP (SHA-256) over the raw 32-byte key

All of this runs on the client side of the vault. The server only ever stores
and relays the base64 blobs; it holds no key that can open them.

Key derivation is deterministic and no copy of the key is kept anywhere: a
forgotten password means the vault content is gone. That is the intended
fail-closed behaviour, there is no recovery path.

Security Note:
    Never log keys, passwords, plaintext or ciphertext. Log sizes and ids only.
"""
import os
import base64
import binascii
import logging
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from vaultbox.errors import DecryptionFailed

logger = logging.getLogger(__name__)

NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16
SALT_SIZE = 16
KDF_ITERATIONS = 100_000
RSA_KEY_SIZE = 2048

# Salt used by older clients that never received a per-user salt. Kept so
# their vaults still open; new accounts get a random salt (User.kdf_salt).
LEGACY_SALT = b"VaultBox-Salt-439852"

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


# ---------------------------------------------------------------------------
# Symmetric keys
# ---------------------------------------------------------------------------

def generate_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def generate_key() -> bytes:
    return AESGCM.generate_key(bit_length=KEY_LENGTH * 8)


def derive_key(password: str, salt: Optional[Union[bytes, str]] = None) -> bytes:
    """Derive the 32-byte content key from a password.

    Args:
        password: The owner's master password.
        salt: Per-user salt (bytes, or text as sent by browser clients).
            None falls back to the legacy fixed salt.

    Returns:
        32-byte key. Same (password, salt) always yields the same key.
    """
    if salt is None:
        logger.warning("Deriving key with the legacy fixed salt")
        salt = LEGACY_SALT
    elif isinstance(salt, str):
        salt = salt.encode("utf-8")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise ValueError(f"key must be exactly {KEY_LENGTH} bytes")


def encrypt(plaintext: Union[bytes, str], key: bytes) -> str:
    """Encrypt with AES-256-GCM under a fresh random nonce.

    Format: base64([nonce 12B][ciphertext + GCM tag 16B])
    """
    _check_key(key)
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext, None)
    return b64encode(nonce + ct)


def decrypt(blob: str, key: bytes) -> bytes:
    """Reverse encrypt().

    Raises:
        DecryptionFailed: malformed base64, truncated blob, wrong key or a
            tampered payload. Nothing is returned unless the tag verifies.
    """
    _check_key(key)
    try:
        data = b64decode(blob)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise DecryptionFailed("ciphertext is not valid base64") from exc
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailed("ciphertext too short")
    nonce, ct = data[:NONCE_SIZE], data[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ct, None)
    except InvalidTag as exc:
        raise DecryptionFailed("authentication tag mismatch") from exc


def decrypt_text(blob: str, key: bytes) -> str:
    return decrypt(blob, key).decode("utf-8")


# ---------------------------------------------------------------------------
# Key wrapping for trusted contacts
# ---------------------------------------------------------------------------

def generate_keypair() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)


def export_public_key(key) -> str:
    """Base64 DER SubjectPublicKeyInfo (what browsers export as "spki")."""
    if isinstance(key, rsa.RSAPrivateKey):
        key = key.public_key()
    der = key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return b64encode(der)


def export_private_key(key: rsa.RSAPrivateKey) -> str:
    """Base64 DER PKCS8, unencrypted. Only for the contact's own backup."""
    der = key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64encode(der)


def load_public_key(text: str) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_der_public_key(b64decode(text))
    except (binascii.Error, ValueError, TypeError) as exc:
        raise ValueError("public key is not base64 DER SPKI") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("public key must be an RSA key")
    return key


def load_private_key(text: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_der_private_key(b64decode(text), password=None)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise ValueError("private key is not base64 DER PKCS8") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("private key must be an RSA key")
    return key


def wrap_key_for_contact(symmetric_key: bytes, contact_public_key) -> str:
    """Encrypt the raw content key for one contact with RSA-OAEP/SHA-256.

    Args:
        symmetric_key: 32-byte content key.
        contact_public_key: RSAPublicKey or its base64 DER SPKI text.

    Returns:
        base64 wrapped key.
    """
    _check_key(symmetric_key)
    if isinstance(contact_public_key, str):
        contact_public_key = load_public_key(contact_public_key)
    return b64encode(contact_public_key.encrypt(bytes(symmetric_key), _OAEP))


def unwrap_key(wrapped: str, contact_private_key) -> bytes:
    """Recover the content key with the contact's private key.

    Raises:
        DecryptionFailed: malformed blob, mismatched key pair, or a result that
            is not a 32-byte key.
    """
    if isinstance(contact_private_key, str):
        contact_private_key = load_private_key(contact_private_key)
    try:
        data = b64decode(wrapped)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise DecryptionFailed("wrapped key is not valid base64") from exc
    try:
        key = contact_private_key.decrypt(data, _OAEP)
    except ValueError as exc:
        raise DecryptionFailed("wrapped key does not open with this private key") from exc
    if len(key) != KEY_LENGTH:
        raise DecryptionFailed("unwrapped key has the wrong length")
    return key


def new_vault_keys(password: str) -> Tuple[bytes, bytes]:
    """Fresh random salt plus the key it derives; the production path for new owners."""
    salt = generate_salt()
    return salt, derive_key(password, salt)
