"""
Wallet Crypto - Password-based encryption and HD key derivation.

Industry-standard security:
- BIP-39 seed phrases
- BIP-32/44 HD derivation
- scrypt key derivation (memory-hard)
- AES-256-GCM authenticated encryption

Keys never exist unencrypted on disk. Derived keys and decrypted secrets are
kept in bytearrays so they can be zeroed after use.
"""

import os
import secrets
from pathlib import Path
from typing import Union

# Cryptography
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

# Ethereum
from mnemonic import Mnemonic
from eth_account import Account
from eth_account.hdaccount import seed_from_mnemonic, key_from_seed

from .errors import Corrupt, CryptoError, InvalidPassword

# Enable HD wallet features
Account.enable_unaudited_hdwallet_features()


# ============================================
# Security Constants
# ============================================

# scrypt parameters
SCRYPT_N = 16384  # 2^14
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_MAXMEM = 256 * 1024 * 1024  # derivation memory cap

# AES-GCM constants
ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

# BIP-44 derivation path for Ethereum
ETH_DERIVATION_PATH = "m/44'/60'/0'/0/{}"

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Secure file permissions (Unix only)
SECURE_FILE_MODE = 0o600  # Owner read/write only

Secret = Union[str, bytes, bytearray]


def set_secure_permissions(filepath: Path) -> None:
    """
    Set restrictive file permissions on Unix systems.

    Sets file to mode 0600 (owner read/write only) to protect keystore data.
    No-op on Windows (NTFS uses ACLs, not Unix permissions).
    """
    if os.name == 'posix':
        try:
            os.chmod(filepath, SECURE_FILE_MODE)
        except OSError:
            # Best effort - don't fail save operation if chmod fails
            pass


def wipe(buf) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    if isinstance(buf, bytearray) and buf:
        buf[:] = bytes(len(buf))


def _to_buffer(value: Secret) -> bytearray:
    if isinstance(value, str):
        return bytearray(value.encode('utf-8'))
    return bytearray(value)


def scrypt_memory(n: int, r: int, p: int) -> int:
    """Approximate memory needed by scrypt for the given parameters."""
    return 128 * n * r * p


# ============================================
# Key Derivation
# ============================================

def derive_key(password: Secret, salt: bytes,
               n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P) -> bytearray:
    """
    Derive a 32-byte encryption key from a password using scrypt.

    The caller owns the returned buffer and must wipe() it.

    Raises: CryptoError if the parameters exceed the memory cap.
    """
    if n < 2 or n & (n - 1):
        raise CryptoError(f"scrypt N must be a power of two, got {n}")
    if scrypt_memory(n, r, p) > SCRYPT_MAXMEM:
        raise CryptoError("scrypt parameters exceed the memory cap")

    secret = _to_buffer(password)
    try:
        kdf = Scrypt(salt=bytes(salt), length=KEY_LENGTH, n=n, r=r, p=p)
        return bytearray(kdf.derive(secret))
    finally:
        wipe(secret)


# ============================================
# Encryption
# ============================================

def encrypt(plaintext: Secret, password: Secret) -> dict:
    """
    Encrypt data with a password.

    A fresh salt and IV are drawn for every call.

    Returns: envelope dict with hex-encoded ciphertext, salt, iv, authTag,
    plus the algorithm name and scrypt parameters.
    """
    salt = secrets.token_bytes(SALT_LENGTH)
    iv = secrets.token_bytes(IV_LENGTH)
    key = derive_key(password, salt)
    data = _to_buffer(plaintext)

    try:
        ciphertext_and_tag = AESGCM(key).encrypt(iv, data, None)
    finally:
        wipe(key)
        wipe(data)

    ciphertext = ciphertext_and_tag[:-TAG_LENGTH]
    tag = ciphertext_and_tag[-TAG_LENGTH:]

    return {
        "ciphertext": ciphertext.hex(),
        "salt": salt.hex(),
        "iv": iv.hex(),
        "authTag": tag.hex(),
        "algorithm": ALGORITHM,
        "scryptParams": {"N": SCRYPT_N, "r": SCRYPT_R, "p": SCRYPT_P},
    }


def _parse_envelope(envelope: dict) -> tuple[bytes, bytes, bytes, bytes, int, int, int]:
    """Validate an envelope and decode its fields. Raises Corrupt."""
    if not isinstance(envelope, dict):
        raise Corrupt("Encrypted data must be an object")

    algorithm = envelope.get("algorithm", ALGORITHM)
    if algorithm != ALGORITHM:
        raise Corrupt(f"Unsupported algorithm: {algorithm}")

    # Older files used "encrypted" and "scrypt" as field names
    ciphertext_hex = envelope.get("ciphertext", envelope.get("encrypted"))
    params = envelope.get("scryptParams", envelope.get("scrypt")) or {}

    try:
        ciphertext = bytes.fromhex(ciphertext_hex)
        salt = bytes.fromhex(envelope["salt"])
        iv = bytes.fromhex(envelope["iv"])
        tag = bytes.fromhex(envelope["authTag"])
    except (KeyError, TypeError, ValueError) as e:
        raise Corrupt("Malformed encrypted data") from e

    if not salt or len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise Corrupt("Malformed encrypted data")

    try:
        n = int(params.get("N", SCRYPT_N))
        r = int(params.get("r", SCRYPT_R))
        p = int(params.get("p", SCRYPT_P))
    except (AttributeError, TypeError, ValueError) as e:
        raise Corrupt("Malformed scrypt parameters") from e

    if n < 2 or n & (n - 1) or r < 1 or p < 1:
        raise Corrupt("Malformed scrypt parameters")
    if scrypt_memory(n, r, p) > SCRYPT_MAXMEM:
        raise Corrupt("scrypt parameters exceed the memory cap")

    return ciphertext, salt, iv, tag, n, r, p


def decrypt(envelope: dict, password: Secret) -> bytearray:
    """
    Decrypt an envelope produced by encrypt().

    The caller owns the returned plaintext buffer and must wipe() it.

    Raises:
        InvalidPassword: if the authentication tag does not verify
        Corrupt: if the envelope is malformed
    """
    ciphertext, salt, iv, tag, n, r, p = _parse_envelope(envelope)
    key = derive_key(password, salt, n, r, p)

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise InvalidPassword() from e
    finally:
        wipe(key)

    return bytearray(plaintext)


# ============================================
# HD Derivation
# ============================================

def new_mnemonic(word_count: int = 12) -> str:
    """Generate a fresh English BIP-39 seed phrase (12 or 24 words)."""
    if word_count not in (12, 24):
        raise ValueError("word_count must be 12 or 24")
    strength = 128 if word_count == 12 else 256
    return Mnemonic("english").generate(strength=strength)


def is_valid_mnemonic(phrase: str) -> bool:
    """Check the BIP-39 word list and checksum."""
    try:
        return Mnemonic("english").check(phrase)
    except (ValueError, LookupError):
        return False


def derivation_path(index: int) -> str:
    """BIP-44 Ethereum path for an account index."""
    return ETH_DERIVATION_PATH.format(index)


def derive_private_key(mnemonic: str, index: int) -> bytearray:
    """
    Derive the private key at m/44'/60'/0'/0/{index}.

    WARNING: Handle with extreme care! Caller must wipe() the result.
    """
    seed = bytearray(seed_from_mnemonic(mnemonic, passphrase=""))
    try:
        return bytearray(key_from_seed(bytes(seed), derivation_path(index)))
    finally:
        wipe(seed)


def is_valid_private_key(private_key: Union[bytes, bytearray]) -> bool:
    """A 32-byte scalar in [1, n-1] for secp256k1."""
    if len(private_key) != 32:
        return False
    return 0 < int.from_bytes(private_key, "big") < SECP256K1_N


def address_from_key(private_key: Union[bytes, bytearray]) -> str:
    """Checksummed 0x address for a raw private key."""
    return Account.from_key(bytes(private_key)).address
