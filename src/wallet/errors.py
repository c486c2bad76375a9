"""
Keystore errors.

Every failure the keystore can report carries a stable machine-readable
``code`` so transports can return it without exposing internals.
"""


class KeystoreError(Exception):
    """Base class for recoverable keystore failures."""

    code = "keystore_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self)


class InvalidPassword(KeystoreError):
    """Invalid password or corrupted data"""
    code = "invalid_password"


class Corrupt(KeystoreError):
    """Keystore file is malformed"""
    code = "corrupt"


class CryptoError(KeystoreError):
    """Key derivation failed"""
    code = "crypto_error"


class WeakPassword(KeystoreError):
    """Password must be at least 8 characters"""
    code = "weak_password"


class InvalidSecret(KeystoreError):
    """Invalid mnemonic phrase or private key"""
    code = "invalid_secret"


class NoKeystore(KeystoreError):
    """No keystore found"""
    code = "no_keystore"


class Locked(KeystoreError):
    """Keystore is locked"""
    code = "locked"


class AccountNotFound(KeystoreError):
    """Account not found"""
    code = "account_not_found"


class NoMnemonic(KeystoreError):
    """Wallet was imported from a private key and cannot derive accounts"""
    code = "no_mnemonic"


class CannotHidePrimary(KeystoreError):
    """The primary account cannot be hidden"""
    code = "cannot_hide_primary"
