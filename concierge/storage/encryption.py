import base64

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class DataEncryption:
    """Fernet (AES-128-CBC + HMAC) encryption for profile data at rest.

    Key is derived from a deployment secret + store-specific salt using PBKDF2.
    """

    def __init__(self, secret: str, salt: str):
        self._fernet = self._derive_key(secret, salt)

    @staticmethod
    def _derive_key(secret: str, salt: str) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=100_000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
        return Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64-encoded ciphertext and return plaintext string."""
        return self._fernet.decrypt(ciphertext.encode()).decode()
