# services/copylink/intel/secret_box.py
"""Encryption at rest for shared signing secrets (Fernet)."""

from cryptography.fernet import Fernet, InvalidToken


class SecretBox:
    """Wraps a Fernet key taken from COPYLINK_SECRET_KEY."""

    def __init__(self, key: str):
        if not key:
            raise RuntimeError("COPYLINK_SECRET_KEY is not configured")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise RuntimeError(f"COPYLINK_SECRET_KEY is not a valid Fernet key: {e}")

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def seal(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def open(self, sealed: str) -> str:
        try:
            return self._fernet.decrypt(sealed.encode()).decode()
        except InvalidToken:
            raise RuntimeError("signing secret could not be decrypted (wrong COPYLINK_SECRET_KEY?)")
