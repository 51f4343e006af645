"""
Encryption at rest for student names.

``ENCRYPTION_KEY`` holds one Fernet key, or several separated by commas with
the newest first. Values are always written with the first key and read with
any of them, so a key can be rotated by prepending the new one and running
``flask rotate-student-names``.
"""

import os

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from sqlalchemy.types import LargeBinary, TypeDecorator


def load_fernet(key_env_var='ENCRYPTION_KEY'):
    """Build a MultiFernet from the comma-separated keys in ``key_env_var``."""
    raw = os.getenv(key_env_var)
    if not raw:
        raise RuntimeError(f"Missing required environment variable: {key_env_var}")
    keys = [key.strip() for key in raw.split(',') if key.strip()]
    return MultiFernet([Fernet(key) for key in keys])


class PIIEncryptedType(TypeDecorator):
    """Stores a string Fernet-encrypted in a binary column."""
    impl = LargeBinary
    cache_ok = True

    def __init__(self, key_env_var, *args, **kwargs):
        self.key_env_var = key_env_var
        self.fernet = load_fernet(key_env_var)
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self.fernet.encrypt(value.encode('utf-8'))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return self.fernet.decrypt(bytes(value)).decode('utf-8')
        except InvalidToken:
            raise ValueError(
                f"Stored value cannot be decrypted with any key in {self.key_env_var}."
            )
