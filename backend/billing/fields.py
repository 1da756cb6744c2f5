from __future__ import annotations

from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from django.conf import settings
from django.db import models


def _cipher() -> MultiFernet | None:
    keys = [key for key in getattr(settings, "FERNET_KEYS", []) if key]
    if not keys:
        return None
    return MultiFernet([Fernet(key.encode("utf-8")) for key in keys])


def encrypt_value(value: str) -> str:
    cipher = _cipher()
    if cipher is None:
        return value
    return cipher.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_value(value: str) -> str:
    cipher = _cipher()
    if cipher is None:
        return value
    try:
        return cipher.decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        # Rows written before encryption was enabled are stored in clear text.
        return value


class EncryptedCharField(models.CharField):
    """CharField stored Fernet-encrypted; the first key in FERNET_KEYS encrypts, all keys decrypt."""

    def get_prep_value(self, value: Any):
        value = super().get_prep_value(value)
        if value in (None, ""):
            return value
        return encrypt_value(str(value))

    def from_db_value(self, value, expression, connection):
        if value in (None, ""):
            return value
        return decrypt_value(value)

    def to_python(self, value: Any):
        if value in (None, "") or not isinstance(value, str):
            return value
        return decrypt_value(value)
