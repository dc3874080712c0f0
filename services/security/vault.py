"""AES-GCM sealing of TOTP secrets at rest."""
from __future__ import annotations

import base64
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MASTER_KEY_ENV = "FAHAMPESA_MASTER_KEY"
TOKEN_PREFIX = "v1:"


class VaultError(ValueError):
    pass


class SecretVault:
    """Encrypts short secrets into printable tokens.

    The account id is bound as associated data, so a token copied onto another
    account's credential fails to open.
    """

    def __init__(self, *, master_key: Optional[bytes] = None, nonce_size: int = 12):
        if master_key is None:
            raw = os.environ.get(MASTER_KEY_ENV)
            if raw:
                master_key = base64.b64decode(raw)
        if master_key is None:
            master_key = AESGCM.generate_key(bit_length=256)
        if len(master_key) not in {16, 24, 32}:
            raise VaultError("Master key must be 128, 192 or 256 bits")
        self._master = master_key
        self._nonce_size = int(nonce_size)

    @classmethod
    def from_b64(cls, value: str) -> "SecretVault":
        return cls(master_key=base64.b64decode(value))

    def seal(self, secret: str, *, context: str = "") -> str:
        nonce = secrets.token_bytes(self._nonce_size)
        ct = AESGCM(self._master).encrypt(nonce, secret.encode("utf-8"), context.encode("utf-8"))
        return TOKEN_PREFIX + base64.b64encode(nonce + ct).decode("ascii")

    def unseal(self, token: str, *, context: str = "") -> str:
        if not token.startswith(TOKEN_PREFIX):
            raise VaultError("Not a sealed token")
        raw = base64.b64decode(token[len(TOKEN_PREFIX) :])
        nonce, ct = raw[: self._nonce_size], raw[self._nonce_size :]
        try:
            plain = AESGCM(self._master).decrypt(nonce, ct, context.encode("utf-8"))
        except InvalidTag as exc:
            raise VaultError("Sealed token failed authentication") from exc
        return plain.decode("utf-8")

    @staticmethod
    def is_sealed(value: str) -> bool:
        return value.startswith(TOKEN_PREFIX)
