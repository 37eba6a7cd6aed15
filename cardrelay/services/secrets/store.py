"""Encrypted file-backed credential store.

The bundle is serialized to JSON and encrypted with Fernet (AES-128-CBC +
HMAC-SHA256). The Fernet key is derived from the master secret via PBKDF2.
Plaintext never leaves this module except through `SecretStr` fields.
"""

import base64
import json
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, SecretStr, ValidationError

from cardrelay.common.logging import logger

KDF_ITERATIONS = 100_000


class SecretStoreError(RuntimeError):
    """Stored bundle cannot be read with the configured master secret."""


class ServiceLogin(BaseModel):
    login: str
    password: SecretStr
    totp_secret: SecretStr | None = None

    def reveal(self) -> dict:
        return {
            "login": self.login,
            "password": self.password.get_secret_value(),
            "totp_secret": self.totp_secret.get_secret_value() if self.totp_secret else None,
        }


class CredentialBundle(BaseModel):
    """Logins for the retail site, the redemption platform and the mailbox."""

    retailer: ServiceLogin | None = None
    platform: ServiceLogin | None = None
    mailbox: ServiceLogin | None = None

    def reveal(self) -> dict:
        return {
            name: login.reveal() if login else None
            for name, login in (("retailer", self.retailer), ("platform", self.platform), ("mailbox", self.mailbox))
        }


def derive_fernet(master_secret: str, salt: str) -> Fernet:
    """Derive a Fernet key from the master secret and return a Fernet instance."""

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=KDF_ITERATIONS,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(master_secret.encode())))


class SecretStore:
    def __init__(self, path: str | Path, master_secret: str | None, salt: str) -> None:
        self.path = Path(path)
        self.salt = salt
        self._master_secret = master_secret
        self._fernet = derive_fernet(master_secret, salt) if master_secret else None

    @property
    def configured(self) -> bool:
        return self._fernet is not None

    def _read_token(self) -> bytes | None:
        if not self.path.exists():
            return None
        return self.path.read_bytes()

    def _write_token(self, token: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(token)
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)

    def _decrypt(self, fernet: Fernet, token: bytes) -> CredentialBundle:
        try:
            return CredentialBundle.model_validate_json(fernet.decrypt(token))
        except InvalidToken as exc:
            raise SecretStoreError("credential file cannot be decrypted with this master secret") from exc
        except ValidationError as exc:
            raise SecretStoreError("credential file has an unexpected layout") from exc

    def get(self) -> CredentialBundle | None:
        """Decrypted bundle, or None when nothing has been stored yet."""

        token = self._read_token()
        if token is None:
            return None
        if self._fernet is None:
            raise SecretStoreError("master secret not configured")
        return self._decrypt(self._fernet, token)

    def set(self, bundle: CredentialBundle) -> None:
        if self._fernet is None:
            raise SecretStoreError("master secret not configured")
        self._write_token(self._fernet.encrypt(json.dumps(bundle.reveal()).encode()))
        logger.info("credentials_saved path=%s", self.path)

    def verify(self, candidate: str) -> bool:
        """True when `candidate` unlocks the stored bundle (or matches, if none stored)."""

        token = self._read_token()
        if token is None:
            return self._master_secret is not None and candidate == self._master_secret
        try:
            derive_fernet(candidate, self.salt).decrypt(token)
        except InvalidToken:
            return False
        return True

    def rotate(self, new_master_secret: str) -> None:
        """Re-encrypt the stored bundle under a new master secret."""

        bundle = self.get()
        new_fernet = derive_fernet(new_master_secret, self.salt)
        if bundle is not None:
            self._write_token(new_fernet.encrypt(json.dumps(bundle.reveal()).encode()))
        self._fernet = new_fernet
        self._master_secret = new_master_secret
        logger.info("credentials_rotated path=%s", self.path)
