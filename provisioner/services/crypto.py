from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from provisioner.models import Panel


class CredentialError(Exception):
    pass


class CredentialCipher:
    """Encrypts panel admin passwords at rest with a key derived from APP_SECRET."""

    def __init__(self, app_secret: str) -> None:
        if not app_secret:
            raise CredentialError("APP_SECRET must not be empty")
        digest = hashlib.sha256(app_secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def seal(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def open(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialError("Stored panel password cannot be decrypted with the current APP_SECRET") from exc

    def panel_password(self, panel: Panel) -> str:
        try:
            return self.open(panel.password_enc)
        except CredentialError as exc:
            raise CredentialError(f"Panel `{panel.name}`: {exc}") from exc
