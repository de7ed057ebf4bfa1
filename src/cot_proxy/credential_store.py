from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

from cryptography.fernet import Fernet, InvalidToken

from .config import ProxyConfig
from .errors import ConfigurationError

# Settings fields a credentials file may fill in.
CREDENTIAL_FIELDS = ("cot_api_key", "mistral_api_key", "openrouter_api_key", "tabbyapi_api_key")


@dataclass(frozen=True)
class StoredCredentials:
    payload: dict[str, Any]

    def api_keys(self) -> dict[str, str]:
        return {
            name: value
            for name in CREDENTIAL_FIELDS
            if isinstance((value := self.payload.get(name)), str) and value
        }


class EncryptedCredentialStore:
    """
    Provider API keys encrypted at rest.

    Stores ONE blob at `path`: Fernet-encrypted JSON bytes, e.g.
    `{"mistral_api_key": "...", "openrouter_api_key": "..."}`.
    """

    def __init__(self, path: str, fernet_key: str):
        self.path = Path(path)
        self._fernet = Fernet(fernet_key.encode("utf-8"))

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, creds: StoredCredentials) -> None:
        raw = json.dumps(creds.payload).encode("utf-8")
        self.path.write_bytes(self._fernet.encrypt(raw))

    def load(self) -> StoredCredentials:
        try:
            raw = self._fernet.decrypt(self.path.read_bytes())
        except InvalidToken as e:
            raise ConfigurationError("Failed to decrypt credentials (wrong key or corrupted file).") from e
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ConfigurationError("Credential payload must be a JSON object.")
        return StoredCredentials(payload=cast(dict[str, Any], payload))


def apply_stored_credentials(cfg: ProxyConfig) -> ProxyConfig:
    """Fill provider keys missing from the environment with those in the encrypted file."""
    if not cfg.credentials_path:
        return cfg
    if not cfg.fernet_key:
        raise ConfigurationError("CREDENTIALS_FERNET_KEY is required when CREDENTIALS_PATH is set.")
    store = EncryptedCredentialStore(cfg.credentials_path, cfg.fernet_key)
    if not store.exists():
        raise ConfigurationError(f"Credentials file not found: {cfg.credentials_path}")
    stored = store.load().api_keys()
    updates = {name: value for name, value in stored.items() if not getattr(cfg, name)}
    return cfg.model_copy(update=updates) if updates else cfg
