# secretstore.py
from __future__ import annotations

import os
from typing import Dict, Iterable, Mapping, Optional

MASK = "***"


class Secret:
    """An opaque credential. Never prints its value."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"Secret({MASK})"

    def __str__(self) -> str:
        return MASK

    def __eq__(self, other) -> bool:
        return isinstance(other, Secret) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)


class SecretStore:
    """
    Read-only secrets for one pipeline run.

    Values are only handed to the jobs that declare them (`job.secrets`);
    everything the run prints or stores goes through `redact()` first.
    """

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets: Dict[str, Secret] = {
            name: Secret(value) for name, value in (secrets or {}).items()
        }

    @classmethod
    def from_env(cls, names: Iterable[str], environ: Optional[Mapping[str, str]] = None) -> SecretStore:
        env = os.environ if environ is None else environ
        return cls({name: env[name] for name in names if env.get(name)})

    def names(self) -> list[str]:
        return sorted(self._secrets)

    def __contains__(self, name: str) -> bool:
        return name in self._secrets

    def __len__(self) -> int:
        return len(self._secrets)

    def get(self, name: str) -> Optional[Secret]:
        return self._secrets.get(name)

    def resolve(self, mapping: Mapping[str, str]) -> Dict[str, str]:
        """Turn a job's {ENV_VAR: secret_name} into {ENV_VAR: value}. Missing secrets are left out."""
        out: Dict[str, str] = {}
        for env_var, secret_name in mapping.items():
            secret = self._secrets.get(secret_name)
            if secret is not None:
                out[env_var] = secret.reveal()
        return out

    def find_in(self, text: str) -> Optional[str]:
        """Name of the first secret whose value occurs in `text`."""
        for name, secret in self._secrets.items():
            if secret.reveal() and secret.reveal() in text:
                return name
        return None

    def redact(self, text: str) -> str:
        if not text:
            return text
        # longest first so a value containing another is masked whole
        for secret in sorted(self._secrets.values(), key=lambda s: len(s.reveal()), reverse=True):
            value = secret.reveal()
            if value:
                text = text.replace(value, MASK)
        return text
