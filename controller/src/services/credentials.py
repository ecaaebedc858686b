"""
Credential providers injected into step execution.

Steps name the credentials they need; the provider resolves each name to a
secret value which is exposed to the step as an environment variable of the
same name and masked in its output.
"""

import os
from typing import Dict, Iterable, Mapping, Optional

from controller.src.errors import LaunchError

MASK = "****"


class CredentialProvider:
    def get(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def resolve(self, names: Iterable[str]) -> Dict[str, str]:
        """Resolve every requested credential or fail the launch."""
        resolved = {}
        for name in names:
            value = self.get(name)
            if value is None:
                raise LaunchError(f"Credential '{name}' is not available")
            resolved[name] = value
        return resolved


class EnvCredentialProvider(CredentialProvider):
    """Reads ``<prefix><NAME>`` from the controller's environment."""

    def __init__(self, prefix: str, environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self.environ = os.environ if environ is None else environ

    def get(self, name: str) -> Optional[str]:
        return self.environ.get(f"{self.prefix}{name}")


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self.secrets = dict(secrets or {})

    def get(self, name: str) -> Optional[str]:
        return self.secrets.get(name)


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text
