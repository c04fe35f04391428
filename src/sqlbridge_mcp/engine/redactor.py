"""Secret redaction for error messages and logs.

Driver exceptions sometimes echo connection parameters back (a failed
authentication message, a DSN in a traceback). Before any backend message is
logged or returned to a caller it passes through ``SecretRedactor``, which
masks every registered secret and any ``user:password@`` URL credentials.

Example:
    >>> redactor = SecretRedactor()
    >>> redactor.add_secret("db_password", "hunter2!")
    >>> redactor.redact("auth failed for hunter2!")
    'auth failed for ***REDACTED***'
"""

from __future__ import annotations

import re
from typing import Any

from .dsn import ConnectionDescriptor, redact_dsn


class SecretRedactor:
    """Masks secret values inside strings and nested structures.

    Attributes:
        secrets: Secret values keyed by a descriptive name
        redaction_patterns: Compiled patterns, longest secret first
        MIN_SECRET_LENGTH: Values shorter than this are not registered (3)
        REDACTION_MARKER: Replacement text ("***REDACTED***")
    """

    MIN_SECRET_LENGTH = 3
    REDACTION_MARKER = "***REDACTED***"

    def __init__(self) -> None:
        self.secrets: dict[str, str] = {}
        self.redaction_patterns: list[re.Pattern[str]] = []

    @classmethod
    def for_descriptor(cls, descriptor: ConnectionDescriptor) -> SecretRedactor:
        """Build a redactor that knows the descriptor's password."""
        redactor = cls()
        password = descriptor.get_password()
        if password:
            redactor.add_secret("database_password", password)
        return redactor

    def add_secret(self, key: str, value: str | None) -> None:
        """Register a secret value for redaction.

        Values shorter than MIN_SECRET_LENGTH are ignored to avoid masking
        ordinary words.
        """
        if value and len(value) >= self.MIN_SECRET_LENGTH:
            self.secrets[key] = value
            self._compile_redaction_patterns()

    def _compile_redaction_patterns(self) -> None:
        # Longest first so a secret containing another secret is masked whole
        sorted_secrets = sorted(self.secrets.values(), key=len, reverse=True)
        self.redaction_patterns = [re.compile(re.escape(value)) for value in sorted_secrets]

    def redact(self, data: Any) -> Any:  # noqa: ANN401
        """Redact secrets from a string, dict, list or tuple, preserving structure."""
        if isinstance(data, str):
            return self._redact_string(data)
        if isinstance(data, dict):
            return {key: self.redact(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self.redact(item) for item in data]
        if isinstance(data, tuple):
            return tuple(self.redact(item) for item in data)
        return data

    def _redact_string(self, text: str) -> str:
        redacted_text = redact_dsn(text)
        for pattern in self.redaction_patterns:
            redacted_text = pattern.sub(self.REDACTION_MARKER, redacted_text)
        return redacted_text

    def get_loaded_secret_keys(self) -> list[str]:
        return list(self.secrets.keys())
