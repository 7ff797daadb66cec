"""Secret redaction for log records and error messages."""

import logging
from typing import Iterable, Optional, Set

MASK = "***"


class SecretRedactor:
    """Masks registered secret values in arbitrary text."""

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        self._secrets: Set[str] = set()
        for value in secrets or ():
            self.add(value)

    def add(self, value: Optional[str]):
        # Very short values would mask unrelated text.
        if value and len(value) >= 4:
            self._secrets.add(value)

    def redact(self, text: str) -> str:
        if not text:
            return text
        # Longest first so a secret containing another one is fully masked.
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, MASK)
        return text

    def __contains__(self, value: str) -> bool:
        return value in self._secrets


class RedactingFilter(logging.Filter):
    """Rewrites each record's message with secrets masked."""

    def __init__(self, redactor: SecretRedactor):
        super().__init__()
        self.redactor = redactor
        self._formatter = logging.Formatter()

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        if record.exc_info:
            traceback_text = record.exc_text or self._formatter.formatException(record.exc_info)
            masked = self.redactor.redact(traceback_text)
            if masked != traceback_text:
                # Handlers render exc_info themselves, so the masked text replaces it.
                record.msg = f"{redacted}\n{masked}"
                record.args = None
                record.exc_info = None
                record.exc_text = None
        elif record.exc_text:
            record.exc_text = self.redactor.redact(record.exc_text)
        return True
