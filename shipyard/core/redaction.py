"""Secret redaction for captured stage output."""

from __future__ import annotations

from collections.abc import Iterable

REDACTED = "********"

# Short values would redact ordinary words ("a", "no", ...).
_MIN_SECRET_LENGTH = 4


class SecretRedactor:
    """Replaces every known secret value with a fixed mask.

    Longer secrets are replaced first so a secret that contains another
    one is masked as a whole.
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        self._secrets: list[str] = []
        for secret in secrets:
            self.add(secret)

    def add(self, secret: str) -> None:
        if secret and len(secret) >= _MIN_SECRET_LENGTH and secret not in self._secrets:
            self._secrets.append(secret)
            self._secrets.sort(key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text

    def __len__(self) -> int:
        return len(self._secrets)
