"""
Pseudonym generation for linking identity records to clinical records.

A pseudonym is the only key the clinical store knows about. It must carry
no information about the person, so it is drawn from the OS CSPRNG rather
than derived from any field value.
"""

from __future__ import annotations

import re
import secrets
from typing import Protocol


class PseudonymGenerator(Protocol):
    def generate(self) -> str: ...

    def validate(self, value: str) -> bool: ...


class SecretsPseudonymGenerator:
    """Mints ``pseudo_<hex>`` identifiers using :mod:`secrets`."""

    def __init__(self, prefix: str = "pseudo_", num_bytes: int = 16):
        if num_bytes < 8:
            raise ValueError("num_bytes must be at least 8")
        self.prefix = prefix
        self.num_bytes = num_bytes
        self._pattern = re.compile(
            rf"^{re.escape(prefix)}[0-9a-f]{{{num_bytes * 2}}}$"
        )

    def generate(self) -> str:
        return f"{self.prefix}{secrets.token_hex(self.num_bytes)}"

    def validate(self, value: str) -> bool:
        if not isinstance(value, str):
            return False
        return self._pattern.match(value) is not None
