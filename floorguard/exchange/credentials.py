"""
Signing credential loading.

The key material is only format-checked here. Signing itself happens in a
TransactionSigner; the secret is never logged and never sent over the wire,
only its fingerprint.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Optional

from floorguard.core.errors import ConfigurationError

BECH32_PREFIX = "suiprivkey1"
_BECH32_CHARSET = re.compile(r"^[qpzry9x8gf2tvdw0s3jn54khce6mua7l]+$")
_HEX_KEY = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class SigningCredential:
    """A loaded private key in one of the two accepted encodings."""
    encoding: str  # "bech32" or "hex"
    fingerprint: str
    _secret: str = field(repr=False)

    @property
    def secret(self) -> str:
        return self._secret

    def __str__(self) -> str:
        return f"SigningCredential({self.encoding}, {self.fingerprint})"

    @classmethod
    def load(cls, raw: Optional[str]) -> "SigningCredential":
        """
        Parse a Bech32 ``suiprivkey1...`` string or a 32-byte hex key.

        Raises:
            ConfigurationError: empty or malformed key
        """
        key = (raw or "").strip()
        if not key:
            raise ConfigurationError("No signing credential provided")

        if key.lower().startswith(BECH32_PREFIX):
            data = key.lower()[len(BECH32_PREFIX):]
            if len(data) < 8 or not _BECH32_CHARSET.match(data):
                raise ConfigurationError("Malformed suiprivkey credential")
            encoding = "bech32"
        elif _HEX_KEY.match(key):
            encoding = "hex"
        else:
            raise ConfigurationError(
                "Signing credential must be a suiprivkey1... string or 32-byte hex"
            )

        fingerprint = hashlib.sha256(key.encode()).hexdigest()[:16]
        return cls(encoding=encoding, fingerprint=fingerprint, _secret=key)

    @classmethod
    def try_load(cls, raw: Optional[str]) -> Optional["SigningCredential"]:
        """Like load, but returns None when no key is configured."""
        if not raw:
            return None
        return cls.load(raw)
