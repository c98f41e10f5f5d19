"""
Entropy sources for ceremony contributions.

Soundness of the whole setup rests on no single party knowing the
combined toxic waste. Each contribution therefore needs a fresh,
unpredictable token that is never persisted, logged or reused. The
pipeline cannot prove a token is unpredictable; it can only reject
tokens that are obviously too short or repeated.
"""

import re
import secrets

from config.config import MIN_ENTROPY_BYTES

from .errors import EntropyError

MIN_ENTROPY_BITS = MIN_ENTROPY_BYTES * 8

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class EntropySource:
    """Produces a high-entropy hex token on demand"""

    def token(self) -> str:
        raise NotImplementedError


class SecureEntropySource(EntropySource):
    """Cryptographically strong tokens from the OS CSPRNG"""

    def __init__(self, num_bytes: int = 32):
        if num_bytes < MIN_ENTROPY_BYTES:
            raise EntropyError(
                f"Entropy tokens need at least {MIN_ENTROPY_BITS} bits, got {num_bytes * 8}")
        self.num_bytes = num_bytes

    def token(self) -> str:
        return secrets.token_hex(self.num_bytes)


def validate_entropy(token: str) -> str:
    """Reject tokens that are not hex or carry fewer than 160 bits"""
    if not isinstance(token, str) or not _HEX_RE.match(token):
        raise EntropyError("Entropy token must be a hex string")
    if len(token) * 4 < MIN_ENTROPY_BITS:
        raise EntropyError(
            f"Entropy token carries {len(token) * 4} bits, need at least {MIN_ENTROPY_BITS}")
    return token
