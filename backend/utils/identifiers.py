"""
Correlation identifiers.

``onrampId`` and ``offRampId`` are 256-bit values drawn from the OS CSPRNG
and rendered as ``0x`` + 64 hex chars, the encoding the contract expects for
a ``bytes32`` argument. The contract treats them as an authorization tag, so
they are never accepted from callers.
"""

import re
import secrets

CORRELATION_ID_BYTES = 32

_CORRELATION_ID_RE = re.compile(r"0x[0-9a-fA-F]{64}")


def new_correlation_id() -> str:
    """Generate a fresh 256-bit correlation id."""
    return "0x" + secrets.token_bytes(CORRELATION_ID_BYTES).hex()


def is_correlation_id(value) -> bool:
    return isinstance(value, str) and bool(_CORRELATION_ID_RE.fullmatch(value))


def correlation_id_to_bytes(value: str) -> bytes:
    """Convert a correlation id to the 32 raw bytes passed on-chain."""
    if not is_correlation_id(value):
        raise ValueError(f"Not a bytes32 correlation id: {value!r}")
    return bytes.fromhex(value[2:])


def to_hex(value) -> str:
    """Render bytes-like chain values (tx hashes, bytes32 args) as 0x-hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text
