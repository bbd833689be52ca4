# address_normalizer.py
# EVM address normalization for seller/buyer identity comparison.
from typing import Optional

from eth_utils import is_address, to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def is_valid_address(addr: Optional[str]) -> bool:
    if not addr or not isinstance(addr, str):
        return False
    return is_address(addr.strip())


def normalize_address(addr: str) -> str:
    """
    Return the EIP-55 checksummed form of an address.
    Accepts lowercase, uppercase or already-checksummed hex with 0x prefix.
    """
    addr = addr.strip()
    if not is_address(addr):
        raise ValueError(f"not a valid address: {addr!r}")
    return to_checksum_address(addr)


def addresses_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive address comparison; invalid or empty input never matches."""
    if not is_valid_address(a) or not is_valid_address(b):
        return False
    return normalize_address(a) == normalize_address(b)


def topic_to_address(topic: bytes) -> str:
    """An indexed address occupies the low 20 bytes of a 32-byte log topic."""
    if len(topic) != 32:
        raise ValueError(f"topic must be 32 bytes (got {len(topic)})")
    return to_checksum_address(topic[12:])
