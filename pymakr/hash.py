from pathlib import Path
from typing import Union

FNV1A32_OFFSET = 0x811C9DC5
FNV1A32_PRIME = 0x01000193


def fnv1a_update(h: int, data: bytes) -> int:
    size = 1 << 32
    for byte in data:
        h = h ^ byte
        h = (h * FNV1A32_PRIME) % size
    return h


def fnv1a_bytes(data: bytes) -> int:
    """Compute the FNV-1a 32-bit hash of in-memory data."""
    return fnv1a_update(FNV1A32_OFFSET, data)


def fnv1a(fn: Union[str, Path]) -> int:
    """Compute the FNV-1a 32-bit hash of a file."""
    fn = Path(fn)
    h = FNV1A32_OFFSET
    with fn.open("rb") as f:
        while True:
            data = f.read(65536)
            if not data:
                break
            h = fnv1a_update(h, data)
    return h
