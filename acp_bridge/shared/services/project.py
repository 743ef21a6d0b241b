"""Project identity derived from a working directory."""

from __future__ import annotations

from pathlib import PurePath


def normalize_directory(directory: str) -> str:
    return directory.replace("\\", "/").lower()


def generate_project_id(directory: str) -> str:
    """Return a stable ``proj-<hex>`` id for *directory*.

    The hash is the classic 31-multiplier string hash wrapped to a signed
    32-bit integer, so the same path always yields the same id regardless
    of separator style or case. It runs over UTF-16 code units, so
    characters outside the BMP contribute their surrogate pair.
    """
    data = normalize_directory(directory).encode("utf-16-le", "surrogatepass")
    h = 0
    for i in range(0, len(data), 2):
        unit = int.from_bytes(data[i:i + 2], "little")
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return f"proj-{abs(h):x}"


def project_name(directory: str) -> str:
    name = PurePath(directory.replace("\\", "/")).name
    return name or "Project"
