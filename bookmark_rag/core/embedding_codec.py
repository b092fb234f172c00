"""Compact embedding encoding for export files.

Vectors are quantized to int16 (values clamped to [-1, 1], scale 32767),
packed little-endian and base64 encoded. About 4x smaller than JSON floats.
"""

from __future__ import annotations

import base64
import binascii
import re
import struct
from typing import Any

SCALE = 32767

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def encode_embedding(vector: list[float]) -> str:
    quantized = [round(max(-1.0, min(1.0, v)) * SCALE) for v in vector]
    return base64.b64encode(struct.pack(f"<{len(quantized)}h", *quantized)).decode("ascii")


def is_encoded_embedding(value: Any) -> bool:
    return isinstance(value, str) and len(value) >= 4 and bool(_BASE64_RE.match(value))


def decode_embedding(value: Any) -> list[float] | None:
    """Decode an encoded vector, or accept a raw list of numbers.

    Returns None for anything that is not a valid embedding.
    """
    if isinstance(value, list):
        if value and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value):
            return [float(v) for v in value]
        return None
    if not is_encoded_embedding(value):
        return None
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None
    if not raw or len(raw) % 2:
        return None
    return [q / SCALE for q in struct.unpack(f"<{len(raw) // 2}h", raw)]
