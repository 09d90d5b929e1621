"""
Change Detector

Cheap, deterministic fingerprint of a screen-capture payload. The payload is
sampled at a fixed stride from the front and, independently, from the back;
two rolling shift-and-add hashes are combined with the payload length.

Not collision-free: it only gates how often a capture gets analyzed.
"""

from typing import Union

SAMPLE_STRIDE = 100
SAMPLE_COUNT = 500
_MASK = 0xFFFFFFFF


def _rolling_hash(data: bytes, indices) -> int:
    h = 0
    for i in indices:
        h = ((h << 5) - h + data[i]) & _MASK
    return h


def compute_fingerprint(payload: Union[str, bytes], stride: int = SAMPLE_STRIDE) -> str:
    """
    Fingerprint a capture payload.

    Args:
        payload: Encoded image (base64 text or raw bytes)
        stride: Distance between sampled positions

    Returns:
        ``"<front-hex>-<back-hex>-<length>"``
    """
    data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    length = len(data)
    if length == 0:
        return "0-0-0"

    limit = min(length, stride * SAMPLE_COUNT)
    front = _rolling_hash(data, range(0, limit, stride))
    back = _rolling_hash(data, range(length - 1, max(length - 1 - limit, -1), -stride))

    return f"{front:08x}-{back:08x}-{length}"
