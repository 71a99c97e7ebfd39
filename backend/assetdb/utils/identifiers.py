from __future__ import annotations

import os
import threading
import time
import uuid

_lock = threading.Lock()
_last_ms = 0
_last_seq = 0


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string (time-ordered).

    UUIDv7 layout per draft:
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 12-bit sequence (rand_a), monotonic within one millisecond
    - 62-bit randomness

    Ids produced by one process sort in creation order, which keeps ledger
    entries written in the same millisecond in append order.
    """
    global _last_ms, _last_seq
    with _lock:
        ts_ms = int(time.time() * 1000)
        if ts_ms <= _last_ms:
            ts_ms = _last_ms
            _last_seq += 1
            if _last_seq > 0x0FFF:
                ts_ms += 1
                _last_seq = 0
        else:
            _last_seq = int.from_bytes(os.urandom(2), "big") & 0x01FF
        _last_ms = ts_ms
        seq = _last_seq

    raw = bytearray(ts_ms.to_bytes(6, "big", signed=False) + os.urandom(10))
    raw[6] = 0x70 | (seq >> 8)
    raw[7] = seq & 0xFF
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def uuid7_timestamp_ms(value: str) -> int:
    """Return the millisecond timestamp embedded in a UUIDv7 string."""
    return int.from_bytes(uuid.UUID(value).bytes[:6], "big")
