from __future__ import annotations

import uuid

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
TASK_ID_BYTES = 16
TASK_ID_LENGTH = 22
MAX_TASK_ID_LENGTH = 128


def _base58_fixed(raw: bytes) -> str:
    if len(raw) != TASK_ID_BYTES:
        raise ValueError("task id encoder requires exactly 16 bytes")
    n = int.from_bytes(raw, "big")
    chars: list[str] = []
    while n > 0:
        n, rem = divmod(n, 58)
        chars.append(BASE58_ALPHABET[rem])
    encoded = "".join(reversed(chars))
    # Left-pad so every id has the same width.
    return BASE58_ALPHABET[0] * (TASK_ID_LENGTH - len(encoded)) + encoded


def new_task_id() -> str:
    return _base58_fixed(uuid.uuid4().bytes)


def normalize_task_id(value: object) -> str:
    """Return a trimmed path id, or "" when it cannot name a task.

    Ids created before the Base58 scheme (plain UUID text) are still accepted,
    so this only bounds length and rejects separators.
    """
    if not isinstance(value, str):
        return ""
    s = value.strip()
    if not s or len(s) > MAX_TASK_ID_LENGTH or "/" in s:
        return ""
    return s
