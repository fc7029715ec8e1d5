import json
import os
import threading
import time


def truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[: max_len - 3] + "..."


def ms_now() -> int:
    return time.time_ns() // 1_000_000


def stable_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, default=str)


_id_lock = threading.Lock()
_last_id_ns = 0


def ascending_id(prefix: str) -> str:
    """Process-wide strictly increasing id. Fixed width, so string order is creation order."""
    global _last_id_ns
    with _id_lock:
        now = max(time.time_ns(), _last_id_ns + 1)
        _last_id_ns = now
    return f"{prefix}_{now:020x}{os.urandom(3).hex()}"
