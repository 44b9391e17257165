import asyncio
import json
import os
import time
from pathlib import Path
from typing import Any

import yaml

# --- Centralized Path Constant ---
# Single source of truth for the cx-replay home directory.
CX_REPLAY_HOME = Path(os.getenv("CX_REPLAY_HOME", Path.home() / ".cx-replay"))


def load_document(path: Path) -> Any:
    """
    Loads a JSON or YAML document from disk. Recorder exports are JSON, while
    hand-written step files and configuration are usually YAML.
    """
    text = Path(path).read_text(encoding="utf-8")
    if Path(path).suffix.lower() == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def now_ms() -> float:
    """Wall-clock milliseconds, used for session timestamps."""
    return time.time() * 1000


async def cancellable_sleep(delay_ms: float, cancel_event: asyncio.Event | None = None) -> bool:
    """
    Sleeps for up to `delay_ms`, waking early when `cancel_event` is set.
    Returns True when the sleep was cut short by cancellation.
    """
    if cancel_event is not None and cancel_event.is_set():
        return True
    if delay_ms <= 0:
        return False
    if cancel_event is None:
        await asyncio.sleep(delay_ms / 1000)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay_ms / 1000)
    except asyncio.TimeoutError:
        return False
    return True
