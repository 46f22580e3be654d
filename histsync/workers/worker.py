"""Worker process entry point.

Requests arrive as ``{"operation", "args", "call_id"}`` dicts on the worker's
own queue; a ``None`` request stops the worker.  Responses go to the shared
queue as ``{"call_id", "success", "value"}`` or ``{"call_id", "success",
"error"}``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from histsync.processing.peaks import find_peaks_batch

logger = logging.getLogger("histsync.workers.worker")


def ping(delay: float = 0.0) -> str:
    if delay:
        time.sleep(delay)
    return "pong"


OPERATIONS: dict[str, Callable[..., Any]] = {
    "ping": ping,
    "find-peaks": find_peaks_batch,
}


def worker_main(worker_id: int, requests: Any, responses: Any) -> None:
    logger.debug("Worker %d started", worker_id)
    while True:
        message = requests.get()
        if message is None:
            break
        call_id = message["call_id"]
        try:
            fn = OPERATIONS[message["operation"]]
            value = fn(*message.get("args", ()))
        except Exception as exc:
            responses.put({"call_id": call_id, "success": False, "error": f"{type(exc).__name__}: {exc}"})
        else:
            responses.put({"call_id": call_id, "success": True, "value": value})
    logger.debug("Worker %d stopped", worker_id)
