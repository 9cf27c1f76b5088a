"""
JSON-lines sink speaking the capture host protocol on a text stream.

Every emitted document becomes one ``captured`` line; every checkpoint handed
over by :class:`core.checkpoint.HostCheckpointStore` becomes one ``checkpoint``
line. The host treats everything up to a checkpoint line as committed.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from core.interfaces import Sink


logger = logging.getLogger(__name__)


class JsonLinesSink(Sink):
    """Sink that writes captured documents and checkpoints as JSON lines."""

    name = "JsonLinesSink"

    def __init__(self, stream: Optional[TextIO] = None, *, path: Optional[str] = None, binding: int = 0):
        self._binding = binding
        self._owns_stream = False
        if stream is None and path is not None:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            stream = open(path, "a", encoding="utf-8")
            self._owns_stream = True
        self._stream: TextIO = stream or sys.stdout

    def _write(self, message: Dict[str, Any]) -> None:
        self._stream.write(json.dumps(message, separators=(",", ":"), default=str))
        self._stream.write("\n")

    async def emit(self, document: Dict[str, Any]) -> None:
        self._write({"captured": {"binding": self._binding, "doc": document}})

    async def flush(self) -> None:
        self._stream.flush()

    async def commit(self, blob: str) -> None:
        """Write a checkpoint message and flush it out to the host."""
        self._write({"checkpoint": {"state": {"updated": json.loads(blob), "mergePatch": False}}})
        self._stream.flush()
        logger.debug("Committed checkpoint %s", blob)

    async def close(self) -> None:
        self._stream.flush()
        if self._owns_stream:
            self._stream.close()
