"""Prozessübergreifende Publish-Sperre.

``flock`` auf einer Lock-Datei im Datenverzeichnis. Die Sperre hängt am
offenen Dateideskriptor: endet der Prozess, gibt der Kernel sie frei,
eine liegengebliebene Lock-Datei blockiert also nie. Zwei Deskriptoren
auf dieselbe Datei sperren sich auch innerhalb eines Prozesses
gegenseitig.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
from typing import TYPE_CHECKING

from cronkeeper.utils.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

log = get_logger(__name__)


class PublishLock:
    """Exklusive Sperre über ``fcntl.flock``.

    Gewartet wird durch Polling mit ``LOCK_NB``, damit ein abgebrochener
    Aufrufer keinen hängenden Thread zurücklässt.
    """

    def __init__(self, path: Path, poll_interval: float = 0.05) -> None:
        self.path = path
        self._poll_interval = poll_interval
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    async def acquire(self, *, blocking: bool = True) -> bool:
        """Holt die Sperre.

        Args:
            blocking: False = einmal versuchen und bei belegter Sperre
                sofort False liefern.

        Raises:
            OSError: Lock-Datei nicht anlegbar.
        """
        if self._fd is not None:
            raise RuntimeError(f"{self.path} already held by this instance")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        waiting = False
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if not blocking:
                        os.close(fd)
                        return False
                    if not waiting:
                        log.info("publish_lock_waiting", path=str(self.path))
                        waiting = True
                    await asyncio.sleep(self._poll_interval)
        except BaseException:
            os.close(fd)
            raise
        self._fd = fd
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
