"""
Journal de diagnostic append-only (formatage téléphone, détection doublons).

Un fichier par type et par jour:
    {log_dir}/{log_type}-{YYYY_MM_DD}.log
Une ligne par événement:
    2026-10-18 14:03:22: message

write() ne fait que mettre la ligne en file: l'écriture disque se fait dans
le thread d'un logging.handlers.QueueListener, hors de la boucle asyncio.

FAIL-SAFE: une erreur d'écriture est signalée au logger applicatif,
jamais propagée à l'appelant.
"""

import logging
import queue
import threading
from datetime import datetime
from logging.handlers import QueueListener
from pathlib import Path
from typing import Callable, Optional

from config import DIAGNOSTIC_LOG_DIR

logger = logging.getLogger("diagnostic_log")


class DatedFileHandler(logging.Handler):
    """Ajoute chaque record au fichier {log_type}-{jour}.log du répertoire"""

    def __init__(self, log_dir: Path):
        super().__init__()
        self.log_dir = Path(log_dir)

    def emit(self, record: logging.LogRecord) -> None:
        path = self.log_dir / f"{record.log_type}-{record.day}.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(record.getMessage() + "\n")
        except OSError as e:
            logger.warning(f"[DIAG] Could not write {record.log_type} entry: {e}")


class DiagnosticLog:
    """Sink fichier daté, injecté dans les services du pipeline"""

    def __init__(
        self,
        log_dir: Path = DIAGNOSTIC_LOG_DIR,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.log_dir = Path(log_dir)
        self._clock = clock or datetime.now
        self._queue = queue.SimpleQueue()
        self._listener: Optional[QueueListener] = None
        self._lock = threading.Lock()

    def file_for(self, log_type: str, when: datetime) -> Path:
        return self.log_dir / f"{log_type}-{when.strftime('%Y_%m_%d')}.log"

    def _ensure_started(self):
        if self._listener is None:
            with self._lock:
                if self._listener is None:
                    listener = QueueListener(self._queue, DatedFileHandler(self.log_dir))
                    listener.start()
                    self._listener = listener

    def write(self, log_type: str, message: str) -> None:
        now = self._clock()
        self._ensure_started()
        self._queue.put(logging.makeLogRecord({
            "msg": f"{now.strftime('%Y-%m-%d %H:%M:%S')}: {message}",
            "log_type": log_type,
            "day": now.strftime('%Y_%m_%d'),
        }))

    def close(self) -> None:
        """Vide la file puis arrête le thread d'écriture"""
        with self._lock:
            if self._listener is not None:
                self._listener.stop()
                self._listener = None
