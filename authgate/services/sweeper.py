"""Background cleanup of dead OTP challenges and refresh tokens."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authgate.core.exceptions import DatabaseError
from authgate.services.otp_service import OTPEngine
from authgate.services.token_service import RefreshTokenLedger

logger = logging.getLogger(__name__)


class CredentialSweeper:
    """Periodic worker; only ever deletes rows that are already logically dead."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        otp_engine: OTPEngine,
        ledger: RefreshTokenLedger,
        interval_seconds: float = 3600.0,
    ) -> None:
        self.session_factory = session_factory
        self.otp_engine = otp_engine
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._heartbeat: float = 0.0
        self._runs: int = 0
        self._last_result: Dict[str, int] = {}
        self._last_errors: Dict[str, str] = {}
        self._lock = threading.Lock()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="credential-sweeper", daemon=True)
        self._thread.start()
        logger.info("Credential sweeper started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logger.info("Credential sweeper stopped")

    def status(self) -> dict:
        with self._lock:
            return {
                "running": self.is_running(),
                "last_heartbeat": self._heartbeat,
                "runs": self._runs,
                "last_result": dict(self._last_result),
                "last_errors": dict(self._last_errors),
            }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Credential sweep failed")
            self._heartbeat = time.time()
            self._stop_event.wait(max(1.0, self.interval_seconds))

    def _run_step(self, name: str, step: Callable[[Session], int]) -> Tuple[int, Optional[str]]:
        db = self.session_factory()
        try:
            return step(db), None
        except DatabaseError as exc:
            logger.error("Sweep step %s failed: %s", name, exc.message)
            return 0, exc.message
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Sweep step %s failed: %s", name, exc)
            return 0, str(exc)
        finally:
            db.close()

    def run_once(self) -> Dict[str, int]:
        """
        Run both cleanups, each in its own session.

        A failing step counts as zero deletions and is reported under
        last_errors in status(); the other step still runs.
        """
        result: Dict[str, int] = {}
        errors: Dict[str, str] = {}
        steps = (
            ("otp_challenges", self.otp_engine.cleanup_expired),
            ("refresh_tokens", self.ledger.sweep),
        )
        for name, step in steps:
            result[name], error = self._run_step(name, step)
            if error is not None:
                errors[name] = error

        with self._lock:
            self._runs += 1
            self._last_result = result
            self._last_errors = errors
        return result
