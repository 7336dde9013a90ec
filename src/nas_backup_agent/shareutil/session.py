"""Authenticated sessions to the remote storage share.

Multi-hour jobs routinely outlive a share session, so every remote write
after a long capture is preceded by reconnect(): the session is torn down
and re-established, with a bounded number of attempts.
"""

import logging
import threading
import time
from pathlib import Path
from types import TracebackType
from typing import Callable, Optional, Type

from .. import __util__
from ..core.models import ShareTarget

logger = logging.getLogger(__name__)


class ShareSession:
    def __init__(
        self,
        mounter,
        target: ShareTarget,
        attempts: int = 3,
        delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.mounter = mounter
        self.target = target
        self.attempts = max(1, attempts)
        self.delay = delay
        self._sleep = sleep
        self._lock = threading.Lock()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def root(self) -> Path:
        """Local path of the share root while connected."""
        return self.mounter.root(self.target)

    def connect(self) -> None:
        """Open the session.

        Raises:
            ShareConnectionError: If the share cannot be reached or mounted
        """
        with self._lock:
            try:
                self.mounter.mount(self.target)
            except __util__.StageTimeoutError as e:
                raise __util__.ShareConnectionError(
                    f"Connecting to {self.target.smb_path} timed out: {e}"
                ) from e
            except __util__.ToolMissingError as e:
                raise __util__.ShareConnectionError(str(e)) from e
            except OSError as e:
                raise __util__.ShareConnectionError(
                    f"Mounting {self.target.smb_path} failed: {e}"
                ) from e
            self._connected = True

    def disconnect(self) -> None:
        """Close the session. Never raises."""
        with self._lock:
            if not self._connected:
                return
            try:
                self.mounter.unmount(self.target)
            except (__util__.BackupError, OSError) as e:
                logger.warning("Disconnecting from %s failed: %s", self.target.smb_path, e)
            self._connected = False

    def reconnect(self) -> None:
        """Tear down and re-establish the session before a remote write.

        Attempt n waits n * delay seconds before the next one.

        Raises:
            ReconnectExhaustedError: If every attempt failed
        """
        last_error = None
        for attempt in range(1, self.attempts + 1):
            self.disconnect()
            try:
                self.connect()
                if attempt > 1:
                    logger.info(
                        "Reconnected to %s on attempt %d of %d",
                        self.target.smb_path,
                        attempt,
                        self.attempts,
                    )
                return
            except __util__.ShareConnectionError as e:
                last_error = e
                logger.warning(
                    "Reconnect attempt %d of %d to %s failed: %s",
                    attempt,
                    self.attempts,
                    self.target.smb_path,
                    e,
                )
                if attempt < self.attempts:
                    self._sleep(self.delay * attempt)

        raise __util__.ReconnectExhaustedError(
            f"Could not reconnect to {self.target.smb_path} to upload metadata after "
            f"{self.attempts} attempt(s): {last_error}. The captured image data was "
            f"written during capture and is likely intact."
        )

    def keepalive(self) -> bool:
        """Re-mount the share if it dropped. Returns False if that failed."""
        try:
            if self.mounter.is_mounted(self.target):
                return True
        except OSError as e:
            logger.debug("Share check failed: %s", e)
        logger.info("Share %s dropped, reconnecting", self.target.smb_path)
        try:
            self._connected = False
            self.connect()
            return True
        except __util__.ShareConnectionError as e:
            logger.warning("Keep-alive reconnect failed: %s", e)
            return False

    def __enter__(self) -> "ShareSession":
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        self.disconnect()
