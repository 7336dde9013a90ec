"""Point-in-time views of volumes for the capture stage.

A snapshot failure is never fatal: the capture falls back to reading the
live volume. A snapshot that was created is always torn down, whatever the
outcome of the capture that used it.
"""

import contextlib
import logging

from .. import __util__
from .models import PartitionDescriptor

logger = logging.getLogger(__name__)


class SnapshotManager:
    """Wrap a platform SnapshotProvider with fallback and guaranteed teardown."""

    def __init__(self, provider, timeout: float = 120) -> None:
        self.provider = provider
        self.timeout = timeout
        self.degraded: list[str] = []

    @contextlib.contextmanager
    def snapshot(self, partition: PartitionDescriptor, live_source: str):
        """Yield the path to capture ``partition`` from.

        Args:
            partition: The partition about to be captured
            live_source: Path read when no snapshot can be used

        Yields:
            The snapshot path, or ``live_source`` in degraded mode
        """
        if partition.is_efi or not self.provider.supports(partition):
            logger.debug("No snapshot support for %s, reading live", partition.identifier)
            yield live_source
            return

        try:
            handle = self.provider.create(partition, self.timeout)
        except (__util__.SnapshotError, __util__.StageTimeoutError, __util__.ToolMissingError) as e:
            logger.warning(
                "Snapshot of %s unavailable, capturing the live volume: %s",
                partition.identifier,
                e,
            )
            self.degraded.append(partition.identifier)
            yield live_source
            return

        try:
            yield handle.path
        finally:
            self._teardown(handle)

    def _teardown(self, handle: __util__.SnapshotHandle) -> None:
        try:
            self.provider.delete(handle, self.timeout)
        except __util__.BackupError as e:
            logger.error(
                "Could not remove snapshot %s of %s: %s",
                handle.snapshot_id,
                handle.partition_id,
                e,
            )
