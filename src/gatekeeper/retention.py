"""Retention: removes stale window records and quiet escalation states."""

import logging
from dataclasses import dataclass
from datetime import timedelta

from gatekeeper.clock import Clock
from gatekeeper.errors import StoreUnavailable
from gatekeeper.store.base import AdmissionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PruneResult:
    """Counts deleted by one retention run."""

    windows: int = 0
    blocks: int = 0


class WindowPruner:
    """
    Deletes window records and escalation states older than the retention period.

    Runs as a scheduled job to prevent unbounded growth of the window and
    block tables. A block state is deleted only once it has been quiet for
    the whole period: not seen, no violation and no block ending since the
    cutoff. Quota records are never deleted.
    """

    def __init__(
        self,
        store: AdmissionStore,
        clock: Clock,
        retention_days: int = 30,
    ) -> None:
        """
        Initialize the pruner.

        Args:
            store: Admission store holding the window records
            clock: Time source
            retention_days: Days to retain window records after they end
        """
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        self._store = store
        self._clock = clock
        self._retention_days = retention_days

    @property
    def retention_days(self) -> int:
        return self._retention_days

    async def prune(self) -> PruneResult:
        """
        Delete window records that ended, and block states last active,
        before the retention cutoff.

        Returns:
            Deleted counts (0 for a part whose store call failed)
        """
        cutoff = self._clock.now() - timedelta(days=self._retention_days)

        windows = 0
        try:
            windows = await self._store.prune_windows(cutoff)
        except StoreUnavailable as e:
            logger.error(f"Failed to prune window records: {e}")

        blocks = 0
        try:
            blocks = await self._store.prune_blocks(cutoff)
        except StoreUnavailable as e:
            logger.error(f"Failed to prune block states: {e}")

        if windows or blocks:
            logger.info(
                f"Pruned {windows} window records and {blocks} block states "
                f"older than {self._retention_days} days"
            )
        else:
            logger.debug("Nothing to prune")
        return PruneResult(windows=windows, blocks=blocks)
