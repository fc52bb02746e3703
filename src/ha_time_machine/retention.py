from collections.abc import Callable

from loguru import logger

from .models import Snapshot, newest_first


def select_expired(snapshots: list[Snapshot], keep: int) -> list[Snapshot]:
    """Snapshots beyond the newest `keep`, oldest last.

    A negative keep, or one that covers the whole set, expires nothing.
    keep == 0 expires everything.
    """
    if keep < 0 or keep >= len(snapshots):
        return []
    return newest_first(snapshots)[keep:]


class RetentionPolicy:
    def __init__(self, delete: Callable[[Snapshot], None]):
        self.delete = delete

    def prune(self, snapshots: list[Snapshot], keep: int) -> list[str]:
        expired = select_expired(snapshots, keep)
        if not expired:
            logger.debug(f"Retention: {len(snapshots)} snapshots, keep {keep}, nothing to delete")
            return []

        logger.info(f"Retention: deleting {len(expired)} of {len(snapshots)} snapshots (keep {keep})")

        deleted: list[str] = []
        for snapshot in expired:
            try:
                self.delete(snapshot)
                deleted.append(snapshot.id)
                logger.debug(f"Deleted snapshot {snapshot.id}")
            except Exception as e:
                logger.warning(f"Failed to delete snapshot {snapshot.id}: {e}")

        return deleted
