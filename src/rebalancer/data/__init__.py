"""Value-tracking persistence layer.

Provides SQLite database management and the typed read/write store for
snapshots, operations, daily aggregates, fees and pending redeploys.
"""

from rebalancer.data.database import TrackerDatabase
from rebalancer.data.store import TrackerStore

__all__ = ["TrackerDatabase", "TrackerStore"]
