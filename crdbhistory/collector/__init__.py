"""Collector package for crdbhistory.

Samples cluster settings from every monitored source and hands them to the
SnapshotStore for diffing.

Submodules
----------
source     -- SourceClient protocol and the asyncpg-backed CockroachSource.
collector  -- SourceCollector: per-source schedule, metadata refresh, cycle.
retention  -- RetentionSweeper: per-source age-based cleanup.
supervisor -- CollectorSupervisor: all-or-nothing construction, fan-out run
              and manual trigger.
"""

from crdbhistory.collector.collector import CollectorState, SourceCollector
from crdbhistory.collector.retention import RetentionSweeper, SweepResult
from crdbhistory.collector.source import CockroachSource, SourceClient
from crdbhistory.collector.supervisor import (
    CollectionError,
    CollectorStartupError,
    CollectorSupervisor,
    connect_cockroach,
)

__all__ = [
    "CockroachSource",
    "CollectionError",
    "CollectorStartupError",
    "CollectorState",
    "CollectorSupervisor",
    "RetentionSweeper",
    "SourceClient",
    "SourceCollector",
    "SweepResult",
    "connect_cockroach",
]
