"""crdbhistory: CockroachDB cluster settings history.

Periodically snapshots the cluster settings of one or more monitored clusters
and records the changes between consecutive snapshots.
"""

__version__ = "0.1.0"
