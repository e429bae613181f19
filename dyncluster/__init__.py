"""Dynamic Cluster daemon (dyncluster).

Long-running daemon that hands out short-lived, multi-node database clusters
built from Docker containers, for integration testing:
 - clusters are owned by the caller that allocated them
 - every cluster carries an absolute expiry time
 - a background sweep tears down expired clusters
 - shutdown is ordered so no sweep ever runs against a closed registry
"""

__version__ = "0.3.0"
