"""
Ingestion layer — read-only access to the market-data snapshot cache.

Submodules:
  snapshot_source — ParquetSnapshotSource: ``<snapshots_dir>/<market>.parquet``

The cache itself (prices and growth percentages) is produced by an external
job; nothing in this package fetches market data.
"""
