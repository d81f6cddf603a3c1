"""Event ingestion: checkpointed indexing and the trigger entry points."""

from __future__ import annotations

from delphi_pulse.indexer.cycle import recompute_aggregates, run_ingestion_cycle
from delphi_pulse.indexer.engine import IngestionEngine, IngestionResult

__all__ = ["IngestionEngine", "IngestionResult", "recompute_aggregates", "run_ingestion_cycle"]
