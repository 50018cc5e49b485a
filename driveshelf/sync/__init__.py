from driveshelf.sync.engine import sync_engine

__all__ = ["sync_engine"]
