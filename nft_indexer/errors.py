class IndexerError(Exception):
    """Base class for indexer errors."""


class ConfigError(IndexerError):
    """Missing or malformed settings."""


class MetadataError(IndexerError):
    """Token metadata could not be resolved."""

    def __init__(self, cid: str, reason: str = ""):
        self.cid = cid
        super().__init__(f"metadata unavailable for {cid}" + (f": {reason}" if reason else ""))
