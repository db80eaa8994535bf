"""Event indexer for the GameNFT contract and its marketplace."""

__version__ = "0.1.0"
