"""Off-chain mirror of medical-record ledger events and IPFS metadata."""

__version__ = "0.1.0"
