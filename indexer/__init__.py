# indexer/__init__.py
# Solana slot indexer: backfill + live tail, Raydium instruction classification and swap reconstruction.

__version__ = "0.1.0"
