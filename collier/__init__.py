# Collier Package
"""
NFT collection miner with three main components:
- Source: Queries program accounts and token holders over Solana RPC
- Codec: Decodes metadata, mint and token account bytes
- Pipeline: Resolves creator -> metadata -> mint -> holder links into the store
"""

__version__ = "0.1.0"

# Expose main classes for easier imports
from collier.pipeline import MiningPipeline
from collier.source import RpcAccountSource, SourceBudget
from collier.store import LinkStore

__all__ = [
    "MiningPipeline",
    "RpcAccountSource",
    "SourceBudget",
    "LinkStore",
]
