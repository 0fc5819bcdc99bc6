"""
TierMem: multi-tier conversational memory (working buffer, graph store, vector archive).
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()
