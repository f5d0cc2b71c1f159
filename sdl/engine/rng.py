"""
Per-run, per-name random streams.

Every draw in a simulation comes from a generator derived from
``(seed, run_index, name)``, so results do not depend on the order in which
runs or declarations are executed, including across worker threads.
"""

import hashlib

import numpy as np


def stream_seed(seed: int, run_index: int, name: str) -> int:
    digest = hashlib.blake2b(f"{seed}:{run_index}:{name}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big")


def stream(seed: int, run_index: int, name: str) -> np.random.Generator:
    """Independent generator for one named quantity in one run."""
    return np.random.default_rng(stream_seed(seed, run_index, name))
