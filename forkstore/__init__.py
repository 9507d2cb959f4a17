"""forkstore - a branch-preserving replicated key-value store.

Each machine appends chain-linked entries for the keys it writes; logs from
other machines are merged in, and concurrent writes surface as branches.
"""

__version__ = "0.1.0"
