"""Chain id normalisation and contract address validation."""

import re

_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_EVM_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

EVM_CHAINS = frozenset({"ethereum", "bsc", "base", "polygon", "arbitrum", "avalanche", "optimism"})

_CHAIN_ALIASES = {
    "sol": "solana",
    "solana": "solana",
    "eth": "ethereum",
    "ethereum": "ethereum",
    "bsc": "bsc",
    "binance": "bsc",
    "base": "base",
    "polygon": "polygon",
    "arbitrum": "arbitrum",
    "avalanche": "avalanche",
    "optimism": "optimism",
    "sui": "sui",
    "aptos": "aptos",
}


def normalize_chain(chain_id: str | None) -> str | None:
    if not chain_id:
        return None
    return _CHAIN_ALIASES.get(chain_id.strip().lower())


def is_valid_address(address: str | None, chain: str) -> bool:
    """Reject pair paths, native placeholders and addresses from another chain."""
    if not address:
        return False
    if chain == "solana":
        return bool(_BASE58_RE.match(address))
    if chain in EVM_CHAINS:
        return bool(_EVM_RE.match(address))
    return "/" not in address and ":" not in address
