# aggregator/config.py
# Module-level defaults. Call sites read these through getattr(config, NAME, default)
# so tests and operators can override individual values.

# Primary RPC (used by the on-chain price source and the gas oracle).
RPC_URL = "https://rpc.hyperliquid.xyz/evm"

# Optional pool (comma/newline separated via env RPC_URLS).
RPC_URLS = [
    "https://rpc.hyperliquid.xyz/evm",
]

CHAIN_ID = 999

# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 0.5
RPC_TIMEOUT_MAX_S = 4.0
RPC_DEFAULT_TIMEOUT_S = 2.0
RPC_RETRY_COUNT = 0  # live pricing data is never retried
RPC_BACKOFF_BASE_S = 0.35

# Order-book venues expose depth over an HTTP info endpoint.
ORDER_BOOK_INFO_URL = "https://api.hyperliquid.xyz/info"
ORDER_BOOK_DEPTH_LEVELS = 20

# Quote collection
PER_VENUE_TIMEOUT_S = 2.0
OVERALL_DEADLINE_S = 5.0
MAX_CONCURRENCY = 16

# Venue state older than this is rejected as stale.
STALE_STATE_TOLERANCE_S = 30.0

# Routing
PRICE_IMPACT_CEILING_BPS = 100  # 1.00%
MAX_SPLITS = 3
MAX_HOPS = 3
MAX_HOPS_LIMIT = 4
SPLIT_GRANULARITY_BPS = 100  # 1% of input per allocation unit
MIN_SPLIT_IMPROVEMENT = 0  # split must be strictly better than single venue

# Cost estimation
SECONDS_PER_HOP = 3.0
DEFAULT_GAS_ESTIMATE = 150_000

# Execution planning
DEFAULT_SLIPPAGE_BPS = 50  # 0.50%
DEADLINE_WINDOW_S = 1200  # 20 minutes

# Arbitrage scan
ARB_MIN_PROFIT_BPS = 5.0

# Venue config files live under configs/venues/<network>.json
VENUE_NETWORK = "hyperevm"

TOKENS = {
    "HYPE": "0x5555555555555555555555555555555555555555",
    "USDC": "0xb88339CB7199b77E23DB6E890353E22632Ba630f",
    "USDT": "0xB8CE59FC3717ada4C02eaDF9682A9e934F625ebb",
    "UBTC": "0x9FDBdA0A5e284c32744D2f17Ee5c74B284993463",
    "UETH": "0xBe6727B535545C67d5cAa73dEa54865B92CF7907",
    "PURR": "0x9b498C3c8A0b8CD8BA1D9851d40D186F1872b44E",
}

TOKEN_DECIMALS = {
    "HYPE": 18,
    "USDC": 6,
    "USDT": 6,
    "UBTC": 8,
    "UETH": 18,
    "PURR": 18,
}

# Intermediate assets tried for multi-hop paths (symbols).
HUB_TOKENS = ["HYPE", "USDC"]

# Fast reverse lookup (address -> symbol). Lower-case for stable comparisons.
TOKEN_BY_ADDR = {str(addr).lower(): sym for sym, addr in TOKENS.items()}


def _norm_token(token: str) -> str:
    return str(token).strip()


def token_address(token: str) -> str:
    """Return canonical address if token is a known symbol, else return input."""
    t = _norm_token(token)
    if not t:
        return t
    if t in TOKENS:
        return TOKENS[t]
    t_up = t.upper()
    if t_up in TOKENS:
        return TOKENS[t_up]
    return t


def token_symbol(token: str) -> str:
    """Return symbol for known token, or a short address string."""
    t = _norm_token(token)
    if not t:
        return ""
    if t in TOKENS:
        return t
    t_up = t.upper()
    if t_up in TOKENS:
        return t_up
    sym = TOKEN_BY_ADDR.get(t.lower())
    if sym:
        return sym
    if t.startswith("0x") and len(t) > 10:
        return t[:6] + "..." + t[-4:]
    return t


def token_decimals(token: str) -> int:
    """Return decimals for known token symbol/address."""
    t = _norm_token(token)
    if not t:
        return 18
    if t in TOKEN_DECIMALS:
        return int(TOKEN_DECIMALS[t])
    t_up = t.upper()
    if t_up in TOKEN_DECIMALS:
        return int(TOKEN_DECIMALS[t_up])
    sym = TOKEN_BY_ADDR.get(t.lower())
    if sym:
        return int(TOKEN_DECIMALS.get(sym, 18))
    return 18
