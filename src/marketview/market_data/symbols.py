"""Trading-pair ticker to CoinGecko coin id resolution.

Resolution order:
1. Static table lookup (verbatim, then quote-suffix heuristics).
2. Positive/negative discovery caches.
3. CoinGecko search endpoint, at most once per ticker per process.

The resolver never raises: an unknown ticker resolves to None, which callers
treat as "no chart available".
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType

from marketview.logging import get_logger

logger = get_logger(__name__)

SearchFn = Callable[[str], Awaitable[list[dict]]]

# Static mapping from exchange tickers to CoinGecko coin IDs
SYMBOL_TO_COINGECKO: dict[str, str] = {
    "BTCUSDT": "bitcoin",
    "ETHUSDT": "ethereum",
    "BNBUSDT": "binancecoin",
    "SOLUSDT": "solana",
    "XRPUSDT": "ripple",
    "ADAUSDT": "cardano",
    "AVAXUSDT": "avalanche-2",
    "DOTUSDT": "polkadot",
    "TRXUSDT": "tron",
    "LINKUSDT": "chainlink",
    "LISTAUSDT": "lista",
    "MATICUSDT": "matic-network",
    "TONUSDT": "the-open-network",
    "ICPUSDT": "internet-computer",
    "NEARUSDT": "near",
    "UNIUSDT": "uniswap",
    "APTUSDT": "aptos",
    "ATOMUSDT": "cosmos",
    "LTCUSDT": "litecoin",
    "FILUSDT": "filecoin",
    "ETCUSDT": "ethereum-classic",
    "ALGOUSDT": "algorand",
    "EOSUSDT": "eos",
    "XLMUSDT": "stellar",
    "VETUSDT": "vechain",
    "HBARUSDT": "hedera-hashgraph",
    "EGLDUSDT": "elrond-erd-2",
    "FLOWUSDT": "flow",
    "FTMUSDT": "fantom",
    "ONEUSDT": "harmony",
    "ZILUSDT": "zilliqa",
    "KLAYUSDT": "klay-token",
    "WAVESUSDT": "waves",
    "QTUMUSDT": "qtum",
    "ICXUSDT": "icon",
    "IOTAUSDT": "iota",
    "NEOUSDT": "neo",
    "ONTUSDT": "ontology",
    "KASUSDT": "kaspa",
    "INJUSDT": "injective-protocol",
    "SUIUSDT": "sui",
    "SEIUSDT": "sei-network",
    "ROSEUSDT": "oasis-network",
    "CFXUSDT": "conflux-token",
    "MINAUSDT": "mina-protocol",
    "COREUSDT": "coredao",
    "ASTRAUSDT": "astar",
    "CKBUSDT": "nervos-network",
    "IOSTUSDT": "iostoken",
    "ARBUSDT": "arbitrum",
    "OPUSDT": "optimism",
    "IMXUSDT": "immutable-x",
    "LRCUSDT": "loopring",
    "METISUSDT": "metis-token",
    "STRKUSDT": "starknet",
    "MANTAUSDT": "manta-network",
    "BLASTUSDT": "blast",
    "SCROLLUSDT": "scroll",
    "ZKUSDT": "zkspace",
    "LINEAUSDT": "linea",
    "VFYUSDT": "zkverify",
    "AAVEUSDT": "aave",
    "MKRUSDT": "maker",
    "SNXUSDT": "havven",
    "COMPUSDT": "compound-governance-token",
    "CRVUSDT": "curve-dao-token",
    "SUSHIUSDT": "sushi",
    "YFIUSDT": "yearn-finance",
    "BALUSDT": "balancer",
    "1INCHUSDT": "1inch",
    "RUNEUSDT": "thorchain",
    "PERPUSDT": "perpetual-protocol",
    "GMXUSDT": "gmx",
    "DYDXUSDT": "dydx",
    "CAKEUSDT": "pancakeswap-token",
    "JOEUSDT": "joe",
    "PENDLEUSDT": "pendle",
    "RDNTUSDT": "radiant-capital",
    "RPLUSDT": "rocket-pool",
    "LDOUSDT": "lido-dao",
    "MAVUSDT": "maverick-protocol",
    "VELOUSDT": "velodrome-finance",
    "FRAXUSDT": "frax",
    "CVXUSDT": "convex-finance",
    "FXSUSDT": "frax-share",
    "STETHUSDT": "staked-ether",
    "RETHUSDT": "rocket-pool-eth",
    "BANDUSDT": "band-protocol",
    "APIUSDT": "api3",
    "TRBUSDT": "tellor",
    "DAIUSDT": "dai",
    "GRTUSDT": "the-graph",
    "MASKUSDT": "mask-network",
    "ACHUSDT": "alchemy-pay",
    "ANKRUSDT": "ankr",
    "STORJUSDT": "storj",
    "RNDRUSDT": "render-token",
    "ARUSDT": "arweave",
    "OCEANUSDT": "ocean-protocol",
    "FETUSDT": "fetch-ai",
    "AGIXUSDT": "singularitynet",
    "AXSUSDT": "axie-infinity",
    "SANDUSDT": "the-sandbox",
    "MANAUSDT": "decentraland",
    "GALAUSDT": "gala",
    "ENJUSDT": "enjincoin",
    "THETAUSDT": "theta-token",
    "CHZUSDT": "chiliz",
    "APECUSDT": "apecoin",
    "GMTUSDT": "stepn",
    "MAGICUSDT": "magic",
    "YGGUSDT": "yield-guild-games",
    "SLPUSDT": "smooth-love-potion",
    "ALICEUSDT": "my-neighbor-alice",
    "TLMUSDT": "alien-worlds",
    "RAREUSDT": "superrare",
    "XUSDT": "x",
    "MOVRUSDT": "movr",
    "WAXPUSDT": "wax",
    "MCUSDT": "merit-circle",
    "PIXELUSDT": "pixels",
    "PRIMEUSDT": "echelon-prime",
    "NFTUSDT": "apenft",
    "BEAMXUSDT": "beam",
    "DOGEUSDT": "dogecoin",
    "SHIBUSDT": "shiba-inu",
    "PEPEUSDT": "pepe",
    "FLOKIUSDT": "floki",
    "WIFUSDT": "dogwifhat",
    "BONKUSDT": "bonk",
    "WBTCUSDT": "wrapped-bitcoin",
    "WLDUSDT": "worldcoin-wld",
    "TAOUSDT": "bittensor",
    "XMRUSDT": "monero",
    "ENSUSDT": "ethereum-name-service",
    "BCHUSDT": "bitcoin-cash",
    "ORDIUSDT": "ordinals",
    "JUPUSDT": "jupiter-exchange-solana",
    "PYTHUSDT": "pyth-network",
    "PUMPBTCUSDT": "pumpbtc",
}

# Bases that collide with common words or other listings
GUESS_MAPPING: dict[str, str] = {
    "W": "wormhole",
    "PUMP": "pump-fun",
    "PUMPBTC": "pump-fun",
}

# Quote currencies the static table can be matched against (stored as USDT pairs)
STABLE_QUOTES = ("USDT", "USDC", "BUSD")

# Suffixes stripped before a free-text search
QUOTE_SUFFIXES = ("USDT", "BUSD", "USDC", "BTC", "ETH")


def strip_quote_suffix(ticker: str) -> str:
    """Remove one trailing quote currency, e.g. ``LISTAUSDT`` -> ``LISTA``."""
    cleaned = ticker.upper().strip()
    for suffix in QUOTE_SUFFIXES:
        if cleaned.endswith(suffix) and len(cleaned) > len(suffix):
            return cleaned[: -len(suffix)]
    return cleaned


class SymbolResolver:
    """Maps tickers like ``BTCUSDT`` to CoinGecko ids like ``bitcoin``.

    Holds its own copy of the static table so discoveries can be memoized
    for the session without touching module state.

    Args:
        search: Async callable returning CoinGecko search hits
            (dicts with ``id`` and ``symbol``). None disables discovery.
        static_table: Initial ticker mapping (defaults to SYMBOL_TO_COINGECKO).
    """

    def __init__(
        self,
        search: SearchFn | None = None,
        static_table: Mapping[str, str] | None = None,
    ) -> None:
        self._search = search
        self._static: dict[str, str] = dict(
            SYMBOL_TO_COINGECKO if static_table is None else static_table
        )
        self._discovered: dict[str, str] = {}
        self._unresolvable: set[str] = set()
        self._pending: dict[str, asyncio.Task[str | None]] = {}

    @property
    def discovered(self) -> Mapping[str, str]:
        return MappingProxyType(self._discovered)

    @property
    def unresolvable(self) -> frozenset[str]:
        return frozenset(self._unresolvable)

    def resolve(self, ticker: str) -> str | None:
        """Synchronous fast path: static table plus suffix heuristics."""
        clean = ticker.upper().strip()
        if not clean:
            return None

        coin_id = self._static.get(clean)
        if coin_id:
            return coin_id

        for quote in STABLE_QUOTES:
            if not clean.endswith(quote) or len(clean) == len(quote):
                continue
            base = clean[: -len(quote)]
            if base in GUESS_MAPPING and len(base) == 1:
                logger.debug("symbol_special_case", ticker=clean, coin_id=GUESS_MAPPING[base])
                return GUESS_MAPPING[base]
            prefix = f"{base}USDT"
            for key, value in self._static.items():
                if key.startswith(prefix):
                    logger.debug("symbol_partial_match", ticker=clean, key=key, coin_id=value)
                    return value

        guess = GUESS_MAPPING.get(clean.replace("USDT", ""))
        if guess:
            logger.debug("symbol_guess_match", ticker=clean, coin_id=guess)
            return guess

        return None

    async def resolve_async(self, ticker: str) -> str | None:
        """Fast path, then online discovery (at most once per ticker)."""
        coin_id = self.resolve(ticker)
        if coin_id:
            return coin_id

        clean = ticker.upper().strip()
        if not clean:
            return None
        if clean in self._discovered:
            return self._discovered[clean]
        if clean in self._unresolvable or self._search is None:
            return None

        # Overlapping requests for one ticker share a single search
        task = self._pending.get(clean)
        if task is None:
            task = asyncio.create_task(self._discover(clean))
            self._pending[clean] = task
            task.add_done_callback(lambda _: self._pending.pop(clean, None))
        return await asyncio.shield(task)

    async def _discover(self, ticker: str) -> str | None:
        query = strip_quote_suffix(ticker)
        logger.info("symbol_discovery_started", ticker=ticker, query=query)

        try:
            coins = await self._search(query)
        except Exception as e:
            logger.warning("symbol_discovery_failed", ticker=ticker, error=str(e))
            self._unresolvable.add(ticker)
            return None

        needle = query.lower()
        match = next(
            (c for c in coins if str(c.get("symbol") or "").lower() == needle), None
        )
        if match is None:
            match = next(
                (c for c in coins if str(c.get("id") or "").lower() == needle), None
            )

        if match is None or not match.get("id"):
            logger.warning("symbol_unresolvable", ticker=ticker, query=query, hits=len(coins))
            self._unresolvable.add(ticker)
            return None

        coin_id = str(match["id"])
        self._discovered[ticker] = coin_id
        self._static[ticker] = coin_id
        logger.info(
            "symbol_discovered",
            ticker=ticker,
            coin_id=coin_id,
            name=match.get("name"),
        )
        return coin_id
