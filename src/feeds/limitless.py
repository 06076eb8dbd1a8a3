"""
Limitless Exchange portfolio client - target wallet position snapshots.
"""

import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

import aiohttp
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.mirror.errors import FeedUnavailable
from src.mirror.models import ConnectorRef, Outcome, PositionSnapshot

DEFAULT_BASE_URL = "https://api.limitless.exchange"

# Position groups returned by the portfolio endpoint
POSITION_GROUPS = ("amm", "clob", "group")


class RateLimited(Exception):
    pass


def _to_int(value) -> int:
    if value in (None, ""):
        return 0
    return int(Decimal(str(value)))


def _to_amount(value, decimals: int) -> Optional[Decimal]:
    """Raw unit string from the API -> collateral amount, None when absent."""
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value)) / (Decimal(10) ** decimals)
    except InvalidOperation:
        return None


def parse_position(raw: dict) -> Optional[PositionSnapshot]:
    """
    Parse one portfolio entry. Returns None for entries without a market slug
    or token balances (nothing to mirror).
    """
    market = raw.get("market") or {}
    slug = market.get("slug")
    if not slug:
        return None

    balances = raw.get("tokensBalance")
    if balances is None:
        return None

    collateral = market.get("collateralToken") or {}
    decimals = int(collateral.get("decimals") or 6)
    ref = ConnectorRef(
        market_address=market.get("address"),
        collateral_token=collateral.get("address"),
        collateral_decimals=decimals,
        condition_id=market.get("conditionId"),
    )

    legs = raw.get("positions") or {}
    yes_leg = legs.get("yes") or {}
    no_leg = legs.get("no") or {}

    resolved = market.get("status") == "RESOLVED" or bool(market.get("closed"))

    return PositionSnapshot(
        market_id=slug,
        yes_balance=_to_int(balances.get("yes")),
        no_balance=_to_int(balances.get("no")),
        resolved=resolved,
        winning_outcome=Outcome.parse(market.get("winningOutcomeIndex")) if resolved else None,
        title=market.get("title") or slug,
        ref=ref,
        yes_cost=_to_amount(yes_leg.get("cost"), decimals),
        no_cost=_to_amount(no_leg.get("cost"), decimals),
        yes_value=_to_amount(yes_leg.get("marketValue"), decimals),
        no_value=_to_amount(no_leg.get("marketValue"), decimals),
    )


def parse_portfolio(data: Any) -> List[PositionSnapshot]:
    """Combine the AMM, CLOB and group arrays into snapshots, skipping malformed entries."""
    if not isinstance(data, dict):
        raise FeedUnavailable(f"Unexpected portfolio payload: {type(data).__name__}")

    snapshots = []
    for group in POSITION_GROUPS:
        for raw in data.get(group) or []:
            try:
                snap = parse_position(raw)
            except (AttributeError, TypeError, ValueError, InvalidOperation) as e:
                logger.debug(f"Skipping malformed {group} position: {e}")
                continue
            if snap is not None:
                snapshots.append(snap)
    return snapshots


class LimitlessPositionFeed:
    """
    Position feed backed by the Limitless portfolio API.

    Implements fetch_positions(address) -> list[PositionSnapshot].
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 15.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    'Accept': 'application/json',
                    'User-Agent': 'LimitlessMirror/1.0'
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError, RateLimited)),
        reraise=True,
    )
    async def _request(self, url: str) -> Any:
        """Make HTTP request with retry logic"""
        session = await self._get_session()
        async with session.get(url) as response:
            if response.status == 429:
                retry_after = int(response.headers.get('Retry-After', 5))
                logger.warning(f"Rate limited, waiting {retry_after}s")
                await asyncio.sleep(retry_after)
                raise RateLimited("Rate limited")

            response.raise_for_status()
            return await response.json(content_type=None)

    async def fetch_positions(self, address: str) -> List[PositionSnapshot]:
        url = f"{self.base_url}/portfolio/{address}/positions"
        try:
            data = await self._request(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, RateLimited, ValueError) as e:
            logger.error(f"Failed to fetch target positions: {e}")
            raise FeedUnavailable(str(e))

        snapshots = parse_portfolio(data)
        logger.debug(f"Fetched {len(snapshots)} target positions")
        return snapshots
