"""
Pool discovery through a Messari-schema DEX subgraph.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import aiohttp

from .exceptions import DiscoveryError
from .types import Pool
from .utils import get_hours_since_unix_epoch, get_logger, get_subgraph_url

logger = get_logger(__name__)

POOLS_QUERY_NAME = "pools"

POOLS_QUERY = """
query pools($hoursSinceUnixEpoch: Int!, $size: Int!, $offset: Int!) {
  liquidityPoolHourlySnapshots(
    first: $size
    skip: $offset
    orderBy: hourlySwapCount
    orderDirection: desc
    where: { hour: $hoursSinceUnixEpoch }
  ) {
    pool {
      id
      name
      symbol
      fees {
        feePercentage
        feeType
      }
      inputTokens {
        id
        name
        symbol
        decimals
      }
    }
  }
}
"""


class BaseSubgraph:
    """
    Named GraphQL queries against one subgraph endpoint.

    The HTTP session is created lazily on first use and must be released with
    close().
    """

    def __init__(
        self,
        base_url: str,
        subgraph_name: str,
        api_key: str = "",
        request_timeout: float = 30.0,
    ):
        self.url = get_subgraph_url(base_url, subgraph_name, api_key)
        self.subgraph_name = subgraph_name
        self.request_timeout = request_timeout
        self._queries: Dict[str, str] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self.initialized = False

    def add_query(self, name: str, query: str) -> None:
        self._queries[name] = query

    def get_query(self, name: str) -> str:
        if name not in self._queries:
            raise DiscoveryError(f"Unknown subgraph query: {name}", endpoint=self.url)
        return self._queries[name]

    async def initialize(self) -> None:
        """Register the queries this subgraph serves. Subclasses extend it."""
        self.initialized = True

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
        return self._session

    async def fetch_data(
        self, query_name: str, variables: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Run a registered query and return its `data` payload.

        Raises:
            DiscoveryError: On transport errors, non-2xx status, GraphQL
                errors or a response without data
        """
        payload = {"query": self.get_query(query_name), "variables": variables}
        try:
            async with self.session.post(self.url, json=payload) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise DiscoveryError(
                        f"Subgraph request failed with HTTP {response.status}: {text[:200]}",
                        endpoint=self.subgraph_name,
                        status_code=response.status,
                    )
                body = await response.json()
        except aiohttp.ClientError as e:
            raise DiscoveryError(
                f"Subgraph request failed: {e}", endpoint=self.subgraph_name
            ) from e
        except asyncio.TimeoutError as e:
            raise DiscoveryError(
                "Subgraph request timed out", endpoint=self.subgraph_name
            ) from e

        if body.get("errors"):
            raise DiscoveryError(
                f"Subgraph returned errors: {body['errors']}",
                endpoint=self.subgraph_name,
                details={"errors": body["errors"]},
            )
        data = body.get("data")
        if data is None:
            raise DiscoveryError(
                "Subgraph response has no data", endpoint=self.subgraph_name
            )
        return data

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class DexPoolSubgraph(BaseSubgraph):
    """Discovers the most actively traded pools of a DEX."""

    async def initialize(self) -> None:
        self.add_query(POOLS_QUERY_NAME, POOLS_QUERY)
        await super().initialize()

    async def _fetch_page(
        self, time_window_key: int, offset: int, page_size: int
    ) -> List[Pool]:
        data = await self.fetch_data(
            POOLS_QUERY_NAME,
            {
                "hoursSinceUnixEpoch": time_window_key,
                "size": page_size,
                "offset": offset,
            },
        )
        snapshots = data.get("liquidityPoolHourlySnapshots")
        if snapshots is None:
            raise DiscoveryError(
                "Subgraph response is missing liquidityPoolHourlySnapshots",
                endpoint=self.subgraph_name,
            )
        try:
            return [Pool.from_dict(snapshot["pool"]) for snapshot in snapshots]
        except (KeyError, TypeError, ValueError) as e:
            raise DiscoveryError(
                f"Malformed pool record: {e}", endpoint=self.subgraph_name
            ) from e

    async def get_pools(
        self,
        limit: int = 100,
        page_count: int = 10,
        page_size: int = 10,
        time_window_key: Optional[int] = None,
    ) -> List[Pool]:
        """
        Fetch up to `limit` distinct pools ordered by hourly swap count.

        Pages are requested `page_count` at a time, concurrently. Discovery
        stops when the limit is reached or when a round brings fewer new
        pools than it requested.

        Raises:
            DiscoveryError: If any page request fails; no partial result is
                returned
        """
        if time_window_key is None:
            time_window_key = get_hours_since_unix_epoch()

        pools: List[Pool] = []
        seen: Set[str] = set()
        offset = 0
        round_size = page_count * page_size

        while len(pools) < limit:
            pages = await asyncio.gather(
                *[
                    self._fetch_page(time_window_key, offset + i * page_size, page_size)
                    for i in range(page_count)
                ]
            )
            offset += round_size

            new_in_round = 0
            for page in pages:
                for pool in page:
                    if pool.id in seen or len(pools) >= limit:
                        continue
                    seen.add(pool.id)
                    pools.append(pool)
                    new_in_round += 1

            logger.debug(
                f"[{self.subgraph_name}] Round at offset {offset - round_size}: "
                f"{new_in_round} new pools, {len(pools)} total"
            )
            if new_in_round < round_size:
                break

        logger.info(f"[{self.subgraph_name}] Discovered {len(pools)} pools")
        return pools
