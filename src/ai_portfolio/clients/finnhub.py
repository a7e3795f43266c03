"""Finnhub market-status client."""

import httpx

from ai_portfolio.models import MarketStatus

FINNHUB_BASE_URL = "https://finnhub.io/api/v1"


class FinnhubClient:
    """Answers "is the US market open?" from Finnhub's market-status endpoint."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.client = client or httpx.Client(base_url=FINNHUB_BASE_URL, timeout=timeout)

    def is_market_open(self, exchange: str = "US") -> MarketStatus:
        """Never raises: failures come back as MarketStatus.error."""
        if not self.api_key:
            return MarketStatus(is_open=False, error="FINNHUB_API_KEY not found")
        try:
            resp = self.client.get(
                "/stock/market-status", params={"exchange": exchange, "token": self.api_key}
            )
        except httpx.HTTPError as e:
            return MarketStatus(is_open=False, error=f"Finnhub request failed: {e}")
        if resp.status_code != 200:
            return MarketStatus(is_open=False, error=f"Finnhub API error: {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            return MarketStatus(is_open=False, error=f"Finnhub returned invalid JSON: {e}")
        return MarketStatus(
            is_open=bool(data.get("isOpen")),
            exchange=data.get("exchange"),
            session=data.get("session"),
        )

    def close(self):
        self.client.close()
