"""Exchange rates against an INR base."""
import logging
import os
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

EXCHANGE_RATE_URL = os.getenv("EXCHANGE_RATE_URL", "https://api.exchangerate-api.com/v4/latest/INR")
SUPPORTED_CURRENCIES = ("INR", "USD", "EUR", "GBP")


class ExchangeRateClient:
    """Fetches the rate table once and keeps it for the life of the client."""

    def __init__(self, url: str = EXCHANGE_RATE_URL, client: Optional[httpx.Client] = None):
        self.url = url
        self.client = client or httpx.Client(timeout=10.0)
        self._rates: Optional[Dict[str, float]] = None

    def get_rates(self) -> Dict[str, float]:
        if self._rates is not None:
            return self._rates
        try:
            response = self.client.get(self.url)
            response.raise_for_status()
            rates = response.json().get("rates") or {}
        except (httpx.HTTPError, ValueError) as e:
            # Not cached: the next call tries again.
            logger.error("Failed to fetch currency conversion rates: %s", e)
            return {}
        self._rates = {k: float(v) for k, v in rates.items()}
        return self._rates

    def close(self):
        self.client.close()


exchange_rates = ExchangeRateClient()
