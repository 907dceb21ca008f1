from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from errors import TransientInfrastructureError
from tools.retry import CircuitBreaker, with_retry


@dataclass
class RegistryRecord:
    """Official company registration data used to ground the AI analysis."""

    juristic_id: Optional[str] = None
    company_name: Optional[str] = None
    sector_code: Optional[str] = None
    province: Optional[str] = None
    full_address: Optional[str] = None
    registered_capital: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RegistryRecord":
        capital = data.get("registered_capital")
        return cls(
            juristic_id=data.get("juristic_id"),
            company_name=data.get("name"),
            sector_code=data.get("sector_code"),
            province=data.get("province"),
            full_address=data.get("address"),
            registered_capital=str(capital) if capital is not None else None,
        )


class RegistryClient:
    """Company registry lookup over HTTP. Disabled when no base URL is configured."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 20.0,
                 retry_attempts: int = 3, retry_base_delay: float = 0.5,
                 breaker: Optional[CircuitBreaker] = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.breaker = breaker or CircuitBreaker("registry")

    def configure(self, settings) -> None:
        self.base_url = settings.registry_base_url
        self.api_key = settings.registry_api_key
        self.timeout = settings.http_timeout_seconds
        self.retry_attempts = settings.retry_attempts
        self.retry_base_delay = settings.retry_base_delay_seconds
        self.breaker = CircuitBreaker(
            "registry", threshold=settings.breaker_threshold, cooldown=settings.breaker_cooldown_seconds
        )
        if not self.base_url:
            logger.warning("No REGISTRY_BASE_URL configured, registry grounding disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def lookup_company(self, company: str) -> Optional[RegistryRecord]:
        """Find the best registry match for ``company``; None when nothing matches.

        Raises TransientInfrastructureError (or CircuitOpenError) when the
        registry cannot be reached after retries.
        """
        if not self.enabled or not company:
            return None
        record = await self.breaker.call(
            lambda: with_retry(
                lambda: self._search(company),
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                operation="registry lookup",
            )
        )
        if record:
            logger.info(f"Registry match for {company}: {record.juristic_id}")
        else:
            logger.info(f"No registry match for {company}")
        return record

    async def _search(self, company: str) -> Optional[RegistryRecord]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url.rstrip('/')}/companies/search",
                    params={"name": company},
                    headers=headers,
                )
        except httpx.TransportError as e:
            raise TransientInfrastructureError("registry", str(e) or type(e).__name__) from e

        if response.status_code == 404:
            return None
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientInfrastructureError("registry", f"HTTP {response.status_code}")
        response.raise_for_status()

        results = response.json().get("results") or []
        return RegistryRecord.from_api(results[0]) if results else None


# Global registry client, configured by the app lifespan
registry_client = RegistryClient()


async def lookup_company(company: str) -> Optional[RegistryRecord]:
    """Look up a company using the global registry client."""
    return await registry_client.lookup_company(company)
