from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol, Union

import httpx

from linkguard.logging import get_logger
from linkguard.storage.redis_cache import MemoryGeoCache, RedisGeoCache

logger = get_logger(__name__)


class GeoLookupError(Exception):
    """The resolver could not produce location data for an address."""


@dataclass(frozen=True)
class GeoInfo:
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    asn: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "GeoInfo":
        country = (
            payload.get("country_code")
            or payload.get("countryCode")
            or payload.get("country")
        )
        asn = payload.get("asn")
        return cls(
            country=str(country).upper() if country else None,
            region=payload.get("region") or payload.get("regionName"),
            city=payload.get("city"),
            asn=str(asn) if asn is not None else None,
        )


class GeoResolver(Protocol):
    async def lookup(self, ip: str) -> GeoInfo:
        ...


class HttpGeoResolver:
    """JSON lookup service client with a shared result cache.

    ``url_template`` contains an ``{ip}`` placeholder. Results are cached for
    ``cache_ttl`` so repeated logins from one address cost one request a week.
    """

    def __init__(
        self,
        url_template: str,
        *,
        cache: Union[RedisGeoCache, MemoryGeoCache, None] = None,
        cache_ttl: timedelta = timedelta(days=7),
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if "{ip}" not in url_template:
            raise ValueError("geoip url must contain an {ip} placeholder")
        self.url_template = url_template
        self.cache = cache if cache is not None else MemoryGeoCache()
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._transport = transport

    async def lookup(self, ip: str) -> GeoInfo:
        cached = await self.cache.get(ip)
        if cached is not None:
            return GeoInfo(**cached)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(self.url_template.format(ip=ip))
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise GeoLookupError(str(exc)) from exc
        if not isinstance(payload, dict):
            raise GeoLookupError("unexpected geoip payload")
        info = GeoInfo.from_dict(payload)
        await self.cache.set(ip, info.to_dict(), int(self.cache_ttl.total_seconds()))
        return info
