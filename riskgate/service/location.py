from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Protocol, Union

import httpx

from riskgate.logging import get_logger

logger = get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class LocationInfo:
    ip: Optional[str]
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    is_vpn: bool = False
    is_tor: bool = False

    @property
    def anonymized(self) -> bool:
        return self.is_vpn or self.is_tor

    def to_record(self) -> dict[str, Any]:
        return {"country": self.country, "region": self.region, "city": self.city}


class LocationResolver(Protocol):
    async def resolve(self, ip: Optional[str]) -> LocationInfo: ...


def _parse_ip(ip: Optional[str]):
    if not ip:
        return None
    try:
        return ipaddress.ip_address(ip.strip())
    except ValueError:
        logger.warning("location_invalid_ip")
        return None


def _networks(cidrs: Iterable[str]) -> list[IPNetwork]:
    return [ipaddress.ip_network(cidr, strict=False) for cidr in cidrs]


class StaticLocationResolver:
    """Resolves from an in-process CIDR table.

    ``networks`` maps CIDR -> {"country", "region", "city", "timezone"}; the
    most specific matching network wins. Addresses inside any of
    ``anonymizer_networks`` / ``tor_networks`` are flagged.
    """

    def __init__(
        self,
        networks: Optional[Mapping[str, Mapping[str, Any]]] = None,
        *,
        anonymizer_networks: Iterable[str] = (),
        tor_networks: Iterable[str] = (),
    ) -> None:
        table = [
            (ipaddress.ip_network(cidr, strict=False), dict(attrs))
            for cidr, attrs in (networks or {}).items()
        ]
        self._table = sorted(table, key=lambda item: item[0].prefixlen, reverse=True)
        self._anonymizers = _networks(anonymizer_networks)
        self._tor = _networks(tor_networks)

    async def resolve(self, ip: Optional[str]) -> LocationInfo:
        address = _parse_ip(ip)
        info = LocationInfo(ip=ip)
        if address is None:
            return info
        for network, attrs in self._table:
            if address.version == network.version and address in network:
                info.country = (attrs.get("country") or "").upper() or None
                info.region = attrs.get("region")
                info.city = attrs.get("city")
                info.timezone = attrs.get("timezone")
                break
        info.is_vpn = any(
            address.version == net.version and address in net for net in self._anonymizers
        )
        info.is_tor = any(address.version == net.version and address in net for net in self._tor)
        return info


class HttpLocationResolver:
    """Resolves through an HTTP geolocation endpoint.

    The endpoint is a URL template with an ``{ip}`` placeholder returning JSON.
    Common field spellings are accepted (``countryCode``/``country_code``,
    ``regionName``/``region``, ``proxy``/``vpn``/``tor``). Lookup failures
    degrade to an unresolved location rather than failing the login.
    """

    def __init__(
        self,
        url_template: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 3.0,
        anonymizer_networks: Iterable[str] = (),
    ) -> None:
        if "{ip}" not in url_template:
            raise ValueError("url_template must contain an {ip} placeholder")
        self.url_template = url_template
        self._client = client
        self._timeout = timeout
        self._anonymizers = _networks(anonymizer_networks)

    @staticmethod
    def _first(payload: Mapping[str, Any], *names: str) -> Any:
        for name in names:
            value = payload.get(name)
            if value not in (None, ""):
                return value
        return None

    async def _fetch(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=self._timeout)
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=False) as client:
            return await client.get(url)

    async def resolve(self, ip: Optional[str]) -> LocationInfo:
        address = _parse_ip(ip)
        info = LocationInfo(ip=ip)
        if address is None:
            return info
        info.is_vpn = any(
            address.version == net.version and address in net for net in self._anonymizers
        )
        if address.is_private or address.is_loopback or address.is_link_local:
            return info

        try:
            response = await self._fetch(self.url_template.format(ip=str(address)))
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "location_lookup_http_error", status_code=exc.response.status_code
            )
            return info
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("location_lookup_failed", error_type=type(exc).__name__)
            return info
        if not isinstance(payload, dict):
            logger.warning("location_lookup_invalid_format", type=type(payload).__name__)
            return info

        country = self._first(payload, "country_code", "countryCode", "country")
        info.country = str(country).upper() if country else None
        info.region = self._first(payload, "region", "regionName", "region_name")
        info.city = self._first(payload, "city")
        lat = self._first(payload, "latitude", "lat")
        lon = self._first(payload, "longitude", "lon")
        info.latitude = float(lat) if lat is not None else None
        info.longitude = float(lon) if lon is not None else None
        info.timezone = self._first(payload, "timezone", "time_zone")
        info.is_vpn = info.is_vpn or bool(self._first(payload, "vpn", "proxy", "is_proxy"))
        info.is_tor = bool(self._first(payload, "tor", "is_tor"))
        return info
