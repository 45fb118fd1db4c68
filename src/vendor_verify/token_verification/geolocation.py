"""Source address normalization and coarse geolocation (Phase 2)."""

from __future__ import annotations

from dataclasses import dataclass, field
import ipaddress
import logging
from typing import Any, Mapping, Protocol

import requests

UNKNOWN_LOCATION = "Unknown"
UNKNOWN_ADDRESS = "unknown"

logger = logging.getLogger("vendor_verify.token_verification.geolocation")


class GeolocationError(RuntimeError):
    """Raised by concrete resolvers; never escapes the fail-open wrapper."""


def normalize_source_address(
    value: str | None,
    *,
    sentinel_address: str,
    remap_loopback: bool = True,
) -> str:
    text = str(value or "").strip()
    if not text:
        return UNKNOWN_ADDRESS
    if text.lower().startswith("::ffff:") and "." in text:
        text = text[len("::ffff:") :]
    if text.lower() == "localhost":
        return sentinel_address if remap_loopback else text
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        return text[:80]
    if remap_loopback and (address.is_loopback or address.is_unspecified):
        return sentinel_address
    return str(address)


class GeolocationResolver(Protocol):
    def resolve(self, source_address: str) -> str:
        """Return a coarse location label for a source address."""


@dataclass
class StaticGeolocationResolver(GeolocationResolver):
    table: Mapping[str, str]
    _networks: list[tuple[Any, str]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        networks: list[tuple[Any, str]] = []
        for cidr, label in self.table.items():
            try:
                network = ipaddress.ip_network(str(cidr).strip(), strict=False)
            except ValueError as exc:
                raise GeolocationError(f"invalid CIDR in static geolocation table: {cidr!r}") from exc
            networks.append((network, str(label).strip()))
        # Most specific network wins.
        networks.sort(key=lambda item: item[0].prefixlen, reverse=True)
        self._networks = networks

    def resolve(self, source_address: str) -> str:
        try:
            address = ipaddress.ip_address(str(source_address).strip())
        except ValueError:
            return UNKNOWN_LOCATION
        for network, label in self._networks:
            if address.version == network.version and address in network:
                return label or UNKNOWN_LOCATION
        return UNKNOWN_LOCATION


@dataclass
class HttpGeolocationResolver(GeolocationResolver):
    endpoint_template: str
    timeout_seconds: float = 2.0
    session: requests.Session | None = None

    def __post_init__(self) -> None:
        if "{address}" not in self.endpoint_template:
            raise GeolocationError("endpoint_template must contain an {address} placeholder")
        self._session = self.session or requests.Session()

    def resolve(self, source_address: str) -> str:
        url = self.endpoint_template.replace("{address}", str(source_address).strip())
        try:
            response = self._session.get(url, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise GeolocationError(f"GEO_LOOKUP_FAILED:{str(exc)[:256]}") from exc
        if response.status_code >= 400:
            raise GeolocationError(f"GEO_LOOKUP_FAILED:http_{response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise GeolocationError("GEO_LOOKUP_FAILED:invalid_json") from exc
        if not isinstance(body, dict):
            raise GeolocationError("GEO_LOOKUP_FAILED:body_not_object")
        if str(body.get("status") or "success").lower() != "success":
            return UNKNOWN_LOCATION
        parts = [
            str(body.get(key) or "").strip()
            for key in ("city", "regionName", "country")
        ]
        label = ", ".join(part for part in parts if part)
        return label or UNKNOWN_LOCATION


@dataclass
class FailOpenGeolocationResolver(GeolocationResolver):
    inner: GeolocationResolver

    def resolve(self, source_address: str) -> str:
        if not source_address or source_address == UNKNOWN_ADDRESS:
            return UNKNOWN_LOCATION
        try:
            label = self.inner.resolve(source_address)
        except Exception as exc:
            logger.debug("geolocation degraded to Unknown for %s: %s", source_address, exc)
            return UNKNOWN_LOCATION
        text = str(label or "").strip()
        return text or UNKNOWN_LOCATION
