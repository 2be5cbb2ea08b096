from __future__ import annotations

import hashlib
import hmac
import ipaddress
import re
from dataclasses import dataclass

from linkguard.config import FingerprintMode, Settings
from linkguard.service.errors import ValidationError

_UA_VERSION_SUFFIX = re.compile(r"/[\w.\-]+")
_UA_DOTTED_NUMBER = re.compile(r"\b\d+(?:[._]\d+)+\b")
_WHITESPACE = re.compile(r"\s+")


def canonical_ip(raw: str) -> str:
    """Return the address without port or zone, unwrapping IPv4-mapped IPv6.

    Accepts ``1.2.3.4``, ``1.2.3.4:8080``, ``[2001:db8::1]:443`` and bare
    IPv6. Raises :class:`ValidationError` for anything else.
    """

    value = (raw or "").strip()
    if not value:
        raise ValidationError("client ip is required", detail={"field": "ip"})
    if value.startswith("["):
        end = value.find("]")
        if end == -1:
            raise ValidationError("invalid client ip", detail={"field": "ip"})
        value = value[1:end]
    elif value.count(":") == 1:
        value = value.split(":", 1)[0]
    value = value.split("%", 1)[0]
    try:
        addr = ipaddress.ip_address(value)
    except ValueError as exc:
        raise ValidationError("invalid client ip", detail={"field": "ip"}) from exc
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    return str(addr)


@dataclass(frozen=True)
class FingerprintBinding:
    ip_hash: str
    ua_hash: str
    composite_hash: str


class FingerprintBinder:
    """Derive origin bindings from client IP and user agent.

    In subnet mode the address is truncated to a configurable prefix so that
    ordinary ISP address rotation does not break a link between request and
    click. Hashes are keyed HMAC-SHA256 so stored values cannot be reversed
    by enumerating the IPv4 space.
    """

    UA_MAX_LENGTH = 256

    def __init__(
        self,
        secret: str,
        *,
        mode: FingerprintMode = FingerprintMode.SUBNET,
        ipv4_prefix: int = 24,
        ipv6_prefix: int = 64,
    ) -> None:
        if not secret:
            raise ValueError("fingerprint secret is required")
        self._key = secret.encode()
        self.mode = FingerprintMode(mode)
        self.ipv4_prefix = ipv4_prefix
        self.ipv6_prefix = ipv6_prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "FingerprintBinder":
        return cls(
            settings.fingerprint_secret,
            mode=settings.fingerprint_mode,
            ipv4_prefix=settings.fingerprint_ipv4_prefix,
            ipv6_prefix=settings.fingerprint_ipv6_prefix,
        )

    def normalize_ip(self, raw: str) -> str:
        addr = ipaddress.ip_address(canonical_ip(raw))
        if self.mode == FingerprintMode.EXACT:
            return str(addr)
        prefix = self.ipv4_prefix if addr.version == 4 else self.ipv6_prefix
        return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))

    def normalize_user_agent(self, user_agent: str | None) -> str:
        value = (user_agent or "").lower()
        value = _UA_VERSION_SUFFIX.sub("", value)
        value = _UA_DOTTED_NUMBER.sub("", value)
        value = _WHITESPACE.sub(" ", value).strip()
        return value[: self.UA_MAX_LENGTH] or "unknown"

    def _digest(self, label: str, value: str) -> str:
        return hmac.new(self._key, f"{label}:{value}".encode(), hashlib.sha256).hexdigest()

    def derive(self, ip: str, user_agent: str | None) -> FingerprintBinding:
        ip_hash = self._digest("ip", self.normalize_ip(ip))
        ua_hash = self._digest("ua", self.normalize_user_agent(user_agent))
        return FingerprintBinding(
            ip_hash=ip_hash,
            ua_hash=ua_hash,
            composite_hash=self._digest("fp", f"{ip_hash}:{ua_hash}"),
        )

    @staticmethod
    def matches(stored_hash: str | None, candidate_hash: str | None) -> bool:
        if not stored_hash or not candidate_hash:
            return False
        return hmac.compare_digest(stored_hash, candidate_hash)
