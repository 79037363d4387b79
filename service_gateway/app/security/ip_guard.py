"""
IP admission control for sensitive path prefixes.

Only paths under a protected prefix are checked; everything else passes. The
whitelist is an immutable ``frozenset`` replaced wholesale on every change,
so concurrent readers always see either the old or the new set.
"""

import threading
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple

from shared.logging import get_logger

LOCALHOST = "localhost"
LOCALHOST_ALIASES: FrozenSet[str] = frozenset({"localhost", "127.0.0.1", "::1"})


def resolve_client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Pick the caller address: X-Forwarded-For, then X-Real-IP, then the peer."""
    forwarded_for = headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return peer or "unknown"


def _normalise(entries: Iterable[str]) -> FrozenSet[str]:
    return frozenset(entry.strip() for entry in entries if entry and entry.strip())


class IPAdmissionGuard:
    """Whitelist gate in front of protected path prefixes."""

    def __init__(self, whitelist: Iterable[str] = (), protected_paths: Iterable[str] = (),
                 enabled: bool = True):
        self.enabled = enabled
        self.protected_paths: Tuple[str, ...] = tuple(p.strip() for p in protected_paths if p.strip())
        self._whitelist: FrozenSet[str] = _normalise(whitelist)
        self._write_lock = threading.Lock()
        self.logger = get_logger("gateway.ip_guard")

    @classmethod
    def from_config(cls, config) -> "IPAdmissionGuard":
        return cls(
            whitelist=config.whitelist_ip_set,
            protected_paths=config.whitelist_path_prefixes,
            enabled=config.whitelist_enabled,
        )

    def is_protected(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.protected_paths)

    def is_allowed(self, ip: str) -> bool:
        whitelist = self._whitelist
        if ip in whitelist:
            return True
        if ip in LOCALHOST_ALIASES:
            return any(entry.lower() == LOCALHOST for entry in whitelist)
        return False

    def check(self, path: str, ip: str) -> bool:
        """Admit unless the guard is on, the path is protected and the IP is unknown."""
        if not self.enabled or not self.is_protected(path):
            return True
        if self.is_allowed(ip):
            return True
        self.logger.warning("Access denied from non-whitelisted IP", client_ip=ip, path=path)
        return False

    def add(self, ip: str) -> None:
        with self._write_lock:
            self._whitelist = self._whitelist | _normalise([ip])
        self.logger.info("Added IP to whitelist", ip=ip)

    def remove(self, ip: str) -> None:
        with self._write_lock:
            self._whitelist = self._whitelist - _normalise([ip])
        self.logger.info("Removed IP from whitelist", ip=ip)

    def reload(self, ips: Iterable[str]) -> None:
        """Replace the whole whitelist in one step."""
        replacement = _normalise(ips)
        with self._write_lock:
            self._whitelist = replacement
        self.logger.info("Whitelist reloaded", size=len(replacement))

    def snapshot(self) -> FrozenSet[str]:
        return self._whitelist
