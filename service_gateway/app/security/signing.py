"""
HMAC request signing.

Clients sign ``METHOD|PATH|TIMESTAMP`` with a shared secret using HMAC-SHA256
and send the standard base64 digest in ``X-Signature`` with the millisecond
timestamp in ``X-Timestamp``. The canonical string is used exactly as sent:
no case folding, no query string, no trimming.
"""

import base64
import hashlib
import hmac
import re
from typing import Iterable, Optional, Tuple

from shared.clock import system_clock
from shared.logging import get_logger

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"

# Signed 64-bit decimal; no leading "+", no whitespace
_TIMESTAMP_RE = re.compile(r"-?[0-9]{1,19}")

DEFAULT_SIGNED_PATHS: Tuple[str, ...] = (
    "/api/users/delete",
    "/api/shops/delete",
    "/api/admin/",
    "/api/auth/signup",
)


def canonical_string(method: str, path: str, timestamp: str) -> str:
    return f"{method}|{path}|{timestamp}"


def sign(method: str, path: str, timestamp: str, secret: str) -> str:
    """Produce the signature a client must send for this request."""
    digest = hmac.new(
        secret.encode("utf-8"),
        canonical_string(method, path, str(timestamp)).encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class SignatureValidator:
    """Server side verification of signed requests."""

    def __init__(self, secret: str, protected_paths: Iterable[str] = DEFAULT_SIGNED_PATHS,
                 max_skew_seconds: int = 300, enabled: bool = True, clock=system_clock,
                 metrics=None):
        self._secret = secret
        self.protected_paths: Tuple[str, ...] = tuple(protected_paths)
        self.max_skew_millis = int(max_skew_seconds) * 1000
        self.enabled = enabled
        self._clock = clock
        self.metrics = metrics
        self.logger = get_logger("gateway.request_signing")

    @classmethod
    def from_config(cls, config, clock=system_clock, metrics=None) -> "SignatureValidator":
        return cls(
            secret=config.signing_secret,
            protected_paths=config.signing_path_prefixes,
            max_skew_seconds=config.signing_max_skew_seconds,
            enabled=config.signing_enabled,
            clock=clock,
            metrics=metrics,
        )

    def is_protected(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.protected_paths)

    def sign_request(self, method: str, path: str, timestamp: str) -> str:
        return sign(method, path, timestamp, self._secret)

    def verify(self, method: str, path: str, timestamp_header: Optional[str],
               signature_header: Optional[str]) -> bool:
        """Check freshness and authenticity. Any malformed input fails."""
        if not signature_header or not timestamp_header:
            return self._reject("missing_header", path)

        if not _TIMESTAMP_RE.fullmatch(timestamp_header):
            return self._reject("bad_timestamp", path)
        timestamp = int(timestamp_header)

        if abs(self._clock.now_millis() - timestamp) > self.max_skew_millis:
            return self._reject("stale_timestamp", path)

        expected = self.sign_request(method, path, timestamp_header)
        if not hmac.compare_digest(expected.encode("ascii"), signature_header.encode("utf-8")):
            return self._reject("mismatch", path)

        return True

    def check(self, method: str, path: str, timestamp_header: Optional[str],
              signature_header: Optional[str]) -> bool:
        """Verify only when signing is on and the path requires it."""
        if not self.enabled or not self.is_protected(path):
            return True
        return self.verify(method, path, timestamp_header, signature_header)

    def _reject(self, reason: str, path: str) -> bool:
        self.logger.warning("Invalid request signature", reason=reason, path=path)
        if self.metrics is not None:
            self.metrics.increment_counter("signature_failures_total", reason=reason)
        return False
