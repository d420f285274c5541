"""
TLS Profile Selector - browser-like TLS parameters per outbound connection

Every HTTPS destination connection gets a profile picked at random from a small
catalog of browser families (Chrome, Firefox, Safari). The profile decides the
TLS 1.2 cipher order, the key exchange curve, the protocol version window and
ALPN. Contexts are built once per profile and reused.

Session ticket keys rotate on a fixed 5 minute bucket: the key is a pure
function of (epoch, secret) so every worker derives the same key for the same
bucket without coordination.
"""

import hashlib
import hmac
import logging
import os
import random
import ssl
import threading
import time
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.exceptions import ConfigError
from ..core.models import TLSProfile

TICKET_BUCKET_SECONDS = 300

_TLS13 = (
    "TLS_AES_128_GCM_SHA256",
    "TLS_AES_256_GCM_SHA384",
    "TLS_CHACHA20_POLY1305_SHA256",
)

_SIGALGS = (
    "ecdsa_secp256r1_sha256",
    "rsa_pss_rsae_sha256",
    "rsa_pkcs1_sha256",
    "ecdsa_secp384r1_sha384",
    "rsa_pss_rsae_sha384",
    "rsa_pkcs1_sha384",
    "rsa_pss_rsae_sha512",
    "rsa_pkcs1_sha512",
)

PROFILE_CATALOG: Dict[str, TLSProfile] = {
    "chrome": TLSProfile(
        name="chrome",
        ciphers=(
            "ECDHE-ECDSA-AES128-GCM-SHA256",
            "ECDHE-RSA-AES128-GCM-SHA256",
            "ECDHE-ECDSA-AES256-GCM-SHA384",
            "ECDHE-RSA-AES256-GCM-SHA384",
            "ECDHE-ECDSA-CHACHA20-POLY1305",
            "ECDHE-RSA-CHACHA20-POLY1305",
            "ECDHE-RSA-AES128-SHA",
            "ECDHE-RSA-AES256-SHA",
            "AES128-GCM-SHA256",
            "AES256-GCM-SHA384",
            "AES128-SHA",
            "AES256-SHA",
        ),
        tls13_ciphers=_TLS13,
        curves=("X25519", "prime256v1", "secp384r1"),
        signature_algorithms=_SIGALGS,
        alpn=("http/1.1",),
    ),
    "firefox": TLSProfile(
        name="firefox",
        ciphers=(
            "ECDHE-ECDSA-AES128-GCM-SHA256",
            "ECDHE-RSA-AES128-GCM-SHA256",
            "ECDHE-ECDSA-CHACHA20-POLY1305",
            "ECDHE-RSA-CHACHA20-POLY1305",
            "ECDHE-ECDSA-AES256-GCM-SHA384",
            "ECDHE-RSA-AES256-GCM-SHA384",
            "ECDHE-ECDSA-AES256-SHA",
            "ECDHE-ECDSA-AES128-SHA",
            "ECDHE-RSA-AES128-SHA",
            "ECDHE-RSA-AES256-SHA",
            "AES128-GCM-SHA256",
            "AES256-GCM-SHA384",
            "AES128-SHA",
            "AES256-SHA",
        ),
        tls13_ciphers=(_TLS13[0], _TLS13[2], _TLS13[1]),
        curves=("X25519", "prime256v1", "secp384r1", "secp521r1"),
        signature_algorithms=_SIGALGS,
        alpn=("http/1.1",),
    ),
    "safari": TLSProfile(
        name="safari",
        ciphers=(
            "ECDHE-ECDSA-AES256-GCM-SHA384",
            "ECDHE-ECDSA-AES128-GCM-SHA256",
            "ECDHE-ECDSA-CHACHA20-POLY1305",
            "ECDHE-RSA-AES256-GCM-SHA384",
            "ECDHE-RSA-AES128-GCM-SHA256",
            "ECDHE-RSA-CHACHA20-POLY1305",
            "ECDHE-ECDSA-AES256-SHA384",
            "ECDHE-ECDSA-AES128-SHA256",
            "ECDHE-RSA-AES256-SHA384",
            "ECDHE-RSA-AES128-SHA256",
            "AES256-GCM-SHA384",
            "AES128-GCM-SHA256",
        ),
        tls13_ciphers=_TLS13,
        curves=("X25519", "prime256v1", "secp384r1", "secp521r1"),
        signature_algorithms=_SIGALGS,
        alpn=("http/1.1",),
    ),
}

_VERSIONS = {
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


def ticket_epoch(now: Optional[float] = None, bucket: int = TICKET_BUCKET_SECONDS) -> int:
    """Index of the rotation bucket containing `now` (seconds since the epoch)."""
    if now is None:
        now = time.time()
    return int(now // bucket)


def derive_session_ticket_key(epoch: int, secret: str) -> bytes:
    """
    Derive the 48 byte session ticket key for a rotation bucket.

    Deterministic in (epoch, secret); distinct buckets give distinct keys.
    Layout: SHA-256(epoch || secret) followed by the first 16 bytes of
    HMAC-SHA256(secret, epoch).
    """
    epoch_bytes = str(int(epoch)).encode("ascii")
    secret_bytes = secret.encode("utf-8")
    digest = hashlib.sha256(epoch_bytes + secret_bytes).digest()
    mac = hmac.new(secret_bytes, epoch_bytes, hashlib.sha256).digest()
    return digest + mac[:16]


class TLSProfileSelector:
    """
    Picks browser-like TLS profiles and builds matching SSL contexts.

    When fingerprinting is disabled every connection uses the interpreter's
    default client context.
    """

    def __init__(
        self,
        profile_names: Iterable[str] = ("chrome", "firefox", "safari"),
        enabled: bool = True,
        verify: bool = False,
        ticket_secret: str = "",
        rng: Optional[random.Random] = None,
    ):
        self.logger = logging.getLogger(__name__)
        names = list(profile_names)
        unknown = [n for n in names if n not in PROFILE_CATALOG]
        if unknown:
            raise ConfigError(f"unknown TLS profiles: {', '.join(unknown)}")
        if not names:
            raise ConfigError("at least one TLS profile is required")
        self.profiles: List[TLSProfile] = [PROFILE_CATALOG[n] for n in names]
        self.enabled = enabled
        self.verify = verify
        self._secret = ticket_secret or os.urandom(32).hex()
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._contexts: Dict[str, ssl.SSLContext] = {}
        self._ticket_cache: Optional[Tuple[int, bytes]] = None
        self._selections: Dict[str, int] = {}

    def select_profile(self) -> Optional[TLSProfile]:
        """Random profile for one connection, or None when fingerprinting is off."""
        if not self.enabled:
            return None
        profile = self._rng.choice(self.profiles)
        with self._lock:
            self._selections[profile.name] = self._selections.get(profile.name, 0) + 1
        return profile

    def current_ticket_key(self, now: Optional[float] = None) -> bytes:
        """Ticket key for the current bucket, derived once per bucket."""
        epoch = ticket_epoch(now)
        with self._lock:
            cached = self._ticket_cache
            if cached is not None and cached[0] == epoch:
                return cached[1]
            key = derive_session_ticket_key(epoch, self._secret)
            self._ticket_cache = (epoch, key)
        self.logger.debug(f"Session ticket key rotated (epoch {epoch})")
        return key

    def build_ssl_context(self, profile: Optional[TLSProfile]) -> ssl.SSLContext:
        """SSL client context for a profile. Cached per profile name."""
        cache_key = profile.name if profile else "default"
        with self._lock:
            ctx = self._contexts.get(cache_key)
            if ctx is not None:
                return ctx

        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        if self.verify:
            ctx.load_default_certs()
        else:
            # The cover certificate never names the real destination
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE

        if profile is not None:
            self._apply_profile(ctx, profile)

        with self._lock:
            self._contexts.setdefault(cache_key, ctx)
            return self._contexts[cache_key]

    def _apply_profile(self, ctx: ssl.SSLContext, profile: TLSProfile):
        try:
            ctx.set_ciphers(profile.cipher_string)
        except ssl.SSLError as e:
            self.logger.warning(f"Cipher list for {profile.name} rejected by OpenSSL: {e}")

        for curve in profile.curves:
            try:
                ctx.set_ecdh_curve(curve)
                break
            except (ValueError, ssl.SSLError):
                continue

        ctx.minimum_version = _VERSIONS.get(profile.min_version, ssl.TLSVersion.TLSv1_2)
        ctx.maximum_version = _VERSIONS.get(profile.max_version, ssl.TLSVersion.TLSv1_3)

        if profile.alpn:
            ctx.set_alpn_protocols(list(profile.alpn))

    def get_metrics(self) -> Dict[str, object]:
        """Selection counts and the active ticket epoch."""
        with self._lock:
            return {
                "enabled": self.enabled,
                "profiles": [p.name for p in self.profiles],
                "selections": dict(self._selections),
                "ticket_epoch": self._ticket_cache[0] if self._ticket_cache else None,
            }
