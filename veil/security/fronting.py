"""
Domain fronting and SNI selection.

The outbound TLS handshake advertises a high-reputation cover hostname while
the real destination travels only inside the encrypted Host header. Rules are
glob patterns checked in order; the first match wins. Hostnames that match no
rule get a random member of the default cover pool.
"""

import fnmatch
import logging
import random
from typing import Iterable, List, Optional, Sequence

from ..core.models import FrontingRule

logger = logging.getLogger(__name__)


def _normalize(hostname: str) -> str:
    return hostname.strip().rstrip(".").lower()


class FrontingPolicy:
    """Maps a destination hostname to the cover hostname used for SNI."""

    def __init__(
        self,
        rules: Iterable[FrontingRule] = (),
        default_pool: Sequence[str] = (),
        enabled: bool = True,
        sni_common_names: Sequence[str] = (),
        sni_spoofing: bool = False,
        rng: Optional[random.Random] = None,
    ):
        self.rules: List[FrontingRule] = [
            FrontingRule(_normalize(r.pattern), r.cover_host) for r in rules
        ]
        self.default_pool = tuple(default_pool)
        self.enabled = enabled
        self.sni_common_names = tuple(sni_common_names)
        self.sni_spoofing = sni_spoofing
        self._rng = rng or random.Random()

    @classmethod
    def from_dicts(cls, rules: Iterable[dict], **kwargs) -> "FrontingPolicy":
        return cls(
            rules=[FrontingRule(r["pattern"], r["cover_host"]) for r in rules],
            **kwargs,
        )

    def match_rule(self, hostname: str) -> Optional[FrontingRule]:
        """Return the first rule whose pattern matches, or None."""
        host = _normalize(hostname)
        for rule in self.rules:
            if fnmatch.fnmatchcase(host, rule.pattern):
                return rule
            # "*.example.org" also covers the apex "example.org"
            if rule.pattern.startswith("*.") and host == rule.pattern[2:]:
                return rule
        return None

    def cover_hostname_for(self, hostname: str) -> str:
        """Cover hostname for the TLS handshake. Identity when fronting is off."""
        if not self.enabled:
            return hostname
        rule = self.match_rule(hostname)
        if rule is not None:
            return rule.cover_host
        if not self.default_pool:
            return hostname
        return self._rng.choice(self.default_pool)

    def sni_for(self, hostname: str) -> str:
        """SNI to present: the cover host, or a spoofed common name when fronting left it unchanged."""
        cover = self.cover_hostname_for(hostname)
        if self.sni_spoofing and cover == hostname and self.sni_common_names:
            cover = self._rng.choice(self.sni_common_names)
        if cover != hostname:
            logger.debug(f"Fronting {hostname} behind {cover}")
        return cover
