"""
HTTP header obfuscation.

Rewrites outbound request headers so relayed traffic looks like ordinary
browser traffic and never leaks proxy metadata, and scrubs response headers
that identify the destination's server stack.

Levels:
  0 - deny-list stripping only
  1 - + request id and no-cache directives
  2 - + a consistent browser persona (user agent, accept*, sec-fetch-*,
        client hints for Chromium personas) and a correlation id
  3 - + randomly included decoy headers and shuffled header order

Every function here is pure given an injected random.Random (and `now`).
"""

import random
import time
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

HeaderList = List[Tuple[str, str]]
HeaderInput = Union[Mapping[str, str], Iterable[Tuple[str, str]]]

# Never forwarded upstream at any level
DENY_LIST = frozenset({
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-real-ip",
    "x-client-ip",
    "x-originating-ip",
    "client-ip",
    "via",
    "forwarded",
    "proxy-connection",
    "proxy-authorization",
    "x-proxy-id",
})

# Stripped from responses before they reach the client
RESPONSE_STRIP = frozenset({
    "server",
    "x-powered-by",
    "via",
    "x-aspnet-version",
    "x-aspnetmvc-version",
})

ACCEPT_LANGUAGES = (
    "en-US,en;q=0.9",
    "en-GB,en;q=0.9",
    "en-US,en;q=0.8,fr;q=0.6",
    "en-US,en;q=0.9,de;q=0.7",
    "en-CA,en;q=0.9,fr-CA;q=0.8",
)

# (name, value) pairs; each is included with DECOY_PROBABILITY at level 3
DECOY_HEADERS = (
    ("x-requested-with", "XMLHttpRequest"),
    ("dnt", "1"),
    ("upgrade-insecure-requests", "1"),
    ("sec-gpc", "1"),
    ("te", "trailers"),
)
DECOY_PROBABILITY = 0.7


@dataclass(frozen=True)
class BrowserPersona:
    """Internally consistent set of browser request headers."""
    family: str
    user_agent: str
    accept: str
    accept_encoding: str
    platform: str
    sec_ch_ua: Optional[str] = None
    mobile: bool = False

    @property
    def chromium(self) -> bool:
        return self.sec_ch_ua is not None


_DOC_ACCEPT_CHROMIUM = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,"
    "image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7"
)
_DOC_ACCEPT_FIREFOX = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"
_DOC_ACCEPT_SAFARI = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

PERSONAS = (
    (BrowserPersona(
        family="chrome",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
        accept=_DOC_ACCEPT_CHROMIUM,
        accept_encoding="gzip, deflate, br",
        platform='"Windows"',
        sec_ch_ua='"Chromium";v="122", "Not(A:Brand";v="24", "Google Chrome";v="122"',
    ), 40),
    (BrowserPersona(
        family="chrome",
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
        accept=_DOC_ACCEPT_CHROMIUM,
        accept_encoding="gzip, deflate, br",
        platform='"macOS"',
        sec_ch_ua='"Chromium";v="122", "Not(A:Brand";v="24", "Google Chrome";v="122"',
    ), 15),
    (BrowserPersona(
        family="edge",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36 Edg/122.0.0.0",
        accept=_DOC_ACCEPT_CHROMIUM,
        accept_encoding="gzip, deflate, br",
        platform='"Windows"',
        sec_ch_ua='"Chromium";v="122", "Not(A:Brand";v="24", "Microsoft Edge";v="122"',
    ), 10),
    (BrowserPersona(
        family="firefox",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:122.0) Gecko/20100101 Firefox/122.0",
        accept=_DOC_ACCEPT_FIREFOX,
        accept_encoding="gzip, deflate, br",
        platform='"Windows"',
    ), 20),
    (BrowserPersona(
        family="safari",
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
        accept=_DOC_ACCEPT_SAFARI,
        accept_encoding="gzip, deflate, br",
        platform='"macOS"',
    ), 15),
)

USER_AGENTS = tuple(p.user_agent for p, _ in PERSONAS)


def _as_list(headers: HeaderInput) -> HeaderList:
    items = headers.items() if isinstance(headers, Mapping) else headers
    return [(str(name).strip().lower(), str(value)) for name, value in items]


def _has(headers: HeaderList, name: str) -> bool:
    return any(n == name for n, _ in headers)


def _get(headers: HeaderList, name: str) -> Optional[str]:
    for n, v in headers:
        if n == name:
            return v
    return None


def _set(headers: HeaderList, name: str, value: str) -> HeaderList:
    """Replace every occurrence of `name` with a single value, keeping the first position."""
    out: HeaderList = []
    placed = False
    for n, v in headers:
        if n == name:
            if not placed:
                out.append((name, value))
                placed = True
            continue
        out.append((n, v))
    if not placed:
        out.append((name, value))
    return out


def _drop(headers: HeaderList, predicate) -> HeaderList:
    return [(n, v) for n, v in headers if not predicate(n)]


def _family_of(user_agent: str) -> str:
    if "Edg/" in user_agent:
        return "edge"
    if "Firefox/" in user_agent:
        return "firefox"
    if "Chrome/" in user_agent:
        return "chrome"
    if "Safari/" in user_agent:
        return "safari"
    return ""


def pick_persona(rng: random.Random, user_agent: Optional[str] = None) -> BrowserPersona:
    """Weighted persona pick, constrained to the family of `user_agent` when given."""
    candidates: Sequence[Tuple[BrowserPersona, int]] = PERSONAS
    if user_agent:
        family = _family_of(user_agent)
        matching = [(p, w) for p, w in PERSONAS if p.family == family]
        if matching:
            candidates = matching
    personas = [p for p, _ in candidates]
    weights = [w for _, w in candidates]
    return rng.choices(personas, weights=weights, k=1)[0]


def strip_denied(headers: HeaderInput) -> HeaderList:
    """Lowercase names and drop every deny-listed header."""
    return _drop(_as_list(headers), lambda n: n in DENY_LIST)


def obfuscate_headers(
    headers: HeaderInput,
    level: int,
    rng: Optional[random.Random] = None,
    rotate_user_agent: bool = True,
    now: Optional[float] = None,
) -> HeaderList:
    """
    Return a rewritten copy of `headers` for the given obfuscation level.

    Header names in the result are lowercase. The `host` header is never
    altered and no deny-listed header survives at any level.
    """
    if not 0 <= level <= 3:
        raise ValueError(f"obfuscation level must be 0-3, got {level}")
    rng = rng or random.Random()
    out = strip_denied(headers)

    if level >= 1:
        out = _set(out, "x-request-id", f"{rng.getrandbits(128):032x}")
        out = _set(out, "cache-control", "no-cache, no-store, must-revalidate")
        out = _set(out, "pragma", "no-cache")
        out = _set(out, "expires", "0")

    if level >= 2:
        client_ua = _get(out, "user-agent")
        if rotate_user_agent or not client_ua:
            persona = pick_persona(rng)
            out = _set(out, "user-agent", persona.user_agent)
        else:
            persona = pick_persona(rng, client_ua)

        if not _has(out, "accept"):
            out = _set(out, "accept", persona.accept)
        if not _has(out, "accept-encoding"):
            out = _set(out, "accept-encoding", persona.accept_encoding)
        if not _has(out, "accept-language"):
            out = _set(out, "accept-language", rng.choice(ACCEPT_LANGUAGES))

        out = _set(out, "sec-fetch-dest", "document")
        out = _set(out, "sec-fetch-mode", "navigate")
        out = _set(out, "sec-fetch-site", "none")
        out = _set(out, "sec-fetch-user", "?1")

        if persona.chromium:
            out = _set(out, "sec-ch-ua", persona.sec_ch_ua)
            out = _set(out, "sec-ch-ua-mobile", "?1" if persona.mobile else "?0")
            out = _set(out, "sec-ch-ua-platform", persona.platform)
        else:
            # Client hints from a non-Chromium browser would contradict the UA
            out = _drop(out, lambda n: n.startswith("sec-ch-ua"))

        ts = int((time.time() if now is None else now) * 1000)
        out = _set(out, "x-correlation-id", f"{ts}-{rng.getrandbits(32):08x}")

    if level >= 3:
        for name, value in DECOY_HEADERS:
            if rng.random() < DECOY_PROBABILITY and not _has(out, name):
                out.append((name, value))
        host = [(n, v) for n, v in out if n == "host"]
        rest = [(n, v) for n, v in out if n != "host"]
        rng.shuffle(rest)
        out = host + rest

    return out


def scrub_response_headers(headers: HeaderInput) -> HeaderList:
    """
    Strip server-identifying headers and force no-store caching.

    Content-Encoding and the body framing headers pass through untouched.
    """
    out = _drop(_as_list(headers), lambda n: n in RESPONSE_STRIP)
    out = _set(out, "cache-control", "no-store, no-cache, must-revalidate")
    out = _set(out, "pragma", "no-cache")
    out = _set(out, "expires", "0")
    return out
