"""
Pooled HTTP client used for DNS-over-HTTPS lookups.

Requests are blocking; the resolver runs them in worker threads so the relay
event loop never waits on them.
"""

import logging
import random
import threading
from typing import Any, Dict, Optional

import psutil
import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..security.obfuscation import USER_AGENTS

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)


class HTTPClientManager:
    """Manages a requests session with memory-aware connection pooling."""

    def __init__(self, rng: Optional[random.Random] = None, retries: int = 0):
        self._session: Optional[requests.Session] = None
        # Transport-level retries; DoH lookups retry per provider themselves
        self._retries = retries
        self._pool_size: int = 10
        self._lock = threading.Lock()
        self._rng = rng or random.Random()

    def _get_memory_pct(self) -> float:
        """Get current memory usage percentage."""
        try:
            return psutil.virtual_memory().percent
        except (OSError, RuntimeError):
            return 50.0

    def _create_session(self, pool_connections: int = 10, pool_maxsize: int = 10, retries: int = 0) -> requests.Session:
        """Create a requests session with connection pooling."""
        session = requests.Session()
        retry_strategy = Retry(
            total=retries,
            backoff_factor=0.3,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            max_retries=retry_strategy
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def get_session(self) -> requests.Session:
        """Get or create the shared session, sized by current memory pressure."""
        with self._lock:
            if self._session is None:
                mem = self._get_memory_pct()
                if mem >= 90:
                    pool_conn, pool_max = 2, 4
                elif mem >= 75:
                    pool_conn, pool_max = 4, 8
                else:
                    pool_conn, pool_max = 6, 12
                self._pool_size = pool_max
                self._session = self._create_session(pool_conn, pool_max, self._retries)
            return self._session

    def reset_session(self):
        """Close and drop the session."""
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None

    def random_user_agent(self) -> str:
        """Get a random browser user agent."""
        return self._rng.choice(USER_AGENTS)

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 5.0,
    ) -> Any:
        """GET `url` and decode the JSON body. Raises requests exceptions on failure."""
        merged = {"User-Agent": self.random_user_agent()}
        if headers:
            merged.update(headers)
        response = self.get_session().get(url, params=params, headers=merged, timeout=timeout)
        response.raise_for_status()
        return response.json()

    def close(self):
        self.reset_session()
