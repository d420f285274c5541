"""
Core configuration management for the Veil relay.

This module handles configuration loading, validation and management
including environment variables and env files. The relay core never reads
the environment itself; it only receives values from VeilConfig.
"""

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

DEFAULT_DNS_SERVERS = [
    "1.1.1.1", "1.0.0.1",            # Cloudflare
    "8.8.8.8", "8.8.4.4",            # Google
    "9.9.9.9", "149.112.112.112",    # Quad9
    "208.67.222.222", "208.67.220.220",  # OpenDNS
    "94.140.14.14", "94.140.15.15",  # AdGuard
]

DEFAULT_DOH_PROVIDERS = [
    "https://cloudflare-dns.com/dns-query",
    "https://dns.google/resolve",
    "https://doh.opendns.com/dns-query",
    "https://dns.quad9.net/dns-query",
    "https://doh.libredns.gr/dns-query",
    "https://dns.adguard.com/dns-query",
]

DEFAULT_DOT_PROVIDERS = [
    {"host": "1.1.1.1", "port": 853, "server_name": "cloudflare-dns.com"},
    {"host": "8.8.8.8", "port": 853, "server_name": "dns.google"},
    {"host": "9.9.9.9", "port": 853, "server_name": "dns.quad9.net"},
]

DEFAULT_STATIC_HOSTS = {
    "www.google.com": ["142.250.185.4", "142.250.185.36"],
    "www.facebook.com": ["157.240.3.35", "157.240.22.35"],
    "www.youtube.com": ["172.217.11.78", "172.217.11.110"],
    "www.twitter.com": ["104.244.42.65", "104.244.42.129"],
    "www.instagram.com": ["157.240.3.174", "157.240.22.174"],
    "www.wikipedia.org": ["208.80.154.224", "208.80.153.224"],
    "www.reddit.com": ["151.101.1.140", "151.101.65.140"],
    "www.github.com": ["140.82.112.3", "140.82.114.4"],
    "www.telegram.org": ["149.154.167.99", "149.154.175.50"],
}

DEFAULT_FRONTING_RULES = [
    {"pattern": "*.wikipedia.org", "cover_host": "ajax.googleapis.com"},
    {"pattern": "*.blogspot.com", "cover_host": "fonts.googleapis.com"},
    {"pattern": "*.medium.com", "cover_host": "cdnjs.cloudflare.com"},
    {"pattern": "*.facebook.com", "cover_host": "cdn.jsdelivr.net"},
    {"pattern": "*.telegram.org", "cover_host": "code.jquery.com"},
    {"pattern": "*.youtube.com", "cover_host": "static.cloudflareinsights.com"},
    {"pattern": "*.twitter.com", "cover_host": "ajax.aspnetcdn.com"},
]

DEFAULT_FRONT_POOL = [
    "ajax.googleapis.com",
    "cdn.jsdelivr.net",
    "cdnjs.cloudflare.com",
    "static.cloudflareinsights.com",
    "fonts.googleapis.com",
    "code.jquery.com",
    "unpkg.com",
    "stackpath.bootstrapcdn.com",
    "ajax.aspnetcdn.com",
    "cdn.statically.io",
]

DEFAULT_SNI_COMMON_NAMES = [
    "www.microsoft.com",
    "www.google.com",
    "www.apple.com",
    "www.amazon.com",
    "www.cloudflare.com",
    "www.akamai.com",
    "www.fastly.com",
    "www.office.com",
]

STRATEGY_NAMES = ("recursive", "doh", "dot", "static")


def _csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _json_or_csv(value: str) -> Any:
    value = value.strip()
    if value.startswith("[") or value.startswith("{"):
        return json.loads(value)
    return _csv(value)


class VeilConfig:
    """Central configuration manager for the relay."""

    def __init__(self, env_file: Optional[str] = None):
        self.env_file = env_file or os.getenv("VEIL_ENV_FILE", "veil.env")
        self._config: Dict[str, Any] = {}
        self._load_default_config()
        self._load_env_file()
        self._load_from_environment()

    def _load_default_config(self):
        """Load default configuration values."""
        self._config = {
            # Listener
            "host": "0.0.0.0",
            "port": 3000,

            # Obfuscation
            "obfuscation_enabled": True,
            "obfuscation_level": 2,
            "fragment_enabled": True,
            "min_fragment": 400,
            "max_fragment": 1400,
            "jitter_enabled": True,
            "min_jitter_ms": 10.0,
            "max_jitter_ms": 100.0,
            "rotate_user_agent": True,

            # Circuit breaker
            "rotation_interval": 3600.0,
            "rotation_jitter": 0.2,

            # Domain fronting / SNI
            "fronting_enabled": True,
            "fronting_rules": [dict(r) for r in DEFAULT_FRONTING_RULES],
            "front_pool": list(DEFAULT_FRONT_POOL),
            "sni_spoofing_enabled": True,
            "sni_common_names": list(DEFAULT_SNI_COMMON_NAMES),

            # DNS
            "dns_servers": list(DEFAULT_DNS_SERVERS),
            "doh_providers": list(DEFAULT_DOH_PROVIDERS),
            "dot_providers": [dict(p) for p in DEFAULT_DOT_PROVIDERS],
            "static_hosts": {k: list(v) for k, v in DEFAULT_STATIC_HOSTS.items()},
            "dns_timeout": 5.0,
            "doh_retries": 3,
            "dns_strategy_order": list(STRATEGY_NAMES),

            # TLS
            "tls_fingerprinting_enabled": True,
            "tls_profiles": ["chrome", "firefox", "safari"],
            "tls_verify": False,
            "ticket_secret": "",

            # WebSocket tunnel
            "websocket_enabled": True,
            "ws_path": "/api/stream",

            # Timeouts
            "idle_timeout": 60.0,
            "connect_timeout": 10.0,
            "http_timeout": 30.0,

            # Health / admin
            "health_enabled": True,
            "web_admin_enabled": False,
            "web_admin_port": 8585,

            # Logging
            "log_level": "INFO",
            "log_file": "",
        }

    def _load_env_file(self):
        """Load KEY=VALUE (or PowerShell $env:KEY=VALUE) lines into the environment."""
        try:
            if not self.env_file or not os.path.exists(self.env_file):
                return

            with open(self.env_file, "r", encoding="utf-8") as f:
                for raw_line in f:
                    line = raw_line.strip()
                    if not line or line.startswith("#"):
                        continue

                    key = None
                    value = None

                    if line.lower().startswith("$env:"):
                        m = re.match(r"^\$env:([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.+)$", line)
                        if m:
                            key = m.group(1).strip()
                            value = m.group(2).strip()
                    elif "=" in line:
                        left, right = line.split("=", 1)
                        key = left.strip()
                        value = right.strip()

                    if key and value is not None:
                        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
                            value = value[1:-1]
                        elif value.startswith("'") and value.endswith("'") and len(value) >= 2:
                            value = value[1:-1]

                        os.environ.setdefault(key, value)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Failed to load env file: {e}")

    def _load_from_environment(self):
        """Override configuration with environment variables."""
        to_bool = lambda x: x.lower() in ("1", "true", "yes", "on")
        env_mappings = {
            "VEIL_HOST": ("host", str),
            "PORT": ("port", int),
            "VEIL_PORT": ("port", int),
            "VEIL_OBFUSCATION": ("obfuscation_enabled", to_bool),
            "VEIL_OBFUSCATION_LEVEL": ("obfuscation_level", int),
            "VEIL_FRAGMENT": ("fragment_enabled", to_bool),
            "VEIL_MIN_FRAGMENT": ("min_fragment", int),
            "VEIL_MAX_FRAGMENT": ("max_fragment", int),
            "VEIL_JITTER": ("jitter_enabled", to_bool),
            "VEIL_MIN_JITTER_MS": ("min_jitter_ms", float),
            "VEIL_MAX_JITTER_MS": ("max_jitter_ms", float),
            "VEIL_ROTATE_UA": ("rotate_user_agent", to_bool),
            "VEIL_ROTATION_INTERVAL": ("rotation_interval", float),
            "VEIL_ROTATION_JITTER": ("rotation_jitter", float),
            "VEIL_FRONTING": ("fronting_enabled", to_bool),
            "VEIL_FRONTING_RULES": ("fronting_rules", json.loads),
            "VEIL_FRONT_POOL": ("front_pool", _csv),
            "VEIL_SNI_SPOOFING": ("sni_spoofing_enabled", to_bool),
            "VEIL_SNI_COMMON_NAMES": ("sni_common_names", _csv),
            "VEIL_DNS_SERVERS": ("dns_servers", _csv),
            "VEIL_DOH_PROVIDERS": ("doh_providers", _csv),
            "VEIL_DOT_PROVIDERS": ("dot_providers", json.loads),
            "VEIL_STATIC_HOSTS": ("static_hosts", json.loads),
            "VEIL_DNS_TIMEOUT": ("dns_timeout", float),
            "VEIL_DOH_RETRIES": ("doh_retries", int),
            "VEIL_DNS_ORDER": ("dns_strategy_order", _json_or_csv),
            "VEIL_TLS_FINGERPRINTING": ("tls_fingerprinting_enabled", to_bool),
            "VEIL_TLS_PROFILES": ("tls_profiles", _csv),
            "VEIL_TLS_VERIFY": ("tls_verify", to_bool),
            "VEIL_TICKET_SECRET": ("ticket_secret", str),
            "VEIL_WEBSOCKET": ("websocket_enabled", to_bool),
            "VEIL_WS_PATH": ("ws_path", str),
            "VEIL_IDLE_TIMEOUT": ("idle_timeout", float),
            "VEIL_CONNECT_TIMEOUT": ("connect_timeout", float),
            "VEIL_HTTP_TIMEOUT": ("http_timeout", float),
            "VEIL_HEALTH": ("health_enabled", to_bool),
            "VEIL_WEB_ADMIN": ("web_admin_enabled", to_bool),
            "VEIL_WEB_ADMIN_PORT": ("web_admin_port", int),
            "VEIL_LOG_LEVEL": ("log_level", str),
            "VEIL_LOG_FILE": ("log_file", str),
        }

        for env_key, (config_key, converter) in env_mappings.items():
            if env_key in os.environ:
                try:
                    self._config[config_key] = converter(os.environ[env_key])
                except (ValueError, TypeError):
                    logging.getLogger(__name__).warning(
                        f"Invalid value for {env_key}: {os.environ[env_key]}"
                    )

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any):
        """Set configuration value."""
        self._config[key] = value

    def update(self, config_dict: Dict[str, Any]):
        """Update multiple configuration values."""
        self._config.update(config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return self._config.copy()

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        port = self.get("port")
        if not isinstance(port, int) or not 0 <= port <= 65535:
            errors.append(f"port must be 0-65535, got {port!r}")

        level = self.get("obfuscation_level")
        if not isinstance(level, int) or not 0 <= level <= 3:
            errors.append(f"obfuscation_level must be 0-3, got {level!r}")

        if self.get("min_fragment", 0) < 1:
            errors.append("min_fragment must be at least 1")
        if self.get("min_fragment", 0) > self.get("max_fragment", 0):
            errors.append("min_fragment must not exceed max_fragment")
        if self.get("min_jitter_ms", 0) < 0:
            errors.append("min_jitter_ms must not be negative")
        if self.get("min_jitter_ms", 0) > self.get("max_jitter_ms", 0):
            errors.append("min_jitter_ms must not exceed max_jitter_ms")

        if self.get("rotation_interval", 0) <= 0:
            errors.append("rotation_interval must be positive")
        jitter = self.get("rotation_jitter", 0)
        if not 0 <= jitter < 2:
            errors.append("rotation_jitter must be in [0, 2)")

        for key in ("idle_timeout", "connect_timeout", "http_timeout", "dns_timeout"):
            if self.get(key, 0) <= 0:
                errors.append(f"{key} must be positive")

        if self.get("doh_retries", 0) < 1:
            errors.append("doh_retries must be at least 1")

        order = self.get("dns_strategy_order") or []
        unknown = [s for s in order if s not in STRATEGY_NAMES]
        if unknown:
            errors.append(f"unknown DNS strategies: {', '.join(unknown)}")
        if not order:
            errors.append("dns_strategy_order must name at least one strategy")

        for rule in self.get("fronting_rules") or []:
            if not isinstance(rule, dict) or not rule.get("pattern") or not rule.get("cover_host"):
                errors.append(f"invalid fronting rule: {rule!r}")

        if self.get("fronting_enabled") and not self.get("front_pool"):
            errors.append("front_pool must not be empty when fronting is enabled")

        ws_path = self.get("ws_path", "")
        if not ws_path.startswith("/"):
            errors.append("ws_path must start with '/'")

        if not self.get("tls_profiles"):
            errors.append("tls_profiles must name at least one profile")

        return errors
