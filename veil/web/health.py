"""
Health document shared by the proxy listener and the admin web app.
"""

import platform
import socket
import sys
from datetime import datetime, timezone
from typing import Any, Dict

import psutil


def build_health_document(context) -> Dict[str, Any]:
    """Snapshot of process, feature and session state. Contains no secrets."""
    obf = context.obfuscation
    mem = psutil.virtual_memory()
    stats = context.registry.get_stats()
    return {
        "status": "healthy",
        "uptime": round(context.uptime, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "hostname": socket.gethostname(),
        "version": context.version,
        "features": {
            "dnsStrategies": [s.name for s in context.resolver.strategies],
            "domainFronting": context.fronting.enabled,
            "sniSpoofing": context.fronting.sni_spoofing,
            "tlsFingerprinting": context.tls.enabled,
            "tlsProfiles": [p.name for p in context.tls.profiles],
            "sessionTicketRotation": True,
            "headerObfuscation": obf.enabled,
            "obfuscationLevel": obf.level,
            "fragmentation": obf.enabled and obf.fragment_enabled,
            "trafficShaping": obf.enabled and obf.jitter_enabled,
            "circuitBreaker": True,
            "websocketTunnel": context.websocket_enabled,
        },
        "serverInfo": {
            "platform": sys.platform,
            "arch": platform.machine(),
            "cpus": psutil.cpu_count() or 1,
            "memory": {
                "total": mem.total,
                "free": mem.available,
            },
        },
        "dnsServers": context.resolver.servers,
        "sessions": {
            "active": stats["active"],
            "byMode": stats["by_mode"],
            "total": stats["total"],
            "failed": stats["failed"],
            "bytesSent": stats["bytes_sent"],
            "bytesReceived": stats["bytes_received"],
        },
        "pools": {
            "epoch": stats["epoch"],
            "rotations": stats["pool_rotations"],
            "lastRotation": stats["last_rotation"],
            "idle": {name: p["idle"] for name, p in stats["pools"].items()},
        },
    }
