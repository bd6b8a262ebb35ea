"""Process health data for /api/health."""

import datetime
import gc
import platform
import resource
import socket
import sys
import threading


def _max_rss_bytes() -> int:
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    return rss if sys.platform == "darwin" else rss * 1024


def health(version: str) -> dict:
    """Return the current health data of the application and system."""
    max_rss = _max_rss_bytes()
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = "unknown"

    return {
        "NumThreads": threading.active_count(),
        "GCObjects": len(gc.get_objects()),
        "MaxRSSBytes": max_rss,
        "MaxRSSMB": max_rss / (1024 * 1024),
        "Version": version,
        "ProgLang": f"python{platform.python_version()}",
        "HostName": hostname,
        "Time": datetime.datetime.now().astimezone().isoformat(timespec="seconds"),
        "OperatingSystem": sys.platform,
    }
