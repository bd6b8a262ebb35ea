"""Monitoring data for /api/monitoring.

Each entry describes one service metric. Value is either absent, a number or
a string; absent values and empty metric types are left out of the JSON so
the collector writes no statistic for them.
"""

import gc
import platform
import resource
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlsplit

METRIC_GAUGE = "gauge"      # value can go up or down
METRIC_COUNTER = "counter"  # value only increases

STATE_OK = "OK"

MetricValue = Union[None, int, float, str]

_start_time = time.monotonic()


@dataclass(frozen=True)
class Metric:
    """One monitoring entry."""
    service: str
    host: str
    state: str = STATE_OK
    value: MetricValue = None
    description: str = ""
    metric: str = ""

    def to_dict(self) -> dict:
        data = {
            "Service": self.service,
            "Host": self.host,
            "State": self.state,
        }
        if self.value is not None:
            if not isinstance(self.value, (int, float, str)) or isinstance(self.value, bool):
                raise TypeError(f"unsupported metric value: {self.value!r}")
            data["Value"] = self.value
        data["Description"] = self.description
        if self.metric:
            data["Metric"] = self.metric
        return data


def strip_port(host: str) -> str:
    """Strip the port: "localhost:8080" -> "localhost", "[::1]:443" -> "::1"."""
    if not host:
        return ""
    return urlsplit(f"//{host}").hostname or host


def monitoring(host: Optional[str], version: str) -> list:
    """Collect monitoring metrics."""
    host = strip_port(host or "")
    uptime_hours = int((time.monotonic() - _start_time) // 3600)
    threads = threading.active_count()
    usage = resource.getrusage(resource.RUSAGE_SELF)
    collections = sum(s["collections"] for s in gc.get_stats())
    gc_objects = len(gc.get_objects())

    return [
        Metric("Uptime", host, value=uptime_hours,
               description=f"Uptime: {uptime_hours}h", metric=METRIC_COUNTER),
        Metric("Version", host, description=version),
        Metric("Prog Lang", host, description=f"python{platform.python_version()}"),
        Metric("Operating System", host, description=sys.platform),
        Metric("Number of Threads", host, value=threads,
               description=f"Number of Threads: {threads}", metric=METRIC_GAUGE),
        Metric("GC Collections", host, value=collections,
               description=f"GC Collections: {collections}", metric=METRIC_COUNTER),
        Metric("GC Objects", host, value=gc_objects,
               description=f"GC Objects: {gc_objects}", metric=METRIC_GAUGE),
        Metric("Max RSS", host, value=usage.ru_maxrss,
               description=f"Max RSS: {usage.ru_maxrss}kB", metric=METRIC_GAUGE),
        Metric("User CPU Time", host, value=round(usage.ru_utime, 3),
               description=f"User CPU Time: {usage.ru_utime:.3f}s", metric=METRIC_COUNTER),
        Metric("System CPU Time", host, value=round(usage.ru_stime, 3),
               description=f"System CPU Time: {usage.ru_stime:.3f}s", metric=METRIC_COUNTER),
    ]
