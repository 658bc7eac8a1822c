"""
Prometheus metrics for the reflector and the prober.
Mirrors the in-process counters; those stay the source of truth.
"""

import logging
from typing import Optional

from prometheus_client import Counter, start_http_server

logger = logging.getLogger(__name__)

# Reflector, per endpoint
reflector_received = Counter(
    'udptools_reflector_received',
    'Datagrams received by a reflector endpoint',
    ['endpoint']
)
reflector_transmitted = Counter(
    'udptools_reflector_transmitted',
    'Datagrams reflected back to their sender',
    ['endpoint']
)
reflector_errored = Counter(
    'udptools_reflector_errored',
    'Datagrams truncated on receive or failed on reflect',
    ['endpoint']
)
reflector_received_bytes = Counter(
    'udptools_reflector_received_bytes',
    'Octets received by a reflector endpoint',
    ['endpoint']
)

# Prober, per target
probe_sent = Counter(
    'udptools_probe_sent',
    'Probe datagrams attempted',
    ['target']
)
probe_confirmed = Counter(
    'udptools_probe_confirmed',
    'Probe datagrams confirmed by an identical echo',
    ['target']
)
probe_lost = Counter(
    'udptools_probe_lost',
    'Probe datagrams without a confirming echo',
    ['target']
)


def start_metrics_server(port: Optional[int]) -> bool:
    """Start the /metrics exporter if a port is configured"""
    if not port:
        return False
    start_http_server(port)
    logger.info(f"Metrics server listening on :{port}/metrics")
    return True
