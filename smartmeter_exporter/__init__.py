"""
SmartMeter Exporter.

Prometheus exporter for Japanese low-voltage smart meters. Reads
instantaneous power and current over the Wi-SUN B-route (ECHONET Lite
via an SKSTACK-IP serial module) and serves them over HTTP.
"""
__version__ = "1.0.0"

from .main import ExporterServer, main

__all__ = [
    "__version__",
    "ExporterServer",
    "main",
]
