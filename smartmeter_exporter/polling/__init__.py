"""
Scrape polling module.

Handles scheduled scraping of the smart meter.
"""
from .decoder import DecodeResult, decode_properties
from .orchestrator import ScrapeOrchestrator
from .scheduler import ScrapeScheduler

__all__ = [
    "DecodeResult",
    "decode_properties",
    "ScrapeOrchestrator",
    "ScrapeScheduler",
]
