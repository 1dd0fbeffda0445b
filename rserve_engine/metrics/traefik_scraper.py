# rserve_engine/metrics/traefik_scraper.py
"""Traefik Prometheus scraper for per-service request counters."""

import logging
import re
from typing import Dict

import requests

logger = logging.getLogger(__name__)

SCRAPE_TIMEOUT_SECONDS = 5

METRIC_NAME = "traefik_service_requests_total"

# traefik_service_requests_total{code="200",method="GET",service="my-slug@docker"} 42
REQUEST_TOTAL_RE = re.compile(
    r'^traefik_service_requests_total\{[^}]*service="([^"]+)@docker"[^}]*\}\s+'
    r'(\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)'
)


def parse_request_totals(text: str) -> Dict[str, float]:
    """
    Sum request counters per service slug.

    Lines for the same slug with different labels (status code, method...)
    are added together. Anything else is ignored.
    """
    counts: Dict[str, float] = {}
    for line in text.splitlines():
        if not line.startswith(METRIC_NAME):
            continue
        match = REQUEST_TOTAL_RE.match(line)
        if not match:
            continue
        slug = match.group(1)
        counts[slug] = counts.get(slug, 0.0) + float(match.group(2))
    return counts


def scrape_traefik_metrics(metrics_url: str, timeout: float = SCRAPE_TIMEOUT_SECONDS) -> Dict[str, float]:
    """
    Fetch Traefik's metrics endpoint and parse request totals.

    Returns an empty dict when Traefik is unreachable or answers non-2xx.
    """
    try:
        response = requests.get(metrics_url, timeout=timeout)
        if not response.ok:
            logger.warning(f"Traefik metrics returned HTTP {response.status_code}")
            return {}
        return parse_request_totals(response.text)
    except requests.exceptions.RequestException as e:
        logger.warning(f"Traefik metrics scrape failed: {e}")
        return {}
