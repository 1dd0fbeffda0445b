# rserve_engine/spawner/labels.py
"""Ownership and reverse-proxy labels for managed containers and images."""

from typing import Dict, List, Optional


MANAGED_LABEL = "managed-by"
MANAGED_VALUE = "rserve-proxy"
APP_ID_LABEL = "rserve-proxy.app-id"
SLUG_LABEL = "rserve-proxy.slug"


def ownership_labels(app_id: str) -> Dict[str, str]:
    return {
        MANAGED_LABEL: MANAGED_VALUE,
        APP_ID_LABEL: app_id,
    }


def label_filters(app_id: Optional[str] = None) -> List[str]:
    """Docker ``label`` filter values for managed resources."""
    filters = [f"{MANAGED_LABEL}={MANAGED_VALUE}"]
    if app_id:
        filters.append(f"{APP_ID_LABEL}={app_id}")
    return filters


def traefik_labels(slug: str, container_port: int, network: Optional[str] = None) -> Dict[str, str]:
    """
    Route ``/<slug>`` to the app, strip the prefix, and balance over replicas.

    Every replica carries the same router/service names, so Traefik merges
    them into one service. The service is named after the slug, which is also
    what shows up as ``service="<slug>@docker"`` in Traefik's metrics.
    """
    prefix = f"/{slug}"
    router = slug
    svc = slug
    mw = f"{slug}-strip"

    labels = {
        "traefik.enable": "true",
        f"traefik.http.routers.{router}.rule": f"PathPrefix(`{prefix}`)",
        f"traefik.http.routers.{router}.middlewares": mw,
        f"traefik.http.middlewares.{mw}.stripprefix.prefixes": prefix,
        f"traefik.http.routers.{router}.service": svc,
        f"traefik.http.services.{svc}.loadbalancer.server.port": str(container_port),
    }
    if network:
        labels["traefik.docker.network"] = network
    return labels


def container_labels(app_id: str, slug: str, container_port: int, network: Optional[str] = None) -> Dict[str, str]:
    labels = ownership_labels(app_id)
    labels[SLUG_LABEL] = slug
    labels.update(traefik_labels(slug, container_port, network))
    return labels
