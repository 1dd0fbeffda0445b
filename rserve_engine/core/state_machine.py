#rserve_engine\core\state_machine.py

from typing import Iterable

from rserve_engine.core.models import AppStatus


ERROR_STATES = {"exited", "dead"}
RUNNING_STATE = "running"


def derive_app_status(container_states: Iterable[str], building: bool = False) -> AppStatus:
    """
    Derive an app's coarse status from the engine states of its containers.

    Pure: the same states always give the same status. An in-flight build
    wins over everything else.
    """
    if building:
        return AppStatus.BUILDING

    states = [s.lower() for s in container_states]

    if not states:
        return AppStatus.STOPPED

    if any(s in ERROR_STATES for s in states):
        return AppStatus.ERROR

    if all(s == RUNNING_STATE for s in states):
        return AppStatus.RUNNING

    return AppStatus.STARTING


def parse_health_status(status_text: str):
    """Pull the health-check phase out of a human status string."""
    text = (status_text or "").lower()
    # "unhealthy" contains "healthy", check it first
    if "unhealthy" in text:
        return "unhealthy"
    if "healthy" in text:
        return "healthy"
    if "health: starting" in text or "(starting)" in text:
        return "starting"
    return None
