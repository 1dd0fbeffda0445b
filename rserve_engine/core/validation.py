#rserve_engine\core\validation.py
import re
from typing import Optional

from rserve_engine.core.models import AppSpec, GitSource, UploadSource
from rserve_engine.core.errors import SpawnerValidationError
from rserve_engine.core.schemas import SLUG_PATTERN


_SLUG_RE = re.compile(SLUG_PATTERN)


def validate_app_spec(spec: AppSpec) -> None:
    # -------------------------
    # Identity
    # -------------------------
    if not spec.app_id:
        raise SpawnerValidationError("app_id is required")

    if not spec.slug or not _SLUG_RE.match(spec.slug):
        raise SpawnerValidationError(f"slug {spec.slug!r} is not URL-path-safe")

    # -------------------------
    # Runtime
    # -------------------------
    if not spec.r_version:
        raise SpawnerValidationError("r_version is required")

    if not spec.entry_script:
        raise SpawnerValidationError("entry_script is required")

    if spec.replicas < 1:
        raise SpawnerValidationError("replicas must be at least 1")

    # packages are interpolated into an R string in the Dockerfile
    for pkg in spec.packages:
        if not pkg or "'" in pkg or '"' in pkg:
            raise SpawnerValidationError(f"invalid package name: {pkg!r}")

    # -------------------------
    # Code source
    # -------------------------
    if isinstance(spec.code_source, GitSource):
        if not spec.code_source.repo_url:
            raise SpawnerValidationError("git source requires repo_url")
    elif not isinstance(spec.code_source, UploadSource):
        raise SpawnerValidationError(f"unknown code source: {spec.code_source!r}")


def validate_build_inputs(spec: AppSpec, code_path: Optional[str]) -> None:
    """Fail fast on a build that cannot possibly succeed."""
    validate_app_spec(spec)

    if isinstance(spec.code_source, UploadSource) and not code_path:
        raise SpawnerValidationError(
            f'App "{spec.slug}": upload source requires code_path'
        )
