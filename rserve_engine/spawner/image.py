# rserve_engine/spawner/image.py
"""
Image identity, Dockerfile generation and build-stream parsing.

Everything here is pure so it can be tested without a docker daemon.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from rserve_engine.core.models import AppSpec
from rserve_engine.spawner.labels import APP_ID_LABEL, MANAGED_LABEL, MANAGED_VALUE


RSERVE_PORT = 6311
DEFAULT_IMAGE_PREFIX = "rserve-app"
DEFAULT_BASE_IMAGE = "rserve-base"
APP_DIR = "/app"


# ============================================
# Image identity
# ============================================

def image_hash(spec: AppSpec) -> str:
    """
    Short content hash over the inputs that change the built image.

    Package order does not matter; replicas and name do not take part.
    """
    data = json.dumps(
        {
            "rVersion": spec.r_version,
            "packages": sorted(spec.packages),
            "codeSource": spec.code_source.to_dict(),
            "entryScript": spec.entry_script,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:12]


def image_name(slug: str, prefix: str = DEFAULT_IMAGE_PREFIX) -> str:
    return f"{prefix}-{slug}"


def image_reference(spec: AppSpec, prefix: str = DEFAULT_IMAGE_PREFIX) -> Tuple[str, str, str]:
    """Return ``(name, tag, "name:tag")`` for an app."""
    name = image_name(spec.slug, prefix)
    tag = image_hash(spec)
    return name, tag, f"{name}:{tag}"


def container_name(slug: str, index: int, prefix: str = DEFAULT_IMAGE_PREFIX) -> str:
    return f"{prefix}-{slug}-{index}"


# ============================================
# Dockerfile
# ============================================

def generate_dockerfile(
    spec: AppSpec,
    base_image: str = DEFAULT_BASE_IMAGE,
    port: int = RSERVE_PORT,
) -> str:
    lines: List[str] = [
        f"FROM {base_image}:{spec.r_version}",
        "",
        f"LABEL {MANAGED_LABEL}={MANAGED_VALUE}",
        f"LABEL {APP_ID_LABEL}={spec.app_id}",
        "",
    ]

    if spec.packages:
        pkg_list = ", ".join(f"'{p}'" for p in spec.packages)
        lines += [f'RUN R -e "pak::pak(c({pkg_list}))"', ""]

    lines += [
        f"COPY code/ {APP_DIR}/",
        "",
        f"EXPOSE {port}",
        "",
        # Rserve speaks its own binary protocol; an open socket is the probe
        "HEALTHCHECK --interval=10s --timeout=3s --start-period=30s --retries=3 \\",
        f"  CMD bash -c 'exec 3<>/dev/tcp/127.0.0.1/{port}' || exit 1",
        "",
        f"CMD [\"R\", \"-e\", \"source('{APP_DIR}/{spec.entry_script}')\"]",
        "",
    ]
    return "\n".join(lines)


# ============================================
# Build stream
# ============================================

@dataclass
class BuildChunk:
    """Log lines and error extracted from one build-stream item."""
    lines: List[str]
    error: Optional[str] = None


def parse_build_chunk(chunk: Union[Dict[str, Any], bytes, str]) -> BuildChunk:
    """
    Interpret one item of the engine's build progress stream.

    Decoded dicts carry ``stream`` text and/or an ``error``. Anything that is
    not JSON is kept as a plain log line.
    """
    if isinstance(chunk, bytes):
        chunk = chunk.decode("utf-8", errors="replace")

    if isinstance(chunk, str):
        lines: List[str] = []
        error = None
        for raw in chunk.splitlines():
            if not raw.strip():
                continue
            try:
                obj = json.loads(raw)
            except ValueError:
                lines.append(raw.strip())
                continue
            if not isinstance(obj, dict):
                lines.append(raw.strip())
                continue
            parsed = parse_build_chunk(obj)
            lines += parsed.lines
            error = parsed.error or error
        return BuildChunk(lines=lines, error=error)

    lines = []
    error = None

    text = chunk.get("stream")
    if text:
        text = text.rstrip()
        if text:
            lines.append(text)

    error = chunk.get("error") or (chunk.get("errorDetail") or {}).get("message")
    if error:
        lines.append(f"ERROR: {error}")

    return BuildChunk(lines=lines, error=error)
