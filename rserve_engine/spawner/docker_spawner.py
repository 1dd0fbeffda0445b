# rserve_engine/spawner/docker_spawner.py
"""
Docker spawner - builds app images and manages replica containers.

Each app gets its own image built from ``rserve-base:<r_version>`` with the
app's packages and code baked in. Containers carry ownership labels for
discovery and Traefik labels for routing; they publish no host ports.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import docker
from docker.errors import APIError, DockerException, NotFound

from rserve_engine.config import EngineSettings, settings as default_settings
from rserve_engine.core.errors import BuildFailedError, SpawnerError
from rserve_engine.core.models import AppSpec, AppStatus, BuildResult, ContainerInfo, GitSource
from rserve_engine.core.state_machine import RUNNING_STATE, derive_app_status, parse_health_status
from rserve_engine.core.validation import validate_app_spec, validate_build_inputs
from rserve_engine.spawner.build_logs import BuildLogBroadcaster
from rserve_engine.spawner.image import (
    container_name,
    generate_dockerfile,
    image_reference,
    parse_build_chunk,
)
from rserve_engine.spawner.labels import container_labels, label_filters, ownership_labels

logger = logging.getLogger(__name__)


class DockerSpawner:
    """
    Image and lifecycle orchestrator for Rserve apps.

    Every read is derived from the live managed-container listing; the
    spawner keeps no container state of its own besides the set of builds
    currently in flight.
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        settings: Optional[EngineSettings] = None,
    ):
        """
        Initialize spawner.

        Args:
            client: Docker client. If None, one is created on first use from settings.
            settings: Engine settings. Defaults to the process-wide settings.
        """
        self._settings = settings or default_settings
        self._client = client
        self._client_lock = Lock()

        self.network_name = self._settings.network_name
        self.image_prefix = self._settings.image_prefix
        self.base_image = self._settings.base_image
        self.rserve_port = self._settings.rserve_port

        self.build_logs = BuildLogBroadcaster()
        self._building: Set[str] = set()
        self._building_lock = Lock()

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = docker.DockerClient(base_url=self._settings.docker_base_url)
        return self._client

    # ============================================
    # Discovery
    # ============================================

    def list_managed_containers(self, app_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List managed containers (running or not), optionally for one app.

        Returns the engine's raw listing dicts (Id, State, Status, Created, Labels).
        """
        try:
            return self.client.api.containers(
                all=True,
                filters={"label": label_filters(app_id)},
            )
        except DockerException as e:
            raise SpawnerError(f"Failed to list managed containers: {e}") from e

    def is_building(self, app_id: str) -> bool:
        with self._building_lock:
            return app_id in self._building

    # ============================================
    # Build
    # ============================================

    def build_image(
        self,
        spec: AppSpec,
        code_path: Optional[str] = None,
        on_log: Optional[Callable[[str], None]] = None,
    ) -> BuildResult:
        """
        Build the app image.

        Upload sources need ``code_path`` (raises SpawnerValidationError
        otherwise). Any failure after validation is reported in the result,
        not raised. The temporary build context is always removed.
        """
        validate_build_inputs(spec, code_path)

        name, tag, full = image_reference(spec, self.image_prefix)
        log: List[str] = []
        error: Optional[str] = None

        def emit(line: str) -> None:
            log.append(line)
            self.build_logs.publish(spec.app_id, line)
            if on_log:
                on_log(line)

        with self._building_lock:
            self._building.add(spec.app_id)
        self.build_logs.begin(spec.app_id)

        logger.info(f"[{spec.app_id}] Building image {full}")

        context_dir = None
        try:
            context_dir = tempfile.mkdtemp(prefix=f"rserve-build-{spec.slug}-")
            code_dir = os.path.join(context_dir, "code")

            self._prepare_code(spec, code_dir, code_path)

            with open(os.path.join(context_dir, "Dockerfile"), "w", encoding="utf-8") as f:
                f.write(generate_dockerfile(spec, base_image=self.base_image, port=self.rserve_port))

            stream = self.client.api.build(
                path=context_dir,
                tag=full,
                labels=ownership_labels(spec.app_id),
                rm=True,
                decode=True,
            )
            for chunk in stream:
                parsed = parse_build_chunk(chunk)
                for line in parsed.lines:
                    emit(line)
                if parsed.error:
                    error = parsed.error

        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode("utf-8", errors="replace").strip()
            error = f"git clone failed: {stderr or e}"
            emit(f"ERROR: {error}")
        except subprocess.TimeoutExpired:
            error = f"git clone timed out after {self._settings.git_clone_timeout_seconds}s"
            emit(f"ERROR: {error}")
        except (DockerException, OSError) as e:
            error = str(e)
            emit(f"ERROR: {error}")
        finally:
            if context_dir:
                shutil.rmtree(context_dir, ignore_errors=True)
            with self._building_lock:
                self._building.discard(spec.app_id)
            self.build_logs.finish(spec.app_id)

        if error:
            logger.error(f"[{spec.app_id}] ❌ Build failed: {error}")
        else:
            logger.info(f"[{spec.app_id}] ✅ Built image {full}")

        return BuildResult(
            success=error is None,
            image_name=name,
            image_tag=tag,
            build_log=log,
            error=error,
        )

    def _prepare_code(self, spec: AppSpec, code_dir: str, code_path: Optional[str]) -> None:
        """Populate ``code_dir`` from git or from the uploaded files."""
        source = spec.code_source
        if isinstance(source, GitSource):
            args = ["git", "clone", "--depth", "1"]
            if source.branch:
                args += ["--branch", source.branch]
            args += [source.repo_url, code_dir]
            subprocess.run(
                args,
                check=True,
                capture_output=True,
                timeout=self._settings.git_clone_timeout_seconds,
            )
        else:
            shutil.copytree(code_path, code_dir)

    def stream_build_logs(self, app_id: str, on_log: Callable[[str], None]) -> Callable[[], None]:
        """Replay the in-flight build's log to ``on_log`` and follow it. Returns unsubscribe."""
        return self.build_logs.subscribe(app_id, on_log)

    # ============================================
    # Lifecycle
    # ============================================

    def start_app(
        self,
        spec: AppSpec,
        image: Optional[str] = None,
        code_path: Optional[str] = None,
    ) -> None:
        """
        Create and start ``spec.replicas`` containers.

        Builds first when no image is given; a failed build raises
        BuildFailedError. Replicas already started are left in place if a
        later one fails.
        """
        validate_app_spec(spec)

        if image is None:
            result = self.build_image(spec, code_path=code_path)
            if not result.success:
                raise BuildFailedError(
                    f'Build failed for app "{spec.slug}": {result.error}',
                    build_log=result.build_log,
                )
            image = result.full_image

        labels = container_labels(spec.app_id, spec.slug, self.rserve_port, self.network_name)

        for index in range(spec.replicas):
            name = container_name(spec.slug, index, self.image_prefix)
            try:
                container = self.client.containers.create(
                    image=image,
                    name=name,
                    detach=True,
                    labels=labels,
                    network=self.network_name,
                )
                container.start()
            except DockerException as e:
                logger.error(f"[{spec.app_id}] ❌ Replica {index} failed to start: {e}")
                raise SpawnerError(f"Failed to start replica {name}: {e}") from e

            logger.info(f"[{spec.app_id}] ✅ Started {name} ({container.id[:12]})")

    def stop_app(self, app_id: str) -> None:
        """Stop running replicas and remove every replica of the app."""
        for info in self.list_managed_containers(app_id):
            container_id = info["Id"]
            try:
                container = self.client.containers.get(container_id)
                if info.get("State") == RUNNING_STATE:
                    container.stop(timeout=10)
                container.remove()
            except NotFound:
                logger.debug(f"[{app_id}] Container {container_id[:12]} already gone")
            except DockerException as e:
                raise SpawnerError(f"Failed to stop container {container_id[:12]}: {e}") from e

        logger.info(f"[{app_id}] Stopped")

    def restart_app(self, app_id: str) -> None:
        """Restart every replica in place."""
        for info in self.list_managed_containers(app_id):
            container_id = info["Id"]
            try:
                self.client.containers.get(container_id).restart(timeout=10)
            except DockerException as e:
                raise SpawnerError(f"Failed to restart container {container_id[:12]}: {e}") from e

        logger.info(f"[{app_id}] Restarted")

    # ============================================
    # Status
    # ============================================

    def get_app_status(self, app_id: str) -> AppStatus:
        if self.is_building(app_id):
            return AppStatus.BUILDING
        states = [c.get("State", "") for c in self.list_managed_containers(app_id)]
        return derive_app_status(states)

    def get_containers(self, app_id: str) -> List[ContainerInfo]:
        result = []
        for c in self.list_managed_containers(app_id):
            status_text = c.get("Status", "")
            created = c.get("Created")
            result.append(ContainerInfo(
                container_id=c["Id"],
                status=status_text,
                port=self.rserve_port,
                health_status=parse_health_status(status_text),
                started_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
            ))
        return result

    def get_container_stats(self, container_id: str) -> Dict[str, Any]:
        """Point-in-time stats sample for one container."""
        return self.client.api.stats(container_id, stream=False)

    # ============================================
    # Cleanup
    # ============================================

    def cleanup(self, app_id: str) -> None:
        """Remove stopped replicas and dangling images of the app. Tagged images stay."""
        for info in self.list_managed_containers(app_id):
            if info.get("State") == RUNNING_STATE:
                continue
            try:
                self.client.containers.get(info["Id"]).remove()
            except NotFound:
                pass

        dangling = self.client.images.list(
            filters={"label": label_filters(app_id), "dangling": True},
        )
        for img in dangling:
            try:
                self.client.images.remove(img.id)
            except APIError as e:
                logger.warning(f"[{app_id}] Could not remove dangling image {img.id[:19]}: {e}")

    def remove_images(self, app_id: str) -> int:
        """Force-remove every image of the app. Returns how many were removed."""
        images = self.client.images.list(filters={"label": label_filters(app_id)})
        removed = 0
        for img in images:
            try:
                self.client.images.remove(img.id, force=True)
                removed += 1
            except NotFound:
                pass

        logger.info(f"[{app_id}] Removed {removed} image(s)")
        return removed

    def cleanup_all(self) -> Tuple[int, int]:
        """Remove every managed container and image. Returns (containers, images)."""
        containers = self.list_managed_containers()
        for info in containers:
            container = self.client.containers.get(info["Id"])
            if info.get("State") == RUNNING_STATE:
                container.stop(timeout=10)
            container.remove()

        images = self.client.images.list(filters={"label": label_filters()})
        for img in images:
            self.client.images.remove(img.id, force=True)

        return len(containers), len(images)

    # ============================================
    # Base images
    # ============================================

    def list_r_versions(self) -> List[str]:
        """R versions for which a base image exists locally."""
        versions = set()
        for img in self.client.images.list(name=self.base_image):
            for tag in img.tags:
                repo, _, version = tag.rpartition(":")
                if repo == self.base_image and version and version != "<none>":
                    versions.add(version)
        return sorted(versions)
