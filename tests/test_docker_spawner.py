#tests\test_docker_spawner.py

"""Test DockerSpawner against a fake docker client."""

import os
import subprocess
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from rserve_engine.core.errors import BuildFailedError, SpawnerError, SpawnerValidationError
from rserve_engine.core.models import AppStatus, GitSource
from rserve_engine.spawner import docker_spawner as docker_spawner_module
from rserve_engine.spawner.image import image_hash
from rserve_engine.spawner.labels import APP_ID_LABEL, MANAGED_LABEL


@pytest.fixture
def fake_git(monkeypatch):
    """Replace `git clone` with a fake that writes an entry script."""
    calls = []

    def fake_run(args, **kwargs):
        calls.append((list(args), kwargs))
        code_dir = args[-1]
        os.makedirs(code_dir)
        with open(os.path.join(code_dir, "run_rserve.R"), "w") as f:
            f.write("library(Rserve)\n")
        return subprocess.CompletedProcess(args, 0, b"", b"")

    monkeypatch.setattr(docker_spawner_module.subprocess, "run", fake_run)
    return calls


@pytest.fixture
def capture_build(docker_client):
    """Make api.build record the context it was given and stream chunks."""
    captured = {}

    def set_chunks(chunks):
        def fake_build(path, **kwargs):
            captured["path"] = path
            captured["kwargs"] = kwargs
            captured["files"] = sorted(os.listdir(path))
            with open(os.path.join(path, "Dockerfile")) as f:
                captured["dockerfile"] = f.read()
            code_dir = os.path.join(path, "code")
            captured["code_files"] = sorted(os.listdir(code_dir)) if os.path.isdir(code_dir) else []
            return iter(chunks)

        docker_client.api.build.side_effect = fake_build
        return captured

    return set_chunks


class TestListManagedContainers:
    """Test the discovery primitive."""

    def test_filters_by_managed_label(self, spawner, docker_client):
        spawner.list_managed_containers()

        docker_client.api.containers.assert_called_once_with(
            all=True,
            filters={"label": [f"{MANAGED_LABEL}=rserve-proxy"]},
        )

    def test_narrows_by_app_id(self, spawner, docker_client):
        spawner.list_managed_containers("app-1")

        filters = docker_client.api.containers.call_args.kwargs["filters"]
        assert filters["label"] == [f"{MANAGED_LABEL}=rserve-proxy", f"{APP_ID_LABEL}=app-1"]

    def test_engine_failure_raises_spawner_error(self, spawner, docker_client):
        docker_client.api.containers.side_effect = APIError("daemon down")

        with pytest.raises(SpawnerError):
            spawner.list_managed_containers()


class TestBuildImage:
    """Test image builds."""

    def test_upload_without_code_path_fails_fast(self, spawner, docker_client, upload_spec):
        """Missing code path is a precondition failure, not a build failure."""
        with pytest.raises(SpawnerValidationError, match="upload source requires code_path"):
            spawner.build_image(upload_spec)

        docker_client.api.build.assert_not_called()

    def test_git_build_success(self, spawner, git_spec, fake_git, capture_build):
        captured = capture_build([
            {"stream": "Step 1/6 : FROM rserve-base:4.4.1\n"},
            {"stream": "\n"},
            {"stream": "Successfully built abc123\n"},
        ])
        seen = []

        result = spawner.build_image(git_spec, on_log=seen.append)

        assert result.success is True
        assert result.error is None
        assert result.image_name == "rserve-app-my-app"
        assert result.image_tag == image_hash(git_spec)
        assert result.build_log == ["Step 1/6 : FROM rserve-base:4.4.1", "Successfully built abc123"]
        assert seen == result.build_log

        assert captured["kwargs"]["tag"] == result.full_image
        assert captured["kwargs"]["labels"] == {MANAGED_LABEL: "rserve-proxy", APP_ID_LABEL: "app-1"}
        assert captured["files"] == ["Dockerfile", "code"]
        assert captured["code_files"] == ["run_rserve.R"]
        assert "FROM rserve-base:4.4.1" in captured["dockerfile"]

    def test_shallow_clone_with_branch(self, spawner, git_spec, fake_git, capture_build):
        capture_build([])
        spec = replace(git_spec, code_source=GitSource(repo_url="https://example.com/r.git", branch="dev"))

        spawner.build_image(spec)

        args, kwargs = fake_git[0]
        assert args[:6] == ["git", "clone", "--depth", "1", "--branch", "dev"]
        assert args[6] == "https://example.com/r.git"
        assert kwargs["timeout"] == 120

    def test_upload_build_copies_code(self, spawner, upload_spec, capture_build, tmp_path):
        src = tmp_path / "upload"
        src.mkdir()
        (src / "run_rserve.R").write_text("1 + 1\n")
        (src / "helpers.R").write_text("f <- function() 1\n")
        captured = capture_build([{"stream": "done\n"}])

        result = spawner.build_image(upload_spec, code_path=str(src))

        assert result.success is True
        assert captured["code_files"] == ["helpers.R", "run_rserve.R"]

    def test_build_error_in_stream(self, spawner, git_spec, fake_git, capture_build):
        capture_build([
            {"stream": "Step 3/6 : RUN R -e \"pak::pak(c('nope'))\"\n"},
            {"error": "package 'nope' not found", "errorDetail": {"message": "package 'nope' not found"}},
        ])

        result = spawner.build_image(git_spec)

        assert result.success is False
        assert result.error == "package 'nope' not found"
        assert result.build_log[-1] == "ERROR: package 'nope' not found"
        assert len(result.build_log) == 2

    def test_context_removed_on_success_and_failure(self, spawner, git_spec, fake_git, capture_build):
        captured = capture_build([{"stream": "ok\n"}])
        spawner.build_image(git_spec)
        assert not os.path.exists(captured["path"])

        captured = capture_build([{"error": "boom"}])
        spawner.build_image(git_spec)
        assert not os.path.exists(captured["path"])

    def test_clone_failure_is_build_failure(self, spawner, docker_client, git_spec, monkeypatch):
        def failing_clone(args, **kwargs):
            raise subprocess.CalledProcessError(128, args, stderr=b"fatal: repository not found")

        monkeypatch.setattr(docker_spawner_module.subprocess, "run", failing_clone)

        result = spawner.build_image(git_spec)

        assert result.success is False
        assert "repository not found" in result.error
        docker_client.api.build.assert_not_called()

    def test_engine_failure_is_build_failure(self, spawner, docker_client, git_spec, fake_git):
        docker_client.api.build.side_effect = APIError("daemon gone")

        result = spawner.build_image(git_spec)

        assert result.success is False
        assert "daemon gone" in result.error

    def test_status_is_building_while_build_runs(self, spawner, docker_client, git_spec, fake_git):
        observed = []

        def fake_build(path, **kwargs):
            observed.append(spawner.get_app_status(git_spec.app_id))
            return iter([{"stream": "Step 1\n"}])

        docker_client.api.build.side_effect = fake_build

        spawner.build_image(git_spec)

        assert observed == [AppStatus.BUILDING]
        assert spawner.is_building(git_spec.app_id) is False
        assert spawner.get_app_status(git_spec.app_id) == AppStatus.STOPPED

    def test_stream_build_logs_replays_and_follows(self, spawner, docker_client, git_spec, fake_git):
        late = []

        def chunks():
            yield {"stream": "first\n"}
            # subscriber joins mid-build
            spawner.stream_build_logs(git_spec.app_id, late.append)
            yield {"stream": "second\n"}

        docker_client.api.build.side_effect = lambda path, **kwargs: chunks()

        spawner.build_image(git_spec)

        assert late == ["first", "second"]
        assert spawner.build_logs.lines(git_spec.app_id) == []


class TestStartApp:
    """Test replica creation."""

    def test_creates_and_starts_n_replicas(self, spawner, docker_client, git_spec):
        spawner.start_app(git_spec, image="rserve-app-my-app:abc")

        create = docker_client.containers.create
        assert create.call_count == 2
        names = [c.kwargs["name"] for c in create.call_args_list]
        assert names == ["rserve-app-my-app-0", "rserve-app-my-app-1"]
        assert create.return_value.start.call_count == 2

    def test_labels_route_by_slug(self, spawner, docker_client, git_spec):
        spawner.start_app(git_spec, image="img:tag")

        kwargs = docker_client.containers.create.call_args.kwargs
        labels = kwargs["labels"]
        assert labels[MANAGED_LABEL] == "rserve-proxy"
        assert labels[APP_ID_LABEL] == "app-1"
        assert labels["traefik.enable"] == "true"
        assert labels["traefik.http.routers.my-app.rule"] == "PathPrefix(`/my-app`)"
        assert labels["traefik.http.middlewares.my-app-strip.stripprefix.prefixes"] == "/my-app"
        assert labels["traefik.http.services.my-app.loadbalancer.server.port"] == "6311"
        assert labels["traefik.docker.network"] == "rserve-proxy_default"
        assert kwargs["network"] == "rserve-proxy_default"
        assert kwargs["image"] == "img:tag"
        assert "ports" not in kwargs

    def test_builds_when_no_image_given(self, spawner, docker_client, git_spec, fake_git):
        docker_client.api.build.return_value = iter([{"stream": "ok\n"}])

        spawner.start_app(git_spec)

        image = docker_client.containers.create.call_args.kwargs["image"]
        assert image == f"rserve-app-my-app:{image_hash(git_spec)}"

    def test_failed_build_raises_with_log(self, spawner, docker_client, git_spec, fake_git):
        docker_client.api.build.return_value = iter([{"stream": "Step 1\n"}, {"error": "boom"}])

        with pytest.raises(BuildFailedError) as excinfo:
            spawner.start_app(git_spec)

        assert "boom" in str(excinfo.value)
        assert excinfo.value.build_log == ["Step 1", "ERROR: boom"]
        docker_client.containers.create.assert_not_called()

    def test_partial_failure_keeps_started_replicas(self, spawner, docker_client, git_spec):
        started = MagicMock()
        docker_client.containers.create.side_effect = [started, APIError("name conflict")]

        with pytest.raises(SpawnerError):
            spawner.start_app(git_spec, image="img:tag")

        started.start.assert_called_once()
        started.remove.assert_not_called()


class TestStopAndRestart:
    """Test stop/restart."""

    def test_stop_stops_running_and_removes_all(self, spawner, docker_client, container_info):
        running = container_info(state="running")
        exited = container_info(state="exited", status="Exited (1) 1 minute ago")
        docker_client.api.containers.return_value = [running, exited]

        handles = {running["Id"]: MagicMock(), exited["Id"]: MagicMock()}
        docker_client.containers.get.side_effect = lambda cid: handles[cid]

        spawner.stop_app("app-1")

        handles[running["Id"]].stop.assert_called_once()
        handles[exited["Id"]].stop.assert_not_called()
        handles[running["Id"]].remove.assert_called_once()
        handles[exited["Id"]].remove.assert_called_once()

    def test_stop_then_status_is_stopped(self, spawner, docker_client, container_info):
        containers = [container_info(), container_info()]
        docker_client.api.containers.side_effect = lambda **kwargs: list(containers)

        def remove_from_listing(cid):
            handle = MagicMock()
            handle.remove.side_effect = lambda: containers.remove(
                next(c for c in containers if c["Id"] == cid)
            )
            return handle

        docker_client.containers.get.side_effect = remove_from_listing

        spawner.stop_app("app-1")

        assert spawner.get_app_status("app-1") == AppStatus.STOPPED
        assert spawner.list_managed_containers("app-1") == []

    def test_stop_ignores_vanished_container(self, spawner, docker_client, container_info):
        docker_client.api.containers.return_value = [container_info()]
        docker_client.containers.get.side_effect = NotFound("gone")

        spawner.stop_app("app-1")

    def test_restart_in_place(self, spawner, docker_client, container_info):
        docker_client.api.containers.return_value = [container_info(), container_info()]

        spawner.restart_app("app-1")

        assert docker_client.containers.get.return_value.restart.call_count == 2
        docker_client.containers.create.assert_not_called()


class TestStatusAndContainers:
    """Test read derivations."""

    def test_status_from_listing(self, spawner, docker_client, container_info):
        docker_client.api.containers.return_value = [
            container_info(state="running"),
            container_info(state="created", status="Created"),
        ]
        assert spawner.get_app_status("app-1") == AppStatus.STARTING

    def test_get_containers(self, spawner, docker_client, container_info):
        info = container_info(status="Up 1 minute (unhealthy)", created=1700000000)
        docker_client.api.containers.return_value = [info]

        [c] = spawner.get_containers("app-1")

        assert c.container_id == info["Id"]
        assert c.status == "Up 1 minute (unhealthy)"
        assert c.health_status == "unhealthy"
        assert c.port == 6311
        assert int(c.started_at.timestamp()) == 1700000000

    def test_empty_app(self, spawner):
        assert spawner.get_containers("nope") == []
        assert spawner.get_app_status("nope") == AppStatus.STOPPED


class TestCleanup:
    """Test garbage collection."""

    def test_cleanup_removes_only_stopped_and_dangling(self, spawner, docker_client, container_info):
        running = container_info(state="running")
        exited = container_info(state="exited")
        docker_client.api.containers.return_value = [running, exited]
        handles = {running["Id"]: MagicMock(), exited["Id"]: MagicMock()}
        docker_client.containers.get.side_effect = lambda cid: handles[cid]
        docker_client.images.list.return_value = [MagicMock(id="sha256:dangling")]

        spawner.cleanup("app-1")

        handles[running["Id"]].remove.assert_not_called()
        handles[exited["Id"]].remove.assert_called_once()
        filters = docker_client.images.list.call_args.kwargs["filters"]
        assert filters["dangling"] is True
        assert f"{APP_ID_LABEL}=app-1" in filters["label"]
        docker_client.images.remove.assert_called_once_with("sha256:dangling")

    def test_remove_images_counts(self, spawner, docker_client):
        docker_client.images.list.return_value = [MagicMock(id="sha256:a"), MagicMock(id="sha256:b")]

        assert spawner.remove_images("app-1") == 2
        docker_client.images.remove.assert_any_call("sha256:a", force=True)
        assert "dangling" not in docker_client.images.list.call_args.kwargs["filters"]

    def test_cleanup_all(self, spawner, docker_client, container_info):
        docker_client.api.containers.return_value = [
            container_info(app_id="a", state="running"),
            container_info(app_id="b", state="exited"),
        ]
        docker_client.images.list.return_value = [MagicMock(id="sha256:x")]

        assert spawner.cleanup_all() == (2, 1)
        handle = docker_client.containers.get.return_value
        assert handle.stop.call_count == 1
        assert handle.remove.call_count == 2


class TestListRVersions:
    """Test base image discovery."""

    def test_versions_sorted_without_none(self, spawner, docker_client):
        docker_client.images.list.return_value = [
            MagicMock(tags=["rserve-base:4.4.1", "rserve-base:latest-r"]),
            MagicMock(tags=["rserve-base:4.3.2"]),
            MagicMock(tags=[]),
            MagicMock(tags=["other:4.0.0"]),
        ]

        assert spawner.list_r_versions() == ["4.3.2", "4.4.1", "latest-r"]
        docker_client.images.list.assert_called_once_with(name="rserve-base")
