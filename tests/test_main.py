import signal
from unittest.mock import MagicMock

import pytest

from shipyard import main as cli
from shipyard.errors import BuildError, DeployError
from shipyard.main import build_parser, handle_signal, main
from shipyard.models import PipelineState

DESCRIPTOR = """\
name: demo
services:
  backend:
    image: registry.gitlab.com/demo/app/backend:latest
    build: backend
    ports: ["3000:3000"]
  frontend:
    image: registry.gitlab.com/demo/app/frontend:latest
    build: frontend
    ports: ["80:80"]
    depends_on: [backend]
"""


class RecordingBuilder:
    def __init__(self, fail_build=False):
        self.fail_build = fail_build
        self.pushed = []

    def build(self, service):
        if self.fail_build:
            raise BuildError(f"{service.name}: build exited with 1")
        return f"sha256:{service.name}"

    def push(self, service):
        self.pushed.append(service.name)


class RecordingDeployer:
    def __init__(self, error=None):
        self.error = error
        self.rollouts = []

    def rollout(self, descriptor, credentials=None):
        self.rollouts.append(descriptor.project)
        if self.error:
            raise self.error


@pytest.fixture
def descriptor_file(tmp_path):
    path = tmp_path / "docker-compose.yml"
    path.write_text(DESCRIPTOR)
    return path


@pytest.fixture
def docker_host(monkeypatch):
    """Replaces the docker daemon, image builder and deployer used by the CLI."""
    for name in ("CI_COMMIT_BRANCH", "CI_DEFAULT_BRANCH", "SHIPYARD_REQUIRE_APPROVAL", "CI_REGISTRY_PASSWORD"):
        monkeypatch.delenv(name, raising=False)

    host = MagicMock()
    host.builder = RecordingBuilder()
    host.deployer = RecordingDeployer()
    monkeypatch.setattr(cli, "connect", lambda base_url=None: host.client)
    monkeypatch.setattr(cli, "ImageBuilder", lambda client, workdir, credentials=None: host.builder)
    monkeypatch.setattr(cli, "Deployer", lambda client, prune_images=True: host.deployer)
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda: None)
    monkeypatch.setattr(cli, "ACTIVE_PIPELINE", None)
    monkeypatch.setattr(cli, "ROLLOUT_IN_PROGRESS", False)
    return host


def test_routes_command(capsys):
    assert main(["routes"]) == 0
    output = capsys.readouterr().out
    assert "/api" in output


def test_deploy_refuses_other_branches(monkeypatch):
    monkeypatch.setenv("CI_DEFAULT_BRANCH", "main")
    assert main(["deploy", "--branch", "feature/login"]) == 1


def test_pipeline_with_missing_descriptor(tmp_path):
    assert main(["pipeline", "--descriptor", str(tmp_path / "missing.yml"), "--branch", "main"]) == 1


def test_pipeline_flags():
    args = build_parser().parse_args(["pipeline", "--branch", "main", "--approve", "--auto-deploy"])
    assert args.branch == "main"
    assert args.approve is True
    assert args.auto_deploy is True


def test_pipeline_stops_at_the_manual_gate(docker_host, descriptor_file):
    assert main(["pipeline", "--descriptor", str(descriptor_file), "--branch", "main"]) == 0

    assert sorted(docker_host.builder.pushed) == ["backend", "frontend"]
    assert docker_host.deployer.rollouts == []
    assert cli.ACTIVE_PIPELINE.state is PipelineState.AWAITING_APPROVAL


def test_pipeline_auto_deploy_skips_the_gate(docker_host, descriptor_file):
    assert main(["pipeline", "--descriptor", str(descriptor_file), "--branch", "main", "--auto-deploy"]) == 0

    assert docker_host.deployer.rollouts == ["demo"]
    assert cli.ACTIVE_PIPELINE.state is PipelineState.DONE


def test_pipeline_on_other_branch_exits_cleanly(docker_host, descriptor_file):
    assert main(["pipeline", "--descriptor", str(descriptor_file), "--branch", "feature/login", "--approve"]) == 0
    assert docker_host.builder.pushed == []
    assert docker_host.deployer.rollouts == []


def test_failed_build_exits_nonzero(docker_host, descriptor_file):
    docker_host.builder.fail_build = True

    assert main(["pipeline", "--descriptor", str(descriptor_file), "--branch", "main", "--auto-deploy"]) == 1
    assert docker_host.deployer.rollouts == []


def test_failed_rollout_exits_nonzero(docker_host, descriptor_file):
    docker_host.deployer.error = DeployError("pull", "manifest unknown")
    assert main(["pipeline", "--descriptor", str(descriptor_file), "--branch", "main", "--approve"]) == 1


def test_deploy_command_rolls_out(docker_host, descriptor_file):
    assert main(["deploy", "--descriptor", str(descriptor_file), "--branch", "main"]) == 0

    assert docker_host.deployer.rollouts == ["demo"]
    assert cli.ROLLOUT_IN_PROGRESS is False


def test_deploy_command_reports_failed_rollout(docker_host, descriptor_file):
    docker_host.deployer.error = DeployError("recreate", "port is already allocated")

    assert main(["deploy", "--descriptor", str(descriptor_file), "--branch", "main"]) == 1
    assert cli.ROLLOUT_IN_PROGRESS is False


def test_signal_during_standalone_rollout_is_ignored(monkeypatch):
    monkeypatch.setattr(cli, "ROLLOUT_IN_PROGRESS", True)
    monkeypatch.setattr(cli, "ACTIVE_PIPELINE", None)
    assert handle_signal(signal.SIGTERM, None) is None


def test_signal_while_pipeline_deploys_is_ignored(monkeypatch):
    monkeypatch.setattr(cli, "ROLLOUT_IN_PROGRESS", False)
    monkeypatch.setattr(cli, "ACTIVE_PIPELINE", MagicMock(is_deploying=True))
    assert handle_signal(signal.SIGINT, None) is None


@pytest.mark.parametrize("pipeline", [None, MagicMock(is_deploying=False)])
def test_signal_outside_rollout_stops_the_tool(monkeypatch, pipeline):
    monkeypatch.setattr(cli, "ROLLOUT_IN_PROGRESS", False)
    monkeypatch.setattr(cli, "ACTIVE_PIPELINE", pipeline)

    with pytest.raises(SystemExit) as excinfo:
        handle_signal(signal.SIGTERM, None)
    assert excinfo.value.code == 130
