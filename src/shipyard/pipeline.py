import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, Protocol

import requests
from docker.errors import DockerException
from rich.console import Console
from rich.markup import escape

from .errors import InvalidTransition, PipelineGateError, ShipyardError
from .models import (
    TRANSITIONS,
    JobResult,
    OrchestrationDescriptor,
    PipelineState,
    RegistryCredentials,
    ServiceDefinition,
)
from .settings import PipelineSettings

console = Console()

# GitLab's resource_group equivalent: one rollout per process at a time, later ones queue
_deploy_lock = threading.Lock()


class Builder(Protocol):
    def build(self, service: ServiceDefinition) -> str: ...

    def push(self, service: ServiceDefinition) -> None: ...


class Rollout(Protocol):
    def rollout(self, descriptor: OrchestrationDescriptor, credentials: RegistryCredentials | None = None) -> None: ...


def credentials_from_settings(settings: PipelineSettings) -> RegistryCredentials | None:
    if not settings.has_credentials:
        return None
    return RegistryCredentials(
        registry=settings.REGISTRY, username=settings.REGISTRY_USER, password=settings.REGISTRY_PASSWORD
    )


def run_step(component: str, step: str, action: Callable[[], object]) -> JobResult:
    """Runs one pipeline step and records its outcome instead of raising."""
    started = datetime.now(timezone.utc)
    try:
        action()
    # the docker SDK lets transport failures from requests through unwrapped
    except (ShipyardError, DockerException, requests.exceptions.RequestException) as e:
        console.print(f"[bold red]❌ {component} {step} failed:[/bold red] {escape(str(e))}")
        return JobResult(component=component, step=getattr(e, "step", step), status="failed", detail=str(e), started_at=started)

    console.print(f"[green]✓ {component} {step}[/green]")
    return JobResult(component=component, step=step, status="success", started_at=started)


def deploy(
    descriptor: OrchestrationDescriptor,
    deployer: Rollout,
    credentials: RegistryCredentials | None = None,
) -> JobResult:
    """The deploy stage on its own: login, pull, recreate, prune. Serialized per process."""
    with _deploy_lock:
        return run_step("deploy", "rollout", lambda: deployer.rollout(descriptor, credentials))


class ReleasePipeline:
    """
    Ordered build → push → deploy automation for one triggering commit.

    Build jobs run concurrently, one per service with a build context; the
    deploy stage waits for all of them and only runs when every job passed,
    the branch is the default branch, and (when required) someone approved it.
    """

    def __init__(
        self,
        descriptor: OrchestrationDescriptor,
        builder: Builder,
        deployer: Rollout,
        branch: str | None,
        default_branch: str = "main",
        require_approval: bool = True,
        credentials: RegistryCredentials | None = None,
        max_parallel_jobs: int = 4,
    ):
        self.descriptor = descriptor
        self.builder = builder
        self.deployer = deployer
        self.branch = branch
        self.default_branch = default_branch
        self.require_approval = require_approval
        self.credentials = credentials
        self.max_parallel_jobs = max_parallel_jobs

        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]
        self.results: list[JobResult] = []
        self.skip_reason: str | None = None

        self._lock = threading.RLock()
        self._building: set[str] = set()
        self._pushing: set[str] = set()

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        descriptor: OrchestrationDescriptor,
        builder: Builder,
        deployer: Rollout,
        branch: str | None = None,
    ) -> "ReleasePipeline":
        return cls(
            descriptor,
            builder,
            deployer,
            branch=branch or settings.COMMIT_BRANCH,
            default_branch=settings.DEFAULT_BRANCH,
            require_approval=settings.REQUIRE_APPROVAL,
            credentials=credentials_from_settings(settings),
            max_parallel_jobs=settings.MAX_PARALLEL_JOBS,
        )

    @property
    def on_default_branch(self) -> bool:
        return self.branch is not None and self.branch == self.default_branch

    @property
    def is_deploying(self) -> bool:
        return self.state is PipelineState.DEPLOYING

    @property
    def failed_jobs(self) -> list[JobResult]:
        return [r for r in self.results if not r.ok]

    def _transition(self, new: PipelineState):
        with self._lock:
            if new not in TRANSITIONS[self.state]:
                raise InvalidTransition(f"{self.state.value} → {new.value}")
            self.state = new
            self.history.append(new)
        console.print(f"[bold blue]⚙️  Pipeline:[/bold blue] {new.value}")

    def _record(self, result: JobResult) -> JobResult:
        with self._lock:
            self.results.append(result)
        return result

    def run(self, approve: bool = False) -> PipelineState:
        """
        Runs the build and push stages, then the deploy stage if allowed.
        `approve` is the manual trigger given up front.
        """
        if self.state is not PipelineState.IDLE:
            raise InvalidTransition(f"pipeline already ran (state: {self.state.value})")

        if not self.on_default_branch:
            self.skip_reason = f"branch {self.branch!r} is not {self.default_branch!r}"
            console.print(f"[dim]⏭️  Pipeline skipped: {self.skip_reason}[/dim]")
            return self.state

        jobs = self.descriptor.buildable()
        self._building = {service.name for service in jobs}
        self._transition(PipelineState.BUILDING)

        with ThreadPoolExecutor(max_workers=max(1, min(self.max_parallel_jobs, len(jobs)))) as pool:
            futures = [pool.submit(self._run_job, service) for service in jobs]
            wait(futures)
        for future in futures:
            future.result()

        if self.failed_jobs:
            self._transition(PipelineState.FAILED)
            return self.state

        if self.state is PipelineState.BUILDING:
            self._transition(PipelineState.PUSHING)

        if not self.require_approval:
            return self._deploy()

        self._transition(PipelineState.AWAITING_APPROVAL)
        if approve:
            return self.approve()

        console.print("[bold yellow]⏸️  Deploy is waiting for manual approval.[/bold yellow]")
        return self.state

    def _run_job(self, service: ServiceDefinition):
        built = self._record(run_step(service.name, "build", lambda: self.builder.build(service)))

        with self._lock:
            self._building.discard(service.name)
            if built.ok:
                self._pushing.add(service.name)
            if self.state is PipelineState.BUILDING and not self._building and self._pushing:
                self._transition(PipelineState.PUSHING)

        if not built.ok:
            return

        self._record(run_step(service.name, "push", lambda: self.builder.push(service)))

    def approve(self) -> PipelineState:
        """The manual trigger of the deploy stage."""
        if not self.on_default_branch:
            raise PipelineGateError(f"deploys only run from {self.default_branch!r}, not {self.branch!r}")
        if self.state is not PipelineState.AWAITING_APPROVAL:
            raise PipelineGateError(f"nothing to approve (state: {self.state.value})")
        return self._deploy()

    def _deploy(self) -> PipelineState:
        with _deploy_lock:
            self._transition(PipelineState.DEPLOYING)
            result = self._record(
                run_step("deploy", "rollout", lambda: self.deployer.rollout(self.descriptor, self.credentials))
            )

        self._transition(PipelineState.DONE if result.ok else PipelineState.FAILED)
        return self.state
