import argparse
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import backend, router
from .builder import ImageBuilder
from .deployer import Deployer, connect
from .descriptor import load_descriptor
from .errors import PipelineGateError, ShipyardError
from .models import PipelineState
from .pipeline import ReleasePipeline, credentials_from_settings, deploy
from .routing import build_route_table
from .settings import get_pipeline_settings, get_router_settings

console = Console()

ROLLOUT_IN_PROGRESS = False
ACTIVE_PIPELINE: ReleasePipeline | None = None


def handle_signal(signum, frame):
    """A running rollout is all-or-nothing; outside one, signals stop the tool."""
    if ROLLOUT_IN_PROGRESS or (ACTIVE_PIPELINE is not None and ACTIVE_PIPELINE.is_deploying):
        console.print(
            f"\n[bold orange1]🛑 Signal {signum} received during rollout. "
            "It cannot be interrupted and will finish first.[/bold orange1]"
        )
        return

    console.print(f"\n[bold orange1]🛑 Signal {signum} received. Shutting down...[/bold orange1]")
    sys.exit(130)


def _install_signal_handlers():
    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def cmd_backend(args) -> int:
    backend.serve()
    return 0


def cmd_router(args) -> int:
    router.serve()
    return 0


def cmd_routes(args) -> int:
    settings = get_router_settings()
    table = Table(title="Edge Router routes")
    table.add_column("Order")
    table.add_column("Prefix")
    table.add_column("Target")
    for position, rule in enumerate(build_route_table(settings.UPSTREAM_URL), start=1):
        target = rule.upstream if rule.target == "upstream" else f"{settings.STATIC_ROOT} (fallback {settings.INDEX_DOCUMENT})"
        table.add_row(str(position), rule.prefix, target)
    console.print(table)
    return 0


def cmd_pipeline(args) -> int:
    global ACTIVE_PIPELINE

    settings = get_pipeline_settings()
    descriptor_file = args.descriptor or settings.DESCRIPTOR_FILE
    descriptor = load_descriptor(descriptor_file)

    client = connect(settings.DOCKER_BASE_URL)
    credentials = credentials_from_settings(settings)
    pipeline = ReleasePipeline.from_settings(
        settings,
        descriptor,
        builder=ImageBuilder(client, workdir=descriptor_file.resolve().parent, credentials=credentials),
        deployer=Deployer(client, prune_images=settings.PRUNE_IMAGES),
        branch=args.branch,
    )
    if args.auto_deploy:
        pipeline.require_approval = False

    console.print(
        Panel.fit(
            "[bold cyan]Release Pipeline[/bold cyan]\n"
            f"Project: [white]{descriptor.project}[/white]\n"
            f"Branch: [white]{pipeline.branch}[/white]\n"
            f"Services: [white]{', '.join(descriptor.services)}[/white]\n"
            f"Deploy gate: [blue]{'manual' if pipeline.require_approval else 'automatic'}[/blue]",
            title="Pipeline Start",
        )
    )

    ACTIVE_PIPELINE = pipeline
    _install_signal_handlers()

    state = pipeline.run(approve=args.approve)
    _print_results(pipeline)

    if state is PipelineState.AWAITING_APPROVAL:
        console.print("[yellow]Run `shipyard deploy` on the target host to roll out.[/yellow]")
    return 1 if state is PipelineState.FAILED else 0


def cmd_deploy(args) -> int:
    global ROLLOUT_IN_PROGRESS

    settings = get_pipeline_settings()
    branch = args.branch or settings.COMMIT_BRANCH
    if branch != settings.DEFAULT_BRANCH:
        raise PipelineGateError(f"deploys only run from {settings.DEFAULT_BRANCH!r}, not {branch!r}")

    descriptor = load_descriptor(args.descriptor or settings.DESCRIPTOR_FILE)
    deployer = Deployer(connect(settings.DOCKER_BASE_URL), prune_images=settings.PRUNE_IMAGES)

    _install_signal_handlers()
    ROLLOUT_IN_PROGRESS = True
    try:
        result = deploy(descriptor, deployer, credentials_from_settings(settings))
    finally:
        ROLLOUT_IN_PROGRESS = False

    if result.ok:
        console.print(f"[bold green]✅ {descriptor.project} deployed[/bold green]")
        return 0
    console.print(f"[bold red]❌ Deploy failed at step '{result.step}'. Re-run once fixed.[/bold red]")
    return 1


def _print_results(pipeline: ReleasePipeline):
    if not pipeline.results:
        return
    table = Table(title="Jobs")
    table.add_column("Component")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    for result in pipeline.results:
        status = "[green]success[/green]" if result.ok else "[red]failed[/red]"
        table.add_row(result.component, result.step, status, result.detail)
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipyard", description="Edge router, backend service and release pipeline")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("backend", help="run the Backend Service").set_defaults(func=cmd_backend)
    commands.add_parser("router", help="run the Edge Router").set_defaults(func=cmd_router)
    commands.add_parser("routes", help="print the routing table").set_defaults(func=cmd_routes)

    run = commands.add_parser("pipeline", help="build, push and (optionally) deploy")
    run.add_argument("--descriptor", type=Path, help="orchestration descriptor (default: docker-compose.yml)")
    run.add_argument("--branch", help="triggering branch (default: $CI_COMMIT_BRANCH)")
    run.add_argument("--approve", action="store_true", help="give the manual deploy approval up front")
    run.add_argument("--auto-deploy", action="store_true", help="deploy without a manual gate")
    run.set_defaults(func=cmd_pipeline)

    rollout = commands.add_parser("deploy", help="run the deploy stage on this host")
    rollout.add_argument("--descriptor", type=Path, help="orchestration descriptor (default: docker-compose.yml)")
    rollout.add_argument("--branch", help="triggering branch (default: $CI_COMMIT_BRANCH)")
    rollout.set_defaults(func=cmd_deploy)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ShipyardError as e:
        console.print(f"[bold red]Fatal:[/bold red] {escape(str(e))}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
