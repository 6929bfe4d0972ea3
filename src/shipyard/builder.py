from pathlib import Path

import docker
from docker.errors import APIError
from docker.errors import BuildError as DockerBuildError
from rich.console import Console

from .errors import BuildError, PushError
from .models import RegistryCredentials, ServiceDefinition

console = Console()


class ImageBuilder:
    """Builds a service's image from its build context and publishes it."""

    def __init__(self, client: docker.DockerClient, workdir: Path = Path("."), credentials: RegistryCredentials | None = None):
        self.client = client
        self.workdir = workdir
        self.credentials = credentials

    def build(self, service: ServiceDefinition) -> str:
        if service.build is None:
            raise BuildError(f"{service.name}: no build context declared")

        context = (self.workdir / service.build.context).resolve()
        if not context.is_dir():
            raise BuildError(f"{service.name}: build context {context} does not exist")

        console.print(f"   [dim]Building {service.image} from {context}...[/dim]")
        try:
            image, _ = self.client.images.build(
                path=str(context),
                dockerfile=service.build.dockerfile,
                tag=str(service.image),
                rm=True,
                pull=True,
            )
        except DockerBuildError as e:
            raise BuildError(f"{service.name}: {e.msg}") from e
        except APIError as e:
            raise BuildError(f"{service.name}: {e}") from e

        return image.id

    def push(self, service: ServiceDefinition):
        console.print(f"   [dim]Pushing {service.image}...[/dim]")
        auth_config = self.credentials.auth_config() if self.credentials else None
        try:
            stream = self.client.images.push(
                service.image.name, tag=service.image.tag, stream=True, decode=True, auth_config=auth_config
            )
            # the daemon reports push failures inside the progress stream, not as an HTTP error
            for line in stream:
                if "error" in line:
                    raise PushError(f"{service.name}: {line['error']}")
        except APIError as e:
            raise PushError(f"{service.name}: {e}") from e
