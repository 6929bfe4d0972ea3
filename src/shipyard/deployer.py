import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.models.images import Image
from rich.console import Console
from rich.markup import escape

from .errors import DeployError
from .models import OrchestrationDescriptor, RegistryCredentials, ServiceDefinition

console = Console()


def connect(base_url: str | None = None) -> docker.DockerClient:
    """Connects to the local daemon, or to a remote one when base_url is set."""
    try:
        if base_url:
            return docker.DockerClient(base_url=base_url)
        return docker.from_env()
    except DockerException as e:
        raise DeployError("connect", f"could not reach the Docker daemon: {e}") from e


class Deployer:
    """
    Rolls an orchestration descriptor out on the docker host.
    Every step is fatal: the first failure raises DeployError and the
    remaining steps do not run.
    """

    def __init__(self, client: docker.DockerClient | None = None, prune_images: bool = True):
        self.client = client or connect()
        self.prune_images = prune_images

    def rollout(self, descriptor: OrchestrationDescriptor, credentials: RegistryCredentials | None = None):
        self.login(credentials)
        images = self.pull(descriptor, credentials)
        self.recreate(descriptor, images)
        if self.prune_images:
            self.prune()

    def login(self, credentials: RegistryCredentials | None):
        if credentials is None:
            console.print("   [dim]No registry credentials configured, skipping login...[/dim]")
            return

        console.print(f"   [dim]Logging in to {credentials.registry or 'default registry'} as {credentials.username}...[/dim]")
        try:
            self.client.login(
                username=credentials.username,
                password=credentials.password.get_secret_value(),
                registry=credentials.registry,
            )
        except APIError as e:
            raise DeployError("login", str(e)) from e

    def pull(
        self, descriptor: OrchestrationDescriptor, credentials: RegistryCredentials | None = None
    ) -> dict[str, Image]:
        auth_config = credentials.auth_config() if credentials else None
        images = {}
        for service in descriptor.services.values():
            console.print(f"   [dim]Pulling {service.image}...[/dim]")
            try:
                images[service.name] = self.client.images.pull(
                    service.image.name, tag=service.image.tag, auth_config=auth_config
                )
            except (APIError, ImageNotFound) as e:
                raise DeployError("pull", f"{service.image}: {e}") from e
        return images

    def measure_actual_state(self, name: str) -> Container | None:
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None

    def calculate_deviation(
        self, desired: ServiceDefinition, actual: Container | None, image: Image, network: str | None = None
    ) -> str | None:
        if not actual:
            return "Container missing (State: Null)"

        if actual.status != "running":
            return f"Status deviation (Actual: {actual.status} != Desired: running)"

        # attrs holds the id even when the old image is already gone from the host
        running_image = actual.attrs.get("Image", "")
        if running_image != image.id:
            return f"Image mismatch (Actual: {running_image[:19]} != Desired: {desired.image} {image.id[:19]})"

        ports = actual.attrs["NetworkSettings"]["Ports"] or {}
        for mapping in desired.ports:
            bindings = ports.get(mapping.container_key)
            if not bindings:
                return f"Port definition missing for {mapping.container_key}"
            mapped_host_port = int(bindings[0]["HostPort"])
            if mapped_host_port != mapping.host_port:
                return f"Port Drift (Actual: {mapped_host_port} != Desired: {mapping.host_port})"
            mapped_host_ip = bindings[0].get("HostIp") or None
            if mapping.host_ip and mapped_host_ip != mapping.host_ip:
                return f"Port Drift (Actual: {mapped_host_ip} != Desired: {mapping.host_ip})"

        # docker appends image defaults to Env, so only the declared variables are compared
        actual_env = set(actual.attrs.get("Config", {}).get("Env") or [])
        for key, value in desired.environment.items():
            if f"{key}={value}" not in actual_env:
                return f"Environment drift ({key} not set to the declared value)"

        if network:
            networks = actual.attrs["NetworkSettings"].get("Networks") or {}
            if network not in networks:
                return f"Network drift (Actual: {', '.join(networks) or 'none'} != Desired: {network})"

        return None

    def recreate(self, descriptor: OrchestrationDescriptor, images: dict[str, Image]):
        network = self._ensure_network(f"{descriptor.project}_default")

        for service in descriptor.startup_order():
            actual = self.measure_actual_state(service.name)
            deviation = self.calculate_deviation(service, actual, images[service.name], network)

            if not deviation:
                console.print(f"   [dim green]✓ {service.name} up to date[/dim green]")
                continue

            console.print(f"[bold yellow]⚠️  {service.name}:[/bold yellow] {escape(deviation)}")
            try:
                if actual:
                    console.print(f"   [dim]Stopping and removing container '{actual.name}'...[/dim]")
                    actual.stop()
                    actual.remove()

                self.client.containers.run(
                    str(service.image),
                    name=service.name,
                    ports=service.published_ports(),
                    environment=service.environment,
                    network=network,
                    labels={"com.docker.compose.project": descriptor.project, "com.docker.compose.service": service.name},
                    restart_policy={"Name": "unless-stopped"},
                    detach=True,
                )
            except APIError as e:
                raise DeployError("recreate", f"{service.name}: {e}") from e

            published = ", ".join(str(p) for p in service.ports) or "no published ports"
            console.print(f"[bold green]✅ {service.name} recreated ({published})[/bold green]")

    def _ensure_network(self, name: str) -> str:
        try:
            self.client.networks.get(name)
            return name
        except NotFound:
            console.print(f"   [dim]Creating network '{name}'...[/dim]")
        except APIError as e:
            raise DeployError("recreate", f"network {name}: {e}") from e

        try:
            self.client.networks.create(name, driver="bridge")
        except APIError as e:
            raise DeployError("recreate", f"network {name}: {e}") from e
        return name

    def prune(self) -> int:
        try:
            result = self.client.images.prune(filters={"dangling": True})
        except APIError as e:
            raise DeployError("prune", str(e)) from e

        reclaimed = result.get("SpaceReclaimed") or 0
        removed = len(result.get("ImagesDeleted") or [])
        console.print(f"   [dim]Pruned {removed} image(s), reclaimed {reclaimed / 1024 / 1024:.1f} MiB[/dim]")
        return reclaimed
