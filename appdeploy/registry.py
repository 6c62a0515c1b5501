from dataclasses import dataclass

from appdeploy.commands import CommandRunner


@dataclass(frozen=True)
class ImageReference:
    registry: str
    name: str
    tag: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.name}:{self.tag}"

    @property
    def registry_url(self) -> str:
        return f"https://{self.registry}"


class DockerCli:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def login(self, registry: str, username: str, password: str) -> None:
        self.runner.run(
            ["docker", "login", registry, "--username", username, "--password-stdin"],
            input=password,
        )

    def build_and_push(self, image: ImageReference, context: str = ".", dockerfile: str = "Dockerfile") -> None:
        self.runner.run([
            "docker", "buildx", "build",
            "--file", dockerfile,
            "--tag", str(image),
            "--push",
            context,
        ])

    def compose_up(self, compose_file: str) -> None:
        self.runner.run(["docker", "compose", "-f", compose_file, "up", "-d", "--wait"])
