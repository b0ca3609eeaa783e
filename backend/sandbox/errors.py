"""Exception types raised by container lifecycle operations.

Every error carries a ``kind`` (environment, resource, transport) and a
human-readable ``remediation`` that the API layer forwards to the client.
"""


class SandboxError(RuntimeError):
    """Base class for sandbox runtime failures."""

    kind = "runtime"
    default_remediation = ""

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.remediation = remediation if remediation is not None else self.default_remediation

    def to_dict(self) -> dict[str, str]:
        return {"error": str(self), "kind": self.kind, "remediation": self.remediation}


class RuntimeNotInstalledError(SandboxError):
    kind = "environment"
    default_remediation = (
        "Install Docker (https://docs.docker.com/get-docker/) and make sure "
        "the docker CLI is on PATH."
    )


class DaemonUnavailableError(SandboxError):
    kind = "environment"
    default_remediation = (
        "Start the Docker daemon (Docker Desktop, or `sudo systemctl start docker`) "
        "and verify with `docker ps`."
    )


class ImageUnavailableError(SandboxError):
    kind = "resource"
    default_remediation = (
        "Check network access to the registry, or pre-pull the profile's base "
        "image with `docker pull <image>`."
    )

    @classmethod
    def for_base_image(cls, message: str, base_image: str) -> "ImageUnavailableError":
        return cls(
            message,
            remediation=(
                "Check network access to the registry, or pre-pull the base image "
                f"with `docker pull {base_image}`."
            ),
        )


class CapacityError(SandboxError):
    kind = "resource"
    default_remediation = "Wait for idle sandboxes to be reclaimed or remove an existing one."


class ContainerNotFoundError(SandboxError):
    kind = "transport"
    default_remediation = "Create the container before running commands."


class ContainerCreationError(SandboxError):
    kind = "transport"
    default_remediation = "Check the Docker daemon logs and retry."


class ProxyConfigError(SandboxError):
    kind = "transport"
    default_remediation = "Inspect the proxy container logs with `docker logs <proxy>`."
