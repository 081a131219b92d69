"""
Resource reference models.

A resource reference is the user's declared intent to forward one local port
into a named cluster resource. It is parsed once at startup and never changes;
every connection attempt turns it into a fresh ``ResolvedTarget`` naming the
concrete pod to talk to right now.

Supported specifiers:
- ``[namespace/]pod/name:localPort:remotePort``
- ``[namespace/]service/name:localPort:remotePort``
- ``[namespace/]deployment/name:localPort:remotePort``
"""

import re
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from kube_forwarder.errors import ParseError

RESOURCE_PATTERN = re.compile(
    r"^(?:(?P<namespace>[^/\s]+)/)?"
    r"(?P<kind>[^/\s]+)/"
    r"(?P<name>[^/:\s]+)"
    r":(?P<local_port>\d+):(?P<remote_port>\d+)$"
)


class ResourceKind(str, Enum):
    """Kinds of resources that can be port forwarded."""

    POD = "pod"
    SERVICE = "service"
    DEPLOYMENT = "deployment"

    @classmethod
    def from_string(cls, value: str) -> "ResourceKind":
        """
        Look up a kind by its specifier token.

        Raises:
            ParseError: If the token is not a recognized kind
        """
        try:
            return cls(value)
        except ValueError:
            raise ParseError("unknown resource kind", value) from None


class ResourceReference(BaseModel):
    """A parsed forward target: ``[namespace/]kind/name:localPort:remotePort``."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind = Field(..., description="Kind of the referenced resource")
    namespace: str = Field(
        "", description="Namespace of the resource (empty until defaulted)"
    )
    name: str = Field(..., min_length=1, description="Name of the resource")
    local_port: int = Field(..., gt=0, le=65535, description="Local port to bind")
    remote_port: int = Field(
        ..., gt=0, le=65535, description="Port inside the pod to forward to"
    )

    @property
    def ports(self) -> list[str]:
        """Port pairs in ``local:remote`` form."""
        return [f"{self.local_port}:{self.remote_port}"]

    def with_namespace(self, default_namespace: str) -> "ResourceReference":
        """Return this reference with an empty namespace replaced by the default."""
        if self.namespace:
            return self
        return self.model_copy(update={"namespace": default_namespace})

    def __str__(self) -> str:
        return f"{self.namespace}/{self.kind.value}/{self.name}"


def parse_resource(value: str) -> ResourceReference:
    """
    Parse a resource specifier into a ResourceReference.

    Args:
        value: Specifier such as ``ns/deployment/foo:8080:9090``

    Returns:
        The parsed reference; namespace is empty when omitted

    Raises:
        ParseError: If the specifier is malformed or names an unknown kind
    """
    match = RESOURCE_PATTERN.match(value.strip())
    if match is None:
        raise ParseError("invalid resource format", value)

    kind = ResourceKind.from_string(match.group("kind"))

    try:
        return ResourceReference(
            kind=kind,
            namespace=match.group("namespace") or "",
            name=match.group("name"),
            local_port=int(match.group("local_port")),
            remote_port=int(match.group("remote_port")),
        )
    except PydanticValidationError as e:
        # Ports out of range
        raise ParseError(
            f"invalid resource format ({e.errors()[0]['msg']})", value
        ) from e


@dataclass(frozen=True)
class ResolvedTarget:
    """The concrete pod and port pair a single connection attempt talks to."""

    reference: ResourceReference
    namespace: str
    pod: str
    local_port: int
    remote_port: int

    @classmethod
    def for_pod(cls, reference: ResourceReference, pod: str) -> "ResolvedTarget":
        return cls(
            reference=reference,
            namespace=reference.namespace,
            pod=pod,
            local_port=reference.local_port,
            remote_port=reference.remote_port,
        )

    @property
    def ports(self) -> list[str]:
        return [f"{self.local_port}:{self.remote_port}"]
