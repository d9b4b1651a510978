"""Repository records and their port assignments."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import ConfigDict, Field

from workspace_engine.models.base import CamelModel


class SourceType(str, Enum):
    """Where a repository's working copy came from."""

    DEFAULT = "default"
    GITHUB = "github"
    MANUAL = "manual"


class ServiceKind(str, Enum):
    """The three daemons run for every repository."""

    EDITOR = "editor"
    TERMINAL = "terminal"
    AGENT = "agent"


SERVICE_LABELS: dict[ServiceKind, str] = {
    ServiceKind.EDITOR: "Code Editor",
    ServiceKind.TERMINAL: "Terminal",
    ServiceKind.AGENT: "Agent Terminal",
}


class PortTriple(CamelModel):
    """Ports assigned to one repository. Immutable once assigned."""

    model_config = ConfigDict(frozen=True)

    editor: int
    terminal: int
    agent: int

    def for_kind(self, kind: ServiceKind) -> int:
        return int(getattr(self, kind.value))

    def items(self) -> list[tuple[ServiceKind, int]]:
        """Ports in launch order: editor, terminal, agent."""
        return [(kind, self.for_kind(kind)) for kind in ServiceKind]

    def as_list(self) -> list[int]:
        return [port for _, port in self.items()]


class Repository(CamelModel):
    """A repository registered in a sandbox, as held by the metadata store."""

    id: str
    name: str
    source_type: SourceType = SourceType.DEFAULT
    url: str | None = None
    slot: int = Field(ge=0)
    ports: PortTriple
    # Keyed by ServiceKind value
    service_urls: dict[str, str] = Field(default_factory=dict)
    tokens: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RepositoryCreateRequest(CamelModel):
    """Request to register a repository in a sandbox."""

    name: str = Field(..., min_length=1, max_length=100)
    source_type: SourceType = SourceType.DEFAULT
    url: str | None = None
    auto_start: bool = False


class WorkspaceUrlsResponse(CamelModel):
    """Stored preview links of a sandbox.

    The top-level links are those of the first repository, for clients that
    only show one.
    """

    sandbox_id: str
    repositories: list[Repository] = Field(default_factory=list)
    service_urls: dict[str, str] = Field(default_factory=dict)
    tokens: dict[str, str] = Field(default_factory=dict)
