from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

SpecProvider = Literal["openspec", "speckit", "unknown"]
SupportLevel = Literal["full", "minimal", "none"]
EnvironmentMode = Literal["managed", "byo"]
EnvironmentStatus = Literal["healthy", "degraded", "blocked"]
ChangeStatus = Literal["draft", "ready", "implementing", "verified", "archived", "blocked"]
TaskPriority = Literal["p0", "p1", "p2"]
ActionKey = Literal["continue", "apply", "verify", "archive"]
TimelineAction = Literal["continue", "apply", "verify", "archive", "bootstrap"]
ActionKind = Literal["native", "passthrough"]
TimelineKind = Literal["action", "validate", "git-link", "task-update"]
ApplyExecutor = Literal["codex", "claude", "opencode"]
ApplyMode = Literal["execute", "guidance"]
ApplyPhase = Literal["idle", "preflight", "instructions", "execution", "task-writeback", "finalize"]
ApplyStatus = Literal["idle", "running", "success", "failed"]
GateStatus = Literal["pass", "warn", "fail"]
ProjectType = Literal["legacy", "new"]
SpecRootSource = Literal["default", "custom"]
ArtifactType = Literal["proposal", "design", "tasks", "verification", "specs"]

DEFAULT_SPEC_ROOT = "openspec"


@dataclass(slots=True)
class TaskChecklistItem:
    index: int
    line_number: int
    indent: int
    checked: bool
    text: str
    priority: TaskPriority | None = None


@dataclass(slots=True)
class TaskProgress:
    total: int = 0
    checked: int = 0
    required_total: int = 0
    required_checked: int = 0


@dataclass(slots=True)
class ChangeArtifacts:
    proposal_path: str | None = None
    design_path: str | None = None
    tasks_path: str | None = None
    verification_path: str | None = None
    spec_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ChangeSummary:
    id: str
    status: ChangeStatus
    updated_at: float
    artifacts: ChangeArtifacts
    blockers: list[str] = field(default_factory=list)
    archive_blockers: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DoctorCheck:
    key: str
    label: str
    ok: bool
    value: str | None
    detail: str | None
    required: bool


@dataclass(slots=True)
class EnvironmentHealth:
    mode: EnvironmentMode
    status: EnvironmentStatus
    checks: list[DoctorCheck] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    hints: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SpecRoot:
    source: SpecRootSource
    path: str


@dataclass(slots=True)
class WorkspaceSnapshot:
    provider: SpecProvider
    support_level: SupportLevel
    spec_root: SpecRoot
    environment: EnvironmentHealth
    changes: list[ChangeSummary] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)

    def find_change(self, change_id: str | None) -> ChangeSummary | None:
        if change_id is None:
            return None
        return next((change for change in self.changes if change.id == change_id), None)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PreflightResult:
    blockers: list[str] = field(default_factory=list)
    hints: list[str] = field(default_factory=list)
    affected_specs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ArtifactSource:
    path: str
    content: str
    truncated: bool = False


@dataclass(slots=True)
class ArtifactEntry:
    type: ArtifactType
    path: str | None
    exists: bool
    content: str
    truncated: bool = False
    sources: list[ArtifactSource] = field(default_factory=list)
    task_checklist: list[TaskChecklistItem] = field(default_factory=list)
    task_progress: TaskProgress | None = None


@dataclass(slots=True)
class TaskChecklistUpdate:
    path: str
    content: str
    task_checklist: list[TaskChecklistItem]
    task_progress: TaskProgress


@dataclass(slots=True)
class HubAction:
    key: ActionKey
    label: str
    command_preview: str
    available: bool
    blockers: list[str] = field(default_factory=list)
    kind: ActionKind = "native"


@dataclass(slots=True)
class VerifyState:
    ran: bool = False
    success: bool = False


@dataclass(slots=True)
class ValidationIssue:
    target: str
    reason: str
    hint: str
    path: str | None = None


@dataclass(slots=True)
class TimelineEvent:
    id: str
    at: float
    kind: TimelineKind
    action: TimelineAction
    command: str
    success: bool
    output: str
    validation_issues: list[ValidationIssue] = field(default_factory=list)
    git_refs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ApplyExecutionState:
    status: ApplyStatus = "idle"
    phase: ApplyPhase = "idle"
    executor: ApplyExecutor | None = None
    started_at: float | None = None
    finished_at: float | None = None
    instructions_output: str = ""
    execution_output: str = ""
    summary: str = ""
    changed_files: list[str] = field(default_factory=list)
    tests: list[str] = field(default_factory=list)
    checks: list[str] = field(default_factory=list)
    completed_task_indices: list[int] = field(default_factory=list)
    no_changes: bool = False
    error: str | None = None
    logs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ContinueBrief:
    summary: str
    recommended_next_action: str = ""
    suggested_scope: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    verification_plan: list[str] = field(default_factory=list)
    execution_sequence: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateCheck:
    key: Literal["provider", "health", "artifacts", "validation"]
    label: str
    status: GateStatus
    message: str


@dataclass(slots=True)
class GateState:
    status: GateStatus
    checks: list[GateCheck] = field(default_factory=list)


@dataclass(slots=True)
class ProjectInfo:
    project_type: ProjectType = "new"
    domain: str = ""
    architecture: str = ""
    constraints: str = ""
    key_commands: str = ""
    owners: str = ""
    summary: str = ""
