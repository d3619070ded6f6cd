"""Action gating, spec CLI command tables and action execution."""

from __future__ import annotations

import logging
import re
import shlex

from spechub.artifacts import ArtifactMap
from spechub.checklist import split_lines
from spechub.models import (
    ActionKey,
    ChangeSummary,
    EnvironmentHealth,
    GateCheck,
    GateState,
    GateStatus,
    HubAction,
    SpecProvider,
    SupportLevel,
    TaskProgress,
    TimelineAction,
    TimelineEvent,
    ValidationIssue,
    VerifyState,
    WorkspaceSnapshot,
)
from spechub.timeline import new_timeline_event
from spechub.workspace.context import WorkspaceContext

logger = logging.getLogger(__name__)

ACTION_KEYS: tuple[ActionKey, ...] = ("continue", "apply", "verify", "archive")
ACTION_LABELS: dict[ActionKey, str] = {
    "continue": "Continue",
    "apply": "Apply",
    "verify": "Verify",
    "archive": "Archive",
}
DEFAULT_ACTION_TIMEOUT_SECONDS = 180.0
MAX_VALIDATION_ISSUES = 24
MAX_GIT_REFS = 8

CONTINUE_IGNORED_BLOCKERS = frozenset(
    {"Missing design.md", "Missing tasks.md", "Missing specs delta", "Unable to read tasks.md"}
)
APPLY_IGNORED_BLOCKERS = frozenset(
    {"Missing design.md", "Missing tasks.md", "Unable to read tasks.md"}
)

_SPECKIT_COMMANDS: dict[TimelineAction, list[str]] = {
    "continue": ["specify", "propose", "--help"],
    "apply": ["specify", "tasks", "--help"],
    "verify": ["specify", "check", "--help"],
    "archive": ["specify", "archive", "--help"],
    "bootstrap": ["specify", "--help"],
}

_ISSUE_LINE = re.compile(r"(error|failed|invalid|missing|required|not found)", re.IGNORECASE)
_ISSUE_PATH = re.compile(r"([\w./-]+\.md(?::\d+)?)", re.IGNORECASE)
_GIT_REF = re.compile(r"\b[0-9a-f]{7,40}\b", re.IGNORECASE)


def build_action_args(change_id: str, action: TimelineAction, provider: SpecProvider) -> list[str]:
    if provider == "speckit":
        return list(_SPECKIT_COMMANDS[action])
    if action == "continue":
        return ["openspec", "instructions", "specs", "--change", change_id]
    if action == "apply":
        return ["openspec", "instructions", "tasks", "--change", change_id]
    if action == "verify":
        return ["openspec", "validate", change_id, "--strict"]
    if action == "archive":
        return ["openspec", "archive", change_id, "--yes"]
    return ["openspec", "init", "--tools", "none"]


def build_action_command(change_id: str, action: TimelineAction, provider: SpecProvider) -> str:
    return shlex.join(build_action_args(change_id, action, provider))


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def core_artifacts_complete(change: ChangeSummary) -> bool:
    artifacts = change.artifacts
    return bool(
        artifacts.proposal_path
        and artifacts.design_path
        and artifacts.tasks_path
        and artifacts.spec_paths
    )


def build_actions(
    change: ChangeSummary,
    support_level: SupportLevel,
    provider: SpecProvider,
    environment: EnvironmentHealth,
    verify_state: VerifyState | None = None,
    task_progress: TaskProgress | None = None,
) -> list[HubAction]:
    """Compute availability and blockers of the four workflow actions for ``change``."""
    archived = change.status == "archived"
    supported = support_level == "full" and provider == "openspec"
    verify_state = verify_state or VerifyState()

    shared: list[str] = []
    if environment.status == "blocked":
        shared.extend(environment.blockers)
    if not supported:
        shared.append("This provider is running in minimal compatibility mode.")
    if archived:
        shared.append("Change is already archived")

    apply_gate: list[str] = []
    if not change.artifacts.spec_paths:
        apply_gate.append("Run continue first to generate specs delta")

    required_total = task_progress.required_total if task_progress else 0
    required_checked = task_progress.required_checked if task_progress else 0
    archive_gate: list[str] = []
    if not archived:
        if not (verify_state.ran and verify_state.success):
            archive_gate.append("Strict verify must pass before archive")
        if required_total > 0 and required_checked < required_total:
            archive_gate.append("Required tasks are incomplete")

    per_action: dict[ActionKey, list[str]] = {
        "continue": [b for b in change.blockers if b not in CONTINUE_IGNORED_BLOCKERS],
        "apply": [b for b in change.blockers if b not in APPLY_IGNORED_BLOCKERS] + apply_gate,
        "verify": list(change.blockers)
        + ([] if core_artifacts_complete(change) else ["Core artifacts are incomplete"]),
        "archive": list(change.blockers) + archive_gate,
    }

    actions: list[HubAction] = []
    for key in ACTION_KEYS:
        blockers = _dedupe(shared + per_action[key])
        actions.append(
            HubAction(
                key=key,
                label=ACTION_LABELS[key],
                command_preview=build_action_command(change.id, key, provider),
                available=not blockers and supported,
                blockers=blockers,
                kind="native" if supported else "passthrough",
            )
        )
    return actions


def parse_validation_issues(output: str) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    seen: set[tuple[str, str]] = set()
    for raw_line in split_lines(output):
        line = raw_line.strip()
        if not line or not _ISSUE_LINE.search(line):
            continue
        matched = _ISSUE_PATH.search(line)
        path = matched.group(1) if matched else None
        target = path or "validation"
        if (target, line) in seen:
            continue
        seen.add((target, line))
        hint = (
            "Open the target file and fix the requirement mismatch before re-running verify."
            if path
            else "Read command output and complete missing artifacts, then run verify again."
        )
        issues.append(ValidationIssue(target=target, reason=line, hint=hint, path=path))
    return issues[:MAX_VALIDATION_ISSUES]


def extract_git_refs(output: str) -> list[str]:
    refs = (ref.lower() for ref in _GIT_REF.findall(output))
    return list(dict.fromkeys(refs))[:MAX_GIT_REFS]


def has_semantic_action_failure(action: TimelineAction, output: str) -> bool:
    """Detect failures the spec CLI reports with a zero exit code."""
    normalized = output.lower()
    if "aborted. no files were changed" in normalized:
        return True
    return action == "archive" and "failed for header" in normalized


def join_output(stdout: str, stderr: str) -> str:
    return "\n".join(part for part in (stdout, stderr) if part).strip()


async def run_action(
    ctx: WorkspaceContext,
    change_id: str,
    action: ActionKey,
    provider: SpecProvider,
    *,
    timeout_seconds: float = DEFAULT_ACTION_TIMEOUT_SECONDS,
) -> TimelineEvent:
    """Run the spec CLI command behind ``action`` and record it as a timeline event."""
    command_args = build_action_args(change_id, action, provider)
    runner_ctx = ctx if provider == "openspec" else ctx.with_spec_root(None)
    logger.info("Running %s for %s: %s", action, change_id, shlex.join(command_args))
    result = await runner_ctx.run(command_args, timeout_seconds=timeout_seconds)

    output = join_output(result.stdout, result.stderr)
    success = result.success and not has_semantic_action_failure(action, output)
    if not success:
        logger.warning("Action %s for %s failed (exit %s)", action, change_id, result.exit_code)
    return new_timeline_event(
        kind="validate" if action == "verify" else "action",
        action=action,
        command=shlex.join(command_args),
        success=success,
        output=output,
        validation_issues=parse_validation_issues(output) if action == "verify" else [],
        git_refs=extract_git_refs(output),
    )


def _worst(checks: list[GateCheck]) -> GateStatus:
    statuses = {check.status for check in checks}
    if "fail" in statuses:
        return "fail"
    if "warn" in statuses:
        return "warn"
    return "pass"


def build_gate_state(
    snapshot: WorkspaceSnapshot,
    selected_change: ChangeSummary | None,
    last_verify_event: TimelineEvent | None = None,
    verify_state: VerifyState | None = None,
    artifacts: ArtifactMap | None = None,
) -> GateState:
    checks: list[GateCheck] = []

    if snapshot.provider == "unknown":
        checks.append(GateCheck("provider", "Provider", "fail", "No supported provider detected"))
    else:
        checks.append(
            GateCheck(
                "provider", "Provider", "pass", f"{snapshot.provider} ({snapshot.support_level})"
            )
        )

    environment = snapshot.environment
    if environment.status == "healthy":
        checks.append(GateCheck("health", "Environment", "pass", "Doctor checks passed"))
    else:
        checks.append(
            GateCheck(
                "health",
                "Environment",
                "warn" if environment.status == "degraded" else "fail",
                environment.blockers[0] if environment.blockers else "Environment needs attention",
            )
        )

    if selected_change is None:
        checks.append(GateCheck("artifacts", "Artifacts", "warn", "Select a change first"))
    else:
        truncated: list[str] = []
        if artifacts and artifacts["tasks"].truncated:
            truncated.append("tasks.md")
        if artifacts and artifacts["specs"].truncated:
            truncated.append("specs")
        if selected_change.blockers:
            checks.append(GateCheck("artifacts", "Artifacts", "fail", selected_change.blockers[0]))
        elif not core_artifacts_complete(selected_change):
            checks.append(GateCheck("artifacts", "Artifacts", "fail", "Core artifacts incomplete"))
        elif truncated:
            checks.append(
                GateCheck(
                    "artifacts",
                    "Artifacts",
                    "warn",
                    f"Artifact evidence is truncated ({', '.join(truncated)}). "
                    "Re-read before archive.",
                )
            )
        else:
            checks.append(GateCheck("artifacts", "Artifacts", "pass", "Core artifacts ready"))

    evidence = verify_state
    if evidence is None:
        evidence = VerifyState(
            ran=last_verify_event is not None,
            success=bool(last_verify_event and last_verify_event.success),
        )
    archived = selected_change is not None and selected_change.status == "archived"
    if not evidence.ran:
        checks.append(
            GateCheck(
                "validation",
                "Validation",
                "pass" if archived else "warn",
                "Change is already archived" if archived else "No strict verify evidence recorded",
            )
        )
    elif evidence.success:
        checks.append(GateCheck("validation", "Validation", "pass", "Latest strict verify passed"))
    else:
        issues = last_verify_event.validation_issues if last_verify_event else []
        message = issues[0].reason if issues else "Latest strict verify failed"
        checks.append(GateCheck("validation", "Validation", "fail", message))

    return GateState(status=_worst(checks), checks=checks)
