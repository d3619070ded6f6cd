from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from spechub.models import (
    DoctorCheck,
    EnvironmentHealth,
    EnvironmentMode,
    EnvironmentStatus,
    SpecProvider,
)
from spechub.workspace.base import WorkspaceIOError
from spechub.workspace.context import WorkspaceContext

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class ProbeResult:
    ok: bool
    stdout: str = ""
    stderr: str = ""


def default_mode_for_provider(provider: SpecProvider) -> EnvironmentMode:
    return "managed" if provider == "openspec" else "byo"


async def run_probe(
    ctx: WorkspaceContext,
    argv: Sequence[str],
    *,
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> ProbeResult:
    try:
        result = await ctx.run(argv, timeout_seconds=timeout_seconds, use_spec_root=False)
    except WorkspaceIOError as exc:
        logger.debug("Probe %s failed: %s", argv[0], exc)
        return ProbeResult(ok=False, stderr=str(exc))
    return ProbeResult(
        ok=result.success, stdout=result.stdout.strip(), stderr=result.stderr.strip()
    )


async def run_speckit_probe(
    ctx: WorkspaceContext, *, timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
) -> ProbeResult:
    specify_version = await run_probe(
        ctx, ["specify", "--version"], timeout_seconds=timeout_seconds
    )
    if specify_version.ok:
        return specify_version
    speckit_version = await run_probe(
        ctx, ["spec-kit", "--version"], timeout_seconds=timeout_seconds
    )
    if speckit_version.ok:
        return speckit_version
    specify_help = await run_probe(ctx, ["specify", "--help"], timeout_seconds=timeout_seconds)
    if specify_help.ok:
        return ProbeResult(ok=True, stdout="specify")
    return speckit_version if speckit_version.stderr else specify_version


def parse_probe_value(stdout: str) -> tuple[str, str]:
    """Split probe output into ``(value, detail)``."""
    tokens = stdout.split()
    if not tokens:
        return "-", "not found"
    head, rest = tokens[0], tokens[1:]
    return (" ".join(rest) if rest else head), head


def _check(
    key: str, label: str, probe: ProbeResult, *, required: bool, missing_detail: str
) -> DoctorCheck:
    value, detail = parse_probe_value(probe.stdout)
    return DoctorCheck(
        key=key,
        label=label,
        ok=probe.ok,
        value=value if probe.ok else "missing",
        detail=detail if probe.ok else (probe.stderr or missing_detail),
        required=required,
    )


async def diagnose_environment(
    ctx: WorkspaceContext,
    provider: SpecProvider,
    mode: EnvironmentMode,
    *,
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> EnvironmentHealth:
    if provider == "unknown":
        return EnvironmentHealth(
            mode=mode,
            status="degraded",
            blockers=["No supported spec provider detected."],
            hints=["Open a workspace with OpenSpec or spec-kit structure."],
        )

    node_probe, openspec_probe, speckit_probe = await asyncio.gather(
        run_probe(ctx, ["node", "-v"], timeout_seconds=timeout_seconds),
        run_probe(ctx, ["openspec", "--version"], timeout_seconds=timeout_seconds),
        run_speckit_probe(ctx, timeout_seconds=timeout_seconds),
    )
    openspec_required = provider == "openspec"
    checks = [
        _check(
            "node",
            "Node.js",
            node_probe,
            required=openspec_required,
            missing_detail="node not found",
        ),
        _check(
            "openspec",
            "OpenSpec CLI",
            openspec_probe,
            required=openspec_required,
            missing_detail="openspec not found",
        ),
        _check(
            "speckit",
            "Spec-Kit CLI",
            speckit_probe,
            required=False,
            missing_detail="spec-kit not found",
        ),
    ]

    blockers = [
        f"{check.label} is required for {provider} workflow."
        for check in checks
        if check.required and not check.ok
    ]
    hints: list[str] = []
    if not node_probe.ok and provider == "openspec":
        hints.append("Install Node.js 18+ and make sure `node` is available in PATH.")
    if not openspec_probe.ok:
        if mode == "managed":
            hints.append("Managed mode: install OpenSpec CLI, then click Refresh to re-run Doctor.")
            hints.append("Fallback: switch to BYO mode to use your existing environment settings.")
        else:
            hints.append(
                "BYO mode: expose `openspec` in PATH and verify `openspec --version` works."
            )
    if provider == "speckit" and not speckit_probe.ok:
        hints.append(
            "Spec-Kit CLI is optional in minimal mode, but enabling it improves diagnostics."
        )

    status: EnvironmentStatus = "healthy"
    if any(check.required and not check.ok for check in checks):
        status = "blocked"
    elif any(not check.required and not check.ok for check in checks):
        status = "degraded"
    return EnvironmentHealth(
        mode=mode, status=status, checks=checks, blockers=blockers, hints=hints
    )
