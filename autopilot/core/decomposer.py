"""Plan a change request as a dependency graph of subtasks.

PLANNING PIPELINE:
1. The AI backend proposes subtasks (schema-validated at the boundary)
2. Drafts are normalised: ids, durations and unknown dependencies
3. Subtasks are ordered so every dependency precedes its dependents
4. Kahn-style leveling yields the parallel tracks
5. Quality gates score the plan; blockers stop it before generation
6. The execution plan groups tracks into phases with checkpoints and
   computes the critical path and parallelization factor
"""

import logging
import re
from collections import deque

from autopilot.core.ai import AIClient
from autopilot.core.context import ContextLoader, PromptRenderer
from autopilot.core.errors import AIGenerationFailure
from autopilot.core.models import (
    Checkpoint,
    Decomposition,
    DecompositionOutput,
    ExecutionPhase,
    ExecutionPlan,
    ParallelTrack,
    Pattern,
    QualityCheck,
    QualityGateReport,
    Subtask,
    SubtaskDraft,
    SubtaskType,
)
from autopilot.core.parser import Err, Ok
from autopilot.core.patterns import PatternLibrary

logger = logging.getLogger(__name__)

DEFAULT_ESTIMATE_MINUTES = 15.0
MAX_ATOMIC_MINUTES = 60
MIN_TEST_RATIO = 0.2
MIN_PARALLEL_RATIO = 0.3
MAX_DEPENDENCY_LEVELS = 10
PASS_SCORE = 70.0

SECRET_PATTERNS = [
    re.compile(
        r"(?i)\b(api[_-]?key|secret|password|passwd|token)\b\s*[:=]\s*['\"]?[A-Za-z0-9_\-/+]{8,}"
    ),
    re.compile(r"\bsk-[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"-----BEGIN (?:RSA |EC )?PRIVATE KEY-----"),
]


class CyclicDependencyError(AIGenerationFailure):
    """Subtask dependencies form a cycle."""

    pass


class DuplicateSubtaskError(AIGenerationFailure):
    """Two subtasks share an id."""

    pass


def normalize_subtasks(drafts: list[SubtaskDraft]) -> list[Subtask]:
    """Fill defaults and drop dependencies on ids that are never declared.

    Raises:
        DuplicateSubtaskError: Two drafts declare the same id.
    """
    subtasks = []
    seen: set[str] = set()
    for index, draft in enumerate(drafts, start=1):
        subtask_id = draft.id or f"task-{index}"
        if subtask_id in seen:
            raise DuplicateSubtaskError(f"Duplicate subtask id: {subtask_id}")
        seen.add(subtask_id)
        subtasks.append(
            Subtask(
                id=subtask_id,
                description=draft.description,
                type=draft.type,
                dependencies=list(dict.fromkeys(draft.dependencies)),
                estimated_minutes=draft.estimated_minutes or DEFAULT_ESTIMATE_MINUTES,
                files=draft.files,
                priority=draft.priority,
                risk_level=draft.risk_level,
                requires_approval=draft.requires_approval,
            )
        )

    for subtask in subtasks:
        unknown = [dep for dep in subtask.dependencies if dep not in seen]
        if unknown:
            logger.warning(f"Subtask {subtask.id} has unknown dependencies {unknown}; dropping")
            subtask.dependencies = [dep for dep in subtask.dependencies if dep in seen]
    return subtasks


def _cycle_members(subtasks: list[Subtask]) -> list[str]:
    """Ids left over by Kahn's algorithm, i.e. nodes on or behind a cycle."""
    in_degree = {s.id: len(s.dependencies) for s in subtasks}
    dependents: dict[str, list[str]] = {s.id: [] for s in subtasks}
    for s in subtasks:
        for dep in s.dependencies:
            if dep in dependents:
                dependents[dep].append(s.id)

    queue = deque(sid for sid, deg in in_degree.items() if deg == 0)
    while queue:
        node = queue.popleft()
        for dependent in dependents[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
    return sorted(sid for sid, deg in in_degree.items() if deg > 0)


def order_subtasks(subtasks: list[Subtask]) -> list[Subtask]:
    """Stable topological order: declared order wherever dependencies allow.

    Afterwards every subtask's dependencies refer only to subtasks listed
    before it.

    Raises:
        CyclicDependencyError: The dependency graph has a cycle.
    """
    cycle = _cycle_members(subtasks)
    if cycle:
        raise CyclicDependencyError(f"Circular dependency detected among subtasks: {cycle}")

    placed: set[str] = set()
    ordered: list[Subtask] = []
    remaining = list(subtasks)
    while remaining:
        for i, subtask in enumerate(remaining):
            if all(dep in placed for dep in subtask.dependencies):
                ordered.append(remaining.pop(i))
                placed.add(subtask.id)
                break
    return ordered


def compute_parallel_tracks(subtasks: list[Subtask]) -> list[ParallelTrack]:
    """Level the graph: each track holds every subtask whose dependencies
    are all in earlier tracks.

    Raises:
        CyclicDependencyError: No subtask can be scheduled but some remain.
    """
    assigned: set[str] = set()
    remaining = list(subtasks)
    tracks: list[ParallelTrack] = []
    while remaining:
        ready = [s for s in remaining if all(dep in assigned for dep in s.dependencies)]
        if not ready:
            raise CyclicDependencyError(
                f"Circular dependency detected among subtasks: {sorted(s.id for s in remaining)}"
            )
        tracks.append(ParallelTrack(level=len(tracks), subtask_ids=[s.id for s in ready]))
        assigned.update(s.id for s in ready)
        remaining = [s for s in remaining if s.id not in assigned]
    return tracks


def find_critical_path(subtasks: list[Subtask]) -> tuple[list[str], float]:
    """Longest cumulative-duration dependency chain and its duration.

    ``subtasks`` must be topologically ordered.
    """
    distance: dict[str, float] = {}
    predecessor: dict[str, str | None] = {}
    for subtask in subtasks:
        best_dep = None
        best = 0.0
        for dep in subtask.dependencies:
            if distance.get(dep, 0.0) > best:
                best, best_dep = distance[dep], dep
        distance[subtask.id] = best + subtask.estimated_minutes
        predecessor[subtask.id] = best_dep

    if not distance:
        return [], 0.0
    end = max(distance, key=lambda sid: distance[sid])
    path: list[str] = []
    current: str | None = end
    while current is not None:
        path.append(current)
        current = predecessor[current]
    path.reverse()
    return path, distance[end]


def _contains_secret(text: str) -> bool:
    return any(p.search(text) for p in SECRET_PATTERNS)


def validate_task_against_quality_gates(decomposition: Decomposition) -> QualityGateReport:
    """Run the fixed quality gates and compute the weighted score.

    Score is the weight of passed checks over total weight, as a
    percentage. Failed critical checks are blockers; other failures are
    warnings. The plan passes with no blockers and a score of at least 70.
    """
    subtasks = decomposition.subtasks
    checks: list[QualityCheck] = []

    cycle = _cycle_members(subtasks)
    checks.append(
        QualityCheck(
            name="dependency-graph-acyclic",
            passed=not cycle,
            severity="critical",
            weight=3,
            message=f"Circular dependencies among {cycle}" if cycle else "No circular dependencies",
        )
    )

    test_count = sum(1 for s in subtasks if s.type == SubtaskType.TEST)
    code_count = sum(1 for s in subtasks if s.type == SubtaskType.CODE)
    test_ratio = test_count / code_count if code_count else 1.0
    checks.append(
        QualityCheck(
            name="plan-includes-tests",
            passed=test_ratio >= MIN_TEST_RATIO,
            severity="high",
            weight=2,
            message=f"{test_count} test subtasks for {code_count} code subtasks",
        )
    )

    large = [s.id for s in subtasks if s.estimated_minutes > MAX_ATOMIC_MINUTES]
    checks.append(
        QualityCheck(
            name="atomic-breakdown",
            passed=not large,
            severity="medium",
            weight=1,
            message=(
                f"{len(large)} subtasks exceed {MAX_ATOMIC_MINUTES} minutes: {large}"
                if large
                else f"All subtasks within {MAX_ATOMIC_MINUTES} minutes"
            ),
        )
    )

    tracks = decomposition.tracks
    if not tracks and not cycle:
        tracks = compute_parallel_tracks(subtasks)
    parallel = sum(len(t.subtask_ids) for t in tracks if len(t.subtask_ids) > 1)
    parallel_ratio = parallel / len(subtasks) if subtasks else 0.0
    checks.append(
        QualityCheck(
            name="parallel-execution",
            passed=parallel_ratio >= MIN_PARALLEL_RATIO,
            severity="low",
            weight=1,
            message=f"{parallel_ratio:.0%} of subtasks can run in parallel",
        )
    )

    levels = len(tracks)
    checks.append(
        QualityCheck(
            name="critical-path-depth",
            passed=levels <= MAX_DEPENDENCY_LEVELS,
            severity="medium",
            weight=1,
            message=f"Dependency graph has {levels} levels",
        )
    )

    leaking = [s.id for s in subtasks if _contains_secret(s.description)]
    checks.append(
        QualityCheck(
            name="no-hardcoded-secrets",
            passed=not leaking,
            severity="critical",
            weight=3,
            message=(
                f"Credential-like literals in subtasks {leaking}"
                if leaking
                else "No hardcoded secrets"
            ),
        )
    )

    total_weight = sum(c.weight for c in checks)
    passed_weight = sum(c.weight for c in checks if c.passed)
    score = round(passed_weight / total_weight * 100, 1) if total_weight else 100.0

    blockers = [f"{c.name}: {c.message}" for c in checks if not c.passed and c.severity == "critical"]
    warnings = [f"{c.name}: {c.message}" for c in checks if not c.passed and c.severity != "critical"]
    return QualityGateReport(
        score=score,
        passed=not blockers and score >= PASS_SCORE,
        checks=checks,
        warnings=warnings,
        blockers=blockers,
    )


def _phase_name(number: int, subtasks: list[Subtask]) -> str:
    kinds = sorted({s.type.value for s in subtasks})
    return f"Phase {number}: {', '.join(kinds)} ({len(subtasks)} subtasks)"


def _checkpoint_validations(subtasks: list[Subtask], last: bool) -> list[str]:
    validations = []
    if last or any(s.type in (SubtaskType.CODE, SubtaskType.INFRA) for s in subtasks):
        validations.append("diagnostics")
    if last or any(s.type == SubtaskType.TEST for s in subtasks):
        validations.append("tests")
    return validations


def generate_execution_plan(decomposition: Decomposition) -> ExecutionPlan:
    """Group tracks into ordered phases and compute critical-path metrics.

    A phase lasts as long as its longest subtask. The parallelization
    factor is total subtask duration over critical-path duration, so a
    strictly linear chain yields exactly 1.0.
    """
    subtasks = order_subtasks(decomposition.subtasks)
    tracks = decomposition.tracks or compute_parallel_tracks(subtasks)
    by_id = {s.id: s for s in subtasks}

    phases = []
    for i, track in enumerate(tracks):
        members = [by_id[sid] for sid in track.subtask_ids if sid in by_id]
        if not members:
            continue
        number = len(phases) + 1
        last = i == len(tracks) - 1
        phases.append(
            ExecutionPhase(
                number=number,
                name=_phase_name(number, members),
                subtask_ids=[s.id for s in members],
                duration_minutes=max(s.estimated_minutes for s in members),
                checkpoint=Checkpoint(
                    after_phase=number,
                    description=f"After Phase {number}: validate completion and quality",
                    validations=_checkpoint_validations(members, last),
                ),
            )
        )

    critical_path, critical_minutes = find_critical_path(subtasks)
    total = sum(s.estimated_minutes for s in subtasks)
    factor = total / critical_minutes if critical_minutes else 1.0

    logger.info(
        f"Execution plan: {len(phases)} phases, critical path {critical_minutes:.0f}min, "
        f"{factor:.1f}x parallelization"
    )
    return ExecutionPlan(
        phases=phases,
        critical_path=critical_path,
        critical_path_minutes=critical_minutes,
        total_minutes=total,
        parallelization_factor=factor,
    )


class TaskDecomposer:
    """Turn a change request into a scored, ordered, phased plan."""

    def __init__(
        self,
        ai: AIClient,
        patterns: PatternLibrary | None = None,
        context_loader: ContextLoader | None = None,
        renderer: PromptRenderer | None = None,
    ):
        self.ai = ai
        self.patterns = patterns
        self.context_loader = context_loader
        self.renderer = renderer or PromptRenderer()

    def match_patterns(self, prompt: str) -> list[Pattern]:
        """Advisory pattern hints; an unavailable library yields none."""
        if self.patterns is None:
            return []
        if not self.patterns.ready:
            logger.debug("Pattern library not ready; skipping pattern matching")
            return []
        return self.patterns.match(prompt)

    def decompose_task(self, prompt: str) -> Ok[Decomposition] | Err:
        """Plan ``prompt``. The AI output is validated before any use.

        Returns ``Err`` when the backend fails, its output does not match
        the schema, or the dependency graph is cyclic.
        """
        if not prompt or not prompt.strip():
            return Err(AIGenerationFailure("Prompt must not be empty"))

        patterns = self.match_patterns(prompt)
        context = ""
        if self.context_loader is not None:
            context = self.context_loader.load().render()

        request = self.renderer.render(
            "decompose.j2", prompt=prompt, context=context, patterns=patterns
        )
        result = self.ai.complete_structured(request, DecompositionOutput)
        if isinstance(result, Err):
            return result
        output: DecompositionOutput = result.value

        try:
            subtasks = order_subtasks(normalize_subtasks(output.subtasks))
            tracks = compute_parallel_tracks(subtasks)
        except AIGenerationFailure as e:
            logger.warning(f"Rejected decomposition: {e}")
            return Err(e)

        decomposition = Decomposition(
            summary=output.summary,
            subtasks=subtasks,
            tracks=tracks,
            patterns=patterns,
        )
        decomposition.quality = validate_task_against_quality_gates(decomposition)
        decomposition.plan = generate_execution_plan(decomposition)
        logger.info(
            f"Decomposed into {len(subtasks)} subtasks across {len(tracks)} tracks "
            f"(quality {decomposition.quality.score:.0f}%)"
        )
        return Ok(decomposition)
