"""Render -> critique -> decide -> fix loop.

The loop is driven by an explicit state enum and the pure ``transition``
function; ``HealingOrchestrator`` only performs the side effect belonging to
the current state and feeds the resulting ``Outcome`` back in.

Each critiqued artifact counts as one iteration. The session stops when a
score reaches the threshold (Converged, returning that artifact), when the
iteration budget is spent (Exhausted, returning the best artifact seen), when
a fix step finds nothing to patch or rebuild (Exhausted), when the critique
stays inconclusive after its retry (Exhausted), on a render failure (Failed)
or when the cancel event is set between phases (Cancelled).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import BuildConfig, HealingConfig
from .errors import AssemblyError, InvalidTransition, RenderError
from .llm.calls import CallStatus, bounded_call
from .nodes import builder as builder_node
from .nodes.patcher import PatchPlan, apply_to_manifest, apply_to_source, plan_patches
from .nodes.render import Renderer
from .schema import BuildArtifact, Canvas, FidelityReport, ReferenceImage, ResolvedAsset, VisualManifest

logger = logging.getLogger(__name__)


class HealingState(str, Enum):
    RENDERING = "rendering"
    CRITIQUING = "critiquing"
    DECIDING = "deciding"
    FIXING = "fixing"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({HealingState.CONVERGED, HealingState.EXHAUSTED, HealingState.FAILED, HealingState.CANCELLED})


class Outcome(str, Enum):
    RENDERED = "rendered"
    REPORTED = "reported"
    INCONCLUSIVE = "inconclusive"  # critique failed, retry allowed
    GAVE_UP = "gave_up"  # critique failed, retry budget spent
    DECIDED = "decided"
    PATCHED = "patched"
    NO_PROGRESS = "no_progress"  # fixing found nothing to change
    ERROR = "error"
    CANCELLED = "cancelled"


_MOVES: Dict[Tuple[HealingState, Outcome], HealingState] = {
    (HealingState.RENDERING, Outcome.RENDERED): HealingState.CRITIQUING,
    (HealingState.CRITIQUING, Outcome.REPORTED): HealingState.DECIDING,
    (HealingState.CRITIQUING, Outcome.INCONCLUSIVE): HealingState.CRITIQUING,
    (HealingState.CRITIQUING, Outcome.GAVE_UP): HealingState.EXHAUSTED,
    (HealingState.FIXING, Outcome.PATCHED): HealingState.RENDERING,
    (HealingState.FIXING, Outcome.NO_PROGRESS): HealingState.EXHAUSTED,
}


def transition(
    state: HealingState,
    outcome: Outcome,
    *,
    score: Optional[float] = None,
    iteration: int = 0,
    threshold: float = 0.9,
    max_iterations: int = 3,
) -> HealingState:
    if state.terminal:
        raise InvalidTransition(f"{state.value} is terminal")
    if outcome is Outcome.ERROR:
        return HealingState.FAILED
    if outcome is Outcome.CANCELLED:
        return HealingState.CANCELLED
    if state is HealingState.DECIDING and outcome is Outcome.DECIDED:
        if score is None:
            raise InvalidTransition("deciding requires a score")
        if score >= threshold:
            return HealingState.CONVERGED
        if iteration >= max_iterations:
            return HealingState.EXHAUSTED
        return HealingState.FIXING
    try:
        return _MOVES[(state, outcome)]
    except KeyError:
        raise InvalidTransition(f"{outcome.value} is not valid while {state.value}") from None


@dataclass(frozen=True)
class HealingRecord:
    iteration: int
    artifact: BuildArtifact
    report: FidelityReport
    snapshot: bytes = field(default=b"", repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "revision": self.artifact.revision,
            "origin": self.artifact.origin,
            "score": self.report.overall,
            "dimensions": self.report.dimensions.model_dump(),
            "recommendation": self.report.recommendation,
            "discrepancies": [d.model_dump() for d in self.report.discrepancies],
            "summary": self.report.summary,
        }


@dataclass
class HealingSession:
    max_records: int
    state: HealingState = HealingState.RENDERING
    iteration: int = 0
    history: List[HealingRecord] = field(default_factory=list)
    trace: List[str] = field(default_factory=list)
    patches_applied: int = 0
    rebuilds: int = 0

    def record(self, artifact: BuildArtifact, report: FidelityReport, snapshot: bytes = b"") -> HealingRecord:
        if len(self.history) >= self.max_records:
            raise InvalidTransition(f"history is limited to {self.max_records} records")
        self.iteration += 1
        rec = HealingRecord(iteration=self.iteration, artifact=artifact, report=report, snapshot=snapshot)
        self.history.append(rec)
        return rec

    def best(self) -> Optional[HealingRecord]:
        """Highest-scoring record; the earliest one wins ties."""
        best: Optional[HealingRecord] = None
        for rec in self.history:
            if best is None or rec.report.overall > best.report.overall:
                best = rec
        return best

    def latest(self) -> Optional[HealingRecord]:
        return self.history[-1] if self.history else None


@dataclass(frozen=True)
class HealingResult:
    state: HealingState
    artifact: BuildArtifact
    report: Optional[FidelityReport]
    iterations: int
    history: Tuple[HealingRecord, ...]
    manifests: Tuple[VisualManifest, ...]
    trace: Tuple[str, ...] = ()
    patches_applied: int = 0
    rebuilds: int = 0
    error: str = ""

    @property
    def score(self) -> Optional[float]:
        return self.report.overall if self.report is not None else None


Critic = Callable[[bytes, ReferenceImage, Sequence[VisualManifest]], FidelityReport]
Builder = Callable[..., BuildArtifact]
ProgressCallback = Callable[[HealingState, int, Optional[float]], None]


def _default_builder(config: BuildConfig, cancel: Optional[threading.Event]) -> Builder:
    def _build(manifests, assets, instruction, *, prior_source=None, healing_note=None, revision=0) -> BuildArtifact:
        return builder_node.build(
            manifests,
            assets,
            instruction,
            prior_source,
            config=config,
            healing_note=healing_note,
            revision=revision,
            cancel=cancel,
        )

    return _build


def healing_note(iteration: int, score: float, plan: PatchPlan) -> str:
    lines = [f"Iteration {iteration} scored {score * 100:.0f}/100."]
    if plan.patches:
        patched = sorted({p.node_id for p in plan.patches})
        lines.append(f"Already patched nodes (keep these values): {', '.join(patched)}.")
    for d in plan.structural:
        detail = f" expected {d.expected!r}" if d.expected else ""
        lines.append(f"- [{d.severity}] {d.node_path}: {d.issue}{detail}")
    return "\n".join(lines)


class HealingOrchestrator:
    """Runs one healing session per ``run`` call.

    Collaborators are injected: ``renderer`` turns source into PNG bytes,
    ``critic`` scores a snapshot, and ``builder`` rebuilds the document when a
    discrepancy cannot be expressed as a property patch.
    """

    def __init__(
        self,
        renderer: Renderer,
        critic: Critic,
        builder: Optional[Builder] = None,
        *,
        config: Optional[HealingConfig] = None,
        build_config: Optional[BuildConfig] = None,
        assets: Optional[Mapping[str, ResolvedAsset]] = None,
        instruction: str = "",
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.renderer = renderer
        self.critic = critic
        self.config = config or HealingConfig()
        self.cancel = cancel or threading.Event()
        self.builder = builder or _default_builder(build_config or BuildConfig(), self.cancel)
        self.assets = dict(assets or {})
        self.instruction = instruction
        self.on_progress = on_progress

    def _cancelled(self) -> bool:
        return self.cancel.is_set()

    def _emit(self, session: HealingSession, score: Optional[float]) -> None:
        session.trace.append(session.state.value)
        logger.debug("healing: %s (iteration %d)", session.state.value, session.iteration)
        if self.on_progress is not None:
            self.on_progress(session.state, session.iteration, score)

    def run(
        self,
        artifact: BuildArtifact,
        reference: ReferenceImage,
        manifests: Sequence[VisualManifest],
    ) -> HealingResult:
        cfg = self.config
        session = HealingSession(max_records=cfg.max_iterations + 1)
        working = [m.model_copy(deep=True) for m in manifests]
        canvas = working[0].canvas if working else Canvas()
        current = artifact
        snapshot = b""
        report: Optional[FidelityReport] = None
        critique_failures = 0
        error = ""

        self._emit(session, None)
        while not session.state.terminal:
            state = session.state
            # checked between phases only; a render in progress always completes
            if state in (HealingState.RENDERING, HealingState.FIXING) and self._cancelled():
                outcome = Outcome.CANCELLED
            elif state is HealingState.RENDERING:
                try:
                    snapshot = self.renderer.render(current.source, canvas)
                    outcome = Outcome.RENDERED
                except RenderError as e:
                    logger.error("healing: render of revision %d failed: %s", current.revision, e)
                    error = str(e)
                    outcome = Outcome.ERROR
            elif state is HealingState.CRITIQUING:
                res = bounded_call(
                    lambda: self.critic(snapshot, reference, working),
                    timeout=cfg.critique_timeout_seconds,
                    cancel=self.cancel,
                    label=f"critique[r{current.revision}]",
                )
                if res.status is CallStatus.CANCELLED:
                    outcome = Outcome.CANCELLED
                elif res.ok and res.value is not None:
                    report = res.value
                    session.record(current, report, snapshot)
                    critique_failures = 0
                    logger.info("healing: iteration %d scored %.3f", session.iteration, report.overall)
                    outcome = Outcome.REPORTED
                else:
                    critique_failures += 1
                    logger.warning("healing: critique inconclusive (%s): %s", res.status.value, res.error)
                    outcome = Outcome.INCONCLUSIVE if critique_failures <= cfg.critique_retries else Outcome.GAVE_UP
            elif state is HealingState.DECIDING:
                outcome = Outcome.DECIDED
            elif state is HealingState.FIXING:
                if report is None:
                    raise InvalidTransition("fixing requires a critique report")
                fixed = self._fix(session, current, working, report)
                if fixed is None:
                    logger.info("healing: no applicable fixes for revision %d, stopping", current.revision)
                    outcome = Outcome.NO_PROGRESS
                else:
                    current, working = fixed
                    outcome = Outcome.PATCHED
            else:
                raise InvalidTransition(f"unexpected state {state.value}")

            session.state = transition(
                state,
                outcome,
                score=report.overall if report is not None else None,
                iteration=session.iteration,
                threshold=cfg.convergence_threshold,
                max_iterations=cfg.max_iterations,
            )
            self._emit(session, report.overall if report is not None else None)

        return self._result(session, artifact, working, error)

    def _fix(
        self,
        session: HealingSession,
        current: BuildArtifact,
        manifests: List[VisualManifest],
        report: FidelityReport,
    ) -> Optional[Tuple[BuildArtifact, List[VisualManifest]]]:
        """Next revision and patched manifests; ``None`` when nothing applies."""
        plan = plan_patches(report, manifests, self.config.max_patches)
        if not plan.patches and not plan.needs_rebuild:
            return None
        patched_manifests = apply_to_manifest(manifests, plan.patches)
        revision = current.revision + 1
        patched = apply_to_source(current, plan.patches, revision)
        session.patches_applied += len(plan.patches)
        logger.info(
            "healing: %d patches, %d structural issues, %d rejected",
            len(plan.patches),
            len(plan.structural),
            len(plan.rejected),
        )
        if not plan.needs_rebuild:
            return patched, patched_manifests

        try:
            rebuilt = self.builder(
                patched_manifests,
                self.assets,
                self.instruction,
                prior_source=patched.source,
                healing_note=healing_note(session.iteration, report.overall, plan),
                revision=revision,
            )
        except AssemblyError as e:
            logger.warning("healing: rebuild failed, keeping patched revision %d: %s", revision, e)
            if not plan.patches:
                return None
            return patched, patched_manifests
        session.rebuilds += 1
        return rebuilt, patched_manifests

    def _result(
        self,
        session: HealingSession,
        initial: BuildArtifact,
        manifests: List[VisualManifest],
        error: str,
    ) -> HealingResult:
        if session.state is HealingState.CONVERGED:
            chosen = session.latest()
        else:
            chosen = session.best()
        logger.info(
            "healing finished: %s after %d iterations (best %.3f)",
            session.state.value,
            session.iteration,
            chosen.report.overall if chosen else 0.0,
        )
        return HealingResult(
            state=session.state,
            artifact=chosen.artifact if chosen else initial,
            report=chosen.report if chosen else None,
            iterations=session.iteration,
            history=tuple(session.history),
            manifests=tuple(manifests),
            trace=tuple(session.trace),
            patches_applied=session.patches_applied,
            rebuilds=session.rebuilds,
            error=error,
        )
