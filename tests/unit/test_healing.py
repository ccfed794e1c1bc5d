import threading
import time

import pytest

from mockup2code.config import HealingConfig
from mockup2code.errors import AssemblyError, InvalidTransition, RenderError
from mockup2code.healing import HealingOrchestrator, HealingSession, HealingState, Outcome, transition
from mockup2code.schema import BuildArtifact, Discrepancy, DomNode, FidelityReport, VisualManifest

START = BuildArtifact(source="<!DOCTYPE html><html><head></head><body data-id=\"root\"></body></html>")


class FakeRenderer:
    def __init__(self) -> None:
        self.sources = []

    def render(self, source, canvas):
        self.sources.append(source)
        return f"png:{len(self.sources)}".encode()


DRIFT = Discrepancy(node_path="cta", issue="color_drift", property="color", expected="#111")


class ScriptedCritic:
    def __init__(self, scores, discrepancies=(DRIFT,)):
        self.scores = list(scores)
        self.discrepancies = tuple(discrepancies)
        self.calls = 0
        self.seen_manifests = []

    def __call__(self, snapshot, reference, manifests):
        self.calls += 1
        self.seen_manifests.append(manifests)
        score = self.scores.pop(0)
        return FidelityReport(overall=score / 100, discrepancies=self.discrepancies)


class RecordingBuilder:
    def __init__(self, fail: bool = False) -> None:
        self.calls = []
        self.fail = fail

    def __call__(self, manifests, assets, instruction, *, prior_source=None, healing_note=None, revision=0):
        self.calls.append({"prior": prior_source, "note": healing_note, "revision": revision, "manifests": manifests})
        if self.fail:
            raise AssemblyError("model returned prose")
        return BuildArtifact(source=f"<html><head></head><body>rebuilt {revision}</body></html>", revision=revision)


def _manifest() -> VisualManifest:
    return VisualManifest(root=DomNode(id="root", children=[DomNode(id="cta", styles={"color": "#000"})]))


def _orchestrator(critic, *, threshold=0.75, max_iterations=5, builder=None, renderer=None, **kwargs):
    cfg = HealingConfig(
        convergence_threshold=threshold,
        max_iterations=max_iterations,
        critique_timeout_seconds=kwargs.pop("critique_timeout", 2.0),
        critique_retries=kwargs.pop("critique_retries", 1),
    )
    return HealingOrchestrator(
        renderer or FakeRenderer(), critic, builder or RecordingBuilder(), config=cfg, **kwargs
    )


# ------------------------------------------------------------------ transition


def test_transition_happy_path() -> None:
    assert transition(HealingState.RENDERING, Outcome.RENDERED) is HealingState.CRITIQUING
    assert transition(HealingState.CRITIQUING, Outcome.REPORTED) is HealingState.DECIDING
    assert transition(HealingState.FIXING, Outcome.PATCHED) is HealingState.RENDERING
    assert transition(HealingState.FIXING, Outcome.NO_PROGRESS) is HealingState.EXHAUSTED


def test_transition_deciding_uses_threshold_then_budget() -> None:
    kw = {"threshold": 0.75, "max_iterations": 3}

    assert transition(HealingState.DECIDING, Outcome.DECIDED, score=0.75, iteration=3, **kw) is HealingState.CONVERGED
    assert transition(HealingState.DECIDING, Outcome.DECIDED, score=0.7, iteration=3, **kw) is HealingState.EXHAUSTED
    assert transition(HealingState.DECIDING, Outcome.DECIDED, score=0.7, iteration=2, **kw) is HealingState.FIXING
    with pytest.raises(InvalidTransition):
        transition(HealingState.DECIDING, Outcome.DECIDED, score=None)


def test_transition_inconclusive_critique() -> None:
    assert transition(HealingState.CRITIQUING, Outcome.INCONCLUSIVE) is HealingState.CRITIQUING
    assert transition(HealingState.CRITIQUING, Outcome.GAVE_UP) is HealingState.EXHAUSTED


def test_transition_errors_and_cancellation_from_any_live_state() -> None:
    for state in (HealingState.RENDERING, HealingState.CRITIQUING, HealingState.DECIDING, HealingState.FIXING):
        assert transition(state, Outcome.ERROR) is HealingState.FAILED
        assert transition(state, Outcome.CANCELLED) is HealingState.CANCELLED


def test_transition_rejects_invalid_moves() -> None:
    with pytest.raises(InvalidTransition):
        transition(HealingState.RENDERING, Outcome.PATCHED)
    for terminal in (HealingState.CONVERGED, HealingState.EXHAUSTED, HealingState.FAILED, HealingState.CANCELLED):
        with pytest.raises(InvalidTransition):
            transition(terminal, Outcome.RENDERED)


def test_session_best_prefers_earliest_on_ties() -> None:
    session = HealingSession(max_records=3)
    first = session.record(START, FidelityReport(overall=0.6))
    session.record(START, FidelityReport(overall=0.6))

    assert session.best() is first
    with pytest.raises(InvalidTransition):
        session.record(START, FidelityReport(overall=0.1))
        session.record(START, FidelityReport(overall=0.1))


# ------------------------------------------------------------------ scenarios


def test_converges_on_the_fourth_iteration(reference) -> None:
    critic = ScriptedCritic([40, 55, 68, 80])

    result = _orchestrator(critic, threshold=0.75, max_iterations=5).run(START, reference, [_manifest()])

    assert result.state is HealingState.CONVERGED
    assert result.iterations == 4
    assert result.artifact.revision == 3
    assert result.artifact is result.history[-1].artifact
    assert result.score == pytest.approx(0.8)
    assert [round(r.report.overall, 2) for r in result.history] == [0.4, 0.55, 0.68, 0.8]


def test_exhaustion_returns_the_best_artifact(reference) -> None:
    critic = ScriptedCritic([40, 38, 35])

    result = _orchestrator(critic, threshold=0.75, max_iterations=3).run(START, reference, [_manifest()])

    assert result.state is HealingState.EXHAUSTED
    assert result.iterations == 3
    assert result.artifact is START
    assert result.score == pytest.approx(0.4)
    assert result.trace[-1] == "exhausted"


@pytest.mark.parametrize("max_iterations", [1, 2, 4])
def test_history_stays_within_budget(reference, max_iterations) -> None:
    critic = ScriptedCritic([10] * 10)

    result = _orchestrator(critic, threshold=0.99, max_iterations=max_iterations).run(START, reference, [_manifest()])

    assert len(result.history) <= max_iterations + 1
    assert result.iterations == max_iterations
    assert critic.calls == max_iterations


def test_every_iteration_produces_a_new_artifact(reference) -> None:
    renderer = FakeRenderer()
    critic = ScriptedCritic([10, 20, 30])

    result = _orchestrator(critic, threshold=0.99, max_iterations=3, renderer=renderer).run(
        START, reference, [_manifest()]
    )

    revisions = [r.artifact.revision for r in result.history]
    assert revisions == [0, 1, 2]
    assert [r.artifact.origin for r in result.history] == ["assembly", "patch", "patch"]
    assert len(renderer.sources) == 3


# ------------------------------------------------------------------ critique failures


class FailingCritic:
    def __init__(self, failures: int, then: float = 90) -> None:
        self.failures = failures
        self.then = then
        self.calls = 0

    def __call__(self, snapshot, reference, manifests):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("vision service unavailable")
        return FidelityReport(overall=self.then / 100)


def test_inconclusive_critique_is_retried_once(reference) -> None:
    critic = FailingCritic(failures=1)

    result = _orchestrator(critic).run(START, reference, [_manifest()])

    assert result.state is HealingState.CONVERGED
    assert critic.calls == 2
    assert len(result.history) == 1


def test_persistent_critique_failure_exhausts_without_records(reference) -> None:
    critic = FailingCritic(failures=99)

    result = _orchestrator(critic, critique_retries=1).run(START, reference, [_manifest()])

    assert result.state is HealingState.EXHAUSTED
    assert critic.calls == 2
    assert result.history == ()
    assert result.artifact is START
    assert result.report is None


def test_critique_timeout_is_inconclusive(reference) -> None:
    def _slow(snapshot, reference, manifests):
        time.sleep(1.0)
        return FidelityReport(overall=1.0)

    started = time.monotonic()
    result = _orchestrator(_slow, critique_timeout=0.1, critique_retries=0).run(START, reference, [_manifest()])

    assert result.state is HealingState.EXHAUSTED
    assert time.monotonic() - started < 1.0


# ------------------------------------------------------------------ failures and cancellation


def test_render_error_fails_the_session(reference) -> None:
    class BrokenRenderer:
        def render(self, source, canvas):
            raise RenderError("chromium crashed")

    result = _orchestrator(ScriptedCritic([90]), renderer=BrokenRenderer()).run(START, reference, [_manifest()])

    assert result.state is HealingState.FAILED
    assert "chromium crashed" in result.error
    assert result.artifact is START


def test_cancellation_between_phases_keeps_best_artifact(reference) -> None:
    cancel = threading.Event()
    events = []

    def _progress(state, iteration, score):
        events.append((state, iteration, score))
        if state is HealingState.FIXING and iteration == 2:
            cancel.set()

    critic = ScriptedCritic([50, 30, 20, 10])
    result = _orchestrator(critic, threshold=0.99, cancel=cancel, on_progress=_progress).run(
        START, reference, [_manifest()]
    )

    assert result.state is HealingState.CANCELLED
    assert result.iterations == 2
    assert result.artifact is START
    assert result.score == pytest.approx(0.5)
    assert events[0] == (HealingState.RENDERING, 0, None)
    assert events[-1][0] is HealingState.CANCELLED


def test_cancel_before_start_renders_nothing(reference) -> None:
    cancel = threading.Event()
    cancel.set()
    renderer = FakeRenderer()

    result = _orchestrator(ScriptedCritic([90]), renderer=renderer, cancel=cancel).run(START, reference, [_manifest()])

    assert result.state is HealingState.CANCELLED
    assert renderer.sources == []
    assert result.artifact is START


# ------------------------------------------------------------------ fixing


def test_property_patches_flow_into_manifest_and_source(reference) -> None:
    renderer = FakeRenderer()
    critic = ScriptedCritic(
        [40, 90],
        discrepancies=[Discrepancy(node_path="cta", issue="color_drift", property="color", expected="#2563eb")],
    )
    original = _manifest()
    builder = RecordingBuilder()

    result = _orchestrator(critic, renderer=renderer, builder=builder).run(START, reference, [original])

    assert result.state is HealingState.CONVERGED
    assert result.patches_applied == 1
    assert result.rebuilds == 0
    assert builder.calls == []
    assert '[data-id="cta"] { color: #2563eb !important; }' in renderer.sources[1]
    assert result.manifests[0].find_node("cta").styles["color"] == "#2563eb"
    assert original.find_node("cta").styles["color"] == "#000"
    assert critic.seen_manifests[1][0].find_node("cta").styles["color"] == "#2563eb"


def test_structural_discrepancy_triggers_edit_mode_rebuild(reference) -> None:
    renderer = FakeRenderer()
    critic = ScriptedCritic(
        [40, 90],
        discrepancies=[
            Discrepancy(node_path="root/footer", issue="missing_element", severity="critical", expected="footer bar"),
            Discrepancy(node_path="cta", issue="color_drift", property="color", expected="#fff"),
        ],
    )
    builder = RecordingBuilder()

    result = _orchestrator(critic, renderer=renderer, builder=builder).run(START, reference, [_manifest()])

    assert result.rebuilds == 1
    assert builder.calls[0]["prior"].startswith("<!DOCTYPE html><html><head><style id=\"m2c-heal\">")
    assert "[data-id=\"cta\"] { color: #fff !important; }" in builder.calls[0]["prior"]
    assert builder.calls[0]["revision"] == 1
    assert "root/footer: missing_element" in builder.calls[0]["note"]
    assert "cta" in builder.calls[0]["note"]
    assert builder.calls[0]["manifests"][0].find_node("cta").styles["color"] == "#fff"
    assert renderer.sources[1] == "<html><head></head><body>rebuilt 1</body></html>"
    assert result.artifact.source == renderer.sources[1]


def test_failed_rebuild_falls_back_to_patched_artifact(reference) -> None:
    renderer = FakeRenderer()
    critic = ScriptedCritic(
        [40, 90],
        discrepancies=[
            Discrepancy(node_path="root/footer", issue="missing_element"),
            Discrepancy(node_path="cta", issue="color_drift", property="color", expected="#fff"),
        ],
    )

    result = _orchestrator(critic, renderer=renderer, builder=RecordingBuilder(fail=True)).run(
        START, reference, [_manifest()]
    )

    assert result.state is HealingState.CONVERGED
    assert result.rebuilds == 0
    assert result.artifact.origin == "patch"
    assert "color: #fff !important" in renderer.sources[1]


@pytest.mark.parametrize(
    "discrepancies",
    [
        (),
        (Discrepancy(node_path="ghost", property="color", expected="red"),),
        (Discrepancy(node_path="cta", property="behavior", expected="url(x.htc)"),),
    ],
)
def test_nothing_to_fix_stops_without_another_critique(reference, discrepancies) -> None:
    renderer = FakeRenderer()
    critic = ScriptedCritic([50, 50, 50, 50], discrepancies=discrepancies)

    result = _orchestrator(critic, threshold=0.9, max_iterations=4, renderer=renderer).run(
        START, reference, [_manifest()]
    )

    assert result.state is HealingState.EXHAUSTED
    assert len(renderer.sources) == 1
    assert critic.calls == 1
    assert result.iterations == 1
    assert result.artifact is START
    assert result.trace[-2:] == ("fixing", "exhausted")


def test_failed_rebuild_without_patches_stops(reference) -> None:
    renderer = FakeRenderer()
    critic = ScriptedCritic([40, 90], discrepancies=[Discrepancy(node_path="root/footer", issue="missing_element")])
    builder = RecordingBuilder(fail=True)

    result = _orchestrator(critic, renderer=renderer, builder=builder).run(START, reference, [_manifest()])

    assert result.state is HealingState.EXHAUSTED
    assert len(builder.calls) == 1
    assert len(renderer.sources) == 1
    assert result.artifact is START
