import html
import json
import re
import sys
import threading
from pathlib import Path

from mockup2code import cli
from mockup2code.config import HealingConfig, PipelineConfig
from mockup2code.graph import run_pipeline
from mockup2code.healing import HealingState
from mockup2code.nodes import builder, surveyor

PAYLOAD = {
    "canvas": {"width": 1000, "height": 800, "background": "#f5f6fa"},
    "dom_tree": {
        "id": "root",
        "type": "div",
        "styles": {"display": "flex", "flexDirection": "column", "backgroundColor": "#f5f6fa"},
        "children": [
            {
                "id": "nav",
                "type": "nav",
                "styles": {"backgroundColor": "#1e293b", "height": "80px"},
                "children": [
                    {"id": "close", "type": "button", "iconName": "close"},
                    {
                        "id": "logo",
                        "type": "div",
                        "hasIcon": True,
                        "isLogo": True,
                        "extractionBounds": {"top": 1, "left": 1, "width": 8, "height": 8},
                    },
                ],
            },
            {"id": "hero", "type": "img", "bounds": {"top": 25, "left": 10, "width": 40, "height": 25}},
            {
                "id": "sun",
                "type": "button",
                "text": "Shine",
                "looksLike": "sun stone",
                "styles": {"backgroundColor": "#eab308", "width": "200px", "height": "200px"},
                "interactionStates": {"hover": {"opacity": "0.9"}},
            },
        ],
    },
    "assets_needed": [{"name": "paper", "description": "recycled paper", "kind": "texture", "nodeId": "root"}],
}


def _config(**healing) -> PipelineConfig:
    settings = {"renderer": "placeholder", "max_iterations": 2, "convergence_threshold": 0.99}
    settings.update(healing)
    return PipelineConfig(healing=HealingConfig(**settings))


def _rich_survey(monkeypatch) -> None:
    monkeypatch.setattr(surveyor, "call_gemini", lambda kind, **kw: {"text": json.dumps(PAYLOAD)})


def test_offline_pipeline_writes_every_artifact(reference, tmp_path, monkeypatch) -> None:
    _rich_survey(monkeypatch)
    outdir = tmp_path / "run"
    progress = []

    state = run_pipeline(
        {"references": [reference], "instruction": "keep it calm", "config": _config(), "outdir": str(outdir)},
        on_progress=lambda s, i, score: progress.append(s),
    )

    result = state["result"]
    assert result.state in (HealingState.CONVERGED, HealingState.EXHAUSTED)
    assert 1 <= result.iterations <= 2
    assert progress[0] is HealingState.RENDERING

    assets = state["assets"]
    assert assets["hero"].mode == "crop" and assets["hero"].resolved
    assert assets["logo_icon"].mode == "crop" and assets["logo_icon"].resolved
    assert assets["close_icon"].handle == "library:close"
    assert assets["sun_material"].fill == "object" and assets["sun_material"].resolved
    assert assets["paper"].fill == "texture"
    assert (outdir / "assets").is_dir()

    final = (outdir / "final.html").read_text(encoding="utf-8")
    assert final.startswith("<!DOCTYPE html>")
    assert 'data-id="sun"' in final and "m2c-shape-stone" in final
    assert 'data-asset="hero"' in final

    history = json.loads((outdir / "history.json").read_text())
    assert history["state"] == result.state.value
    assert len(history["records"]) == result.iterations
    assert (outdir / "snapshot_1.png").exists()
    manifests = json.loads((outdir / "manifests.json").read_text())
    assert manifests[0]["root"]["id"] == "root"
    assert set(json.loads((outdir / "assets.json").read_text())) == set(assets)


_HANDLE = re.compile(r'(?:src="|url\("?)([^")]+)')


def test_archived_document_loads_its_assets(reference, tmp_path, monkeypatch) -> None:
    _rich_survey(monkeypatch)
    monkeypatch.chdir(tmp_path)
    outdir = Path("artifacts") / "run_x"

    run_pipeline({"references": [reference], "config": _config(), "outdir": str(outdir)})

    final = html.unescape((outdir / "final.html").read_text(encoding="utf-8"))
    handles = [h for h in _HANDLE.findall(final) if not h.startswith(("data:", "library:", "#"))]
    assert handles
    for handle in handles:
        assert not Path(handle).is_absolute()
        assert (outdir / handle).is_file(), handle


def test_pipeline_survives_total_service_failure(reference, tmp_path, monkeypatch) -> None:
    def _down(kind, **kwargs):
        raise RuntimeError("service down")

    monkeypatch.setattr(surveyor, "call_gemini", _down)
    monkeypatch.setattr(builder, "call_gemini", _down)
    config = _config()
    config.survey.retries = 0
    config.build.retries = 0

    state = run_pipeline({"references": [reference], "config": config, "outdir": str(tmp_path)})

    assert state["manifests"][0].is_minimal()
    assert state["artifact"].source.startswith("<!DOCTYPE html>")
    assert (tmp_path / "final.html").exists()


def test_cancelled_pipeline_still_archives(reference, tmp_path) -> None:
    cancel = threading.Event()
    cancel.set()

    state = run_pipeline({"references": [reference], "config": _config(), "outdir": str(tmp_path)}, cancel=cancel)

    assert state["result"].state is HealingState.CANCELLED
    assert (tmp_path / "final.html").exists()
    assert json.loads((tmp_path / "history.json").read_text())["state"] == "cancelled"


def test_cli_runs_offline(reference, tmp_path, monkeypatch, capsys) -> None:
    image = tmp_path / "shot.png"
    image.write_bytes(reference.data)
    outdir = tmp_path / "out"
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "mockup2code",
            "--image",
            str(image),
            "--renderer",
            "placeholder",
            "--max-iterations",
            "1",
            "--outdir",
            str(outdir),
            "--log-level",
            "WARNING",
        ],
    )

    cli.main()

    printed = capsys.readouterr().out
    assert "after 1 iterations" in printed
    assert (outdir / "final.html").exists()
