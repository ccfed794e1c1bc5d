from __future__ import annotations

import json
from pathlib import Path

from ..state import AppState


def run(state: AppState) -> AppState:
    outdir = Path(state["outdir"])  # ensured by run_pipeline
    outdir.mkdir(parents=True, exist_ok=True)
    result = state.get("result")

    # dump manifests (patched copies once healing ran)
    manifests = list(result.manifests) if result is not None else state.get("manifests", [])
    if manifests:
        (outdir / "manifests.json").write_text(
            json.dumps([m.model_dump(mode="json", exclude_none=True) for m in manifests], ensure_ascii=False, indent=2)
        )

    # dump assets
    if state.get("assets"):
        assets = {name: a.model_dump(mode="json") for name, a in state["assets"].items()}
        (outdir / "assets.json").write_text(json.dumps(assets, ensure_ascii=False, indent=2))

    # dump healing history and per-iteration snapshots
    if result is not None:
        history = {
            "state": result.state.value,
            "iterations": result.iterations,
            "score": result.score,
            "final_revision": result.artifact.revision,
            "patches_applied": result.patches_applied,
            "rebuilds": result.rebuilds,
            "trace": list(result.trace),
            "error": result.error,
            "records": [rec.to_dict() for rec in result.history],
        }
        (outdir / "history.json").write_text(json.dumps(history, ensure_ascii=False, indent=2))
        for rec in result.history:
            if rec.snapshot:
                (outdir / f"snapshot_{rec.iteration}.png").write_bytes(rec.snapshot)

    # final document
    artifact = result.artifact if result is not None else state.get("artifact")
    if artifact is not None:
        (outdir / "final.html").write_text(artifact.source, encoding="utf-8")

    return state
