from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from . import markup
from .config import PipelineConfig
from .errors import AssemblyError
from .healing import HealingOrchestrator, ProgressCallback
from .nodes import archive, assets, builder, surveyor
from .nodes.critic import GeminiCritic
from .nodes.render import get_renderer
from .schema import BuildArtifact
from .state import AppState

logger = logging.getLogger(__name__)


def run_pipeline(
    state: AppState,
    *,
    cancel: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> AppState:
    # ensure outdir
    outdir = Path(state.get("outdir") or _default_outdir())
    outdir.mkdir(parents=True, exist_ok=True)
    state["outdir"] = str(outdir)

    cfg = state.get("config") or PipelineConfig.from_env()
    if cfg.assets.asset_dir is None:
        # handles stay relative to the run directory, where final.html is written
        located = {"asset_dir": str(outdir / "assets"), "handle_root": str(outdir)}
        cfg = cfg.model_copy(update={"assets": cfg.assets.model_copy(update=located)})
    state["config"] = cfg

    if not state.get("references"):
        raise ValueError("at least one reference image is required")

    # 1) survey -> 2) assets -> 3) build -> 4) heal -> 5) archive
    state = surveyor.run(state)
    state = assets.run(state)
    try:
        state = builder.run(state)
    except AssemblyError as e:
        logger.warning("initial assembly failed (%s); starting from deterministic markup", e)
        source = markup.render_document(state["manifests"], state.get("assets", {}))
        used = frozenset(markup.referenced_assets(source, state.get("assets", {}).values()))
        state["artifact"] = BuildArtifact(source=source, bound_assets=used, revision=0)

    state = _heal(state, cancel=cancel, on_progress=on_progress)
    state = archive.run(state)
    return state


def _heal(
    state: AppState,
    *,
    cancel: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> AppState:
    cfg = state["config"]
    healing = cfg.healing
    orchestrator = HealingOrchestrator(
        renderer=get_renderer(healing.renderer, healing.render_timeout_seconds, base_dir=state["outdir"]),
        critic=GeminiCritic(threshold=healing.convergence_threshold, timeout=healing.critique_timeout_seconds),
        config=healing,
        build_config=cfg.build,
        assets=state.get("assets", {}),
        instruction=state.get("instruction", ""),
        cancel=cancel,
        on_progress=on_progress,
    )
    # the primary reference is the visual target
    state["result"] = orchestrator.run(state["artifact"], state["references"][0], state["manifests"])
    return state


def _default_outdir() -> str:
    return f"artifacts/run_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
