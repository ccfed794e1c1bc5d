from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .config import PipelineConfig
from .errors import ReferenceDecodeError
from .graph import run_pipeline
from .imaging import open_reference
from .schema import ReferenceImage
from .state import AppState


def main() -> None:
    parser = argparse.ArgumentParser(description="Screenshot to self-healing UI source")
    parser.add_argument("--image", action="append", required=True, help="Reference image (repeatable; first is the visual target)")
    parser.add_argument("--instructions", type=str, default="", help="Extra build instructions")
    parser.add_argument("--prior", type=str, default="", help="Existing HTML source to edit in place")
    parser.add_argument("--max-iterations", type=int, default=None, help="Healing iteration budget")
    parser.add_argument("--threshold", type=float, default=None, help="Convergence threshold in [0, 1]")
    parser.add_argument("--outdir", type=str, default="", help="Output directory (optional)")
    parser.add_argument("--renderer", choices=["playwright", "placeholder"], default=None, help="Snapshot renderer")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    references = []
    for p in args.image:
        path = Path(p)
        if not path.exists():
            raise SystemExit(f"Image not found: {path}")
        ref = ReferenceImage.from_path(path)
        try:
            open_reference(ref)
        except ReferenceDecodeError as e:
            raise SystemExit(f"{path}: {e}")
        references.append(ref)

    cfg = PipelineConfig.from_env()
    updates = {}
    if args.max_iterations is not None:
        updates["max_iterations"] = args.max_iterations
    if args.threshold is not None:
        updates["convergence_threshold"] = args.threshold
    if args.renderer:
        updates["renderer"] = args.renderer
    if updates:
        # validate through the model so CLI values obey the same bounds as env values
        healing = type(cfg.healing).model_validate({**cfg.healing.model_dump(), **updates})
        cfg = cfg.model_copy(update={"healing": healing})

    state: AppState = {
        "references": references,
        "instruction": args.instructions,
        "config": cfg,
        "outdir": args.outdir or "",
    }
    if args.prior:
        prior = Path(args.prior)
        if not prior.exists():
            raise SystemExit(f"Prior source not found: {prior}")
        state["prior_source"] = prior.read_text(encoding="utf-8")

    final_state = run_pipeline(state)
    result = final_state["result"]
    score = f"{result.score:.3f}" if result.score is not None else "n/a"
    print(f"Healing {result.state.value} after {result.iterations} iterations (score {score})")
    print(f"Artifacts saved under: {final_state['outdir']}")


if __name__ == "__main__":
    main()
