from __future__ import annotations

from typing import Any, Dict, List, Optional, TypedDict

from .config import PipelineConfig
from .schema import BuildArtifact, ReferenceImage, ResolvedAsset, VisualManifest


class AppState(TypedDict, total=False):
    references: List[ReferenceImage]
    instruction: str
    prior_source: Optional[str]
    config: PipelineConfig
    manifests: List[VisualManifest]
    assets: Dict[str, ResolvedAsset]
    artifact: Optional[BuildArtifact]
    result: Any  # healing.HealingResult
    outdir: str
