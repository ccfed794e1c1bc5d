"""Configuration models for the pipeline stages."""

from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field


class SurveyConfig(BaseModel):
    """Vision analysis of reference images."""

    timeout_seconds: float = Field(default=120.0, gt=0.0)
    retries: int = Field(default=1, ge=0)
    upload_wait_seconds: float = Field(default=60.0, gt=0.0)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)
    max_workers: int = Field(default=4, ge=1)
    # Longest edge small references are upscaled to before analysis; 0 disables.
    min_image_dimension: int = Field(default=1920, ge=0)


class AssetConfig(BaseModel):
    """Crop / generate / library resolution."""

    timeout_seconds: float = Field(default=90.0, gt=0.0)
    retries: int = Field(default=1, ge=0)
    max_workers: int = Field(default=4, ge=1)
    # Where cropped and generated images are written; data URLs when unset.
    asset_dir: Optional[str] = None
    # Handles are written relative to this directory (the run directory).
    handle_root: Optional[str] = None


class BuildConfig(BaseModel):
    timeout_seconds: float = Field(default=180.0, gt=0.0)
    retries: int = Field(default=1, ge=0)


class HealingConfig(BaseModel):
    """Render/critique/fix loop budget. Threshold and max iterations are
    product-tuning constants, so both are exposed here rather than fixed."""

    convergence_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    max_iterations: int = Field(default=3, ge=1)
    critique_timeout_seconds: float = Field(default=90.0, gt=0.0)
    critique_retries: int = Field(default=1, ge=0)
    max_patches: int = Field(default=25, ge=1)
    renderer: Literal["playwright", "placeholder"] = "playwright"
    render_timeout_seconds: float = Field(default=30.0, gt=0.0)


class PipelineConfig(BaseModel):
    survey: SurveyConfig = Field(default_factory=SurveyConfig)
    assets: AssetConfig = Field(default_factory=AssetConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    healing: HealingConfig = Field(default_factory=HealingConfig)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        workers = int(os.getenv("M2C_CONCURRENCY", "4"))
        healing = HealingConfig(
            convergence_threshold=float(os.getenv("M2C_THRESHOLD", "0.9")),
            max_iterations=int(os.getenv("M2C_MAX_ITERATIONS", "3")),
            renderer=os.getenv("M2C_RENDERER", "playwright"),
        )
        return cls(
            survey=SurveyConfig(
                max_workers=workers,
                min_image_dimension=int(os.getenv("M2C_MIN_IMAGE_DIMENSION", "1920")),
            ),
            assets=AssetConfig(max_workers=workers),
            healing=healing,
        )
