"""Data contracts shared by every pipeline stage.

Nothing here talks to a model or touches pixels. The Surveyor produces
``VisualManifest`` objects, the asset resolver turns their ``AssetRequest``s
into ``ResolvedAsset``s, the builder emits ``BuildArtifact``s and the critique
step returns ``FidelityReport``s.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Dict, FrozenSet, Iterator, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

FALLBACK_CANVAS_WIDTH = 1440
FALLBACK_CANVAS_HEIGHT = 900


@dataclass(frozen=True)
class ReferenceImage:
    """User-supplied visual target. Read-only for the whole run."""

    data: bytes
    mime_type: str = "image/png"
    name: str = "reference.png"

    @classmethod
    def from_path(cls, path: str | Path) -> "ReferenceImage":
        p = Path(path)
        suffix = p.suffix.lower()
        mime = {
            ".png": "image/png",
            ".jpg": "image/jpeg",
            ".jpeg": "image/jpeg",
            ".webp": "image/webp",
            ".gif": "image/gif",
        }.get(suffix, "image/png")
        return cls(data=p.read_bytes(), mime_type=mime, name=p.name)

    def part(self) -> Dict[str, object]:
        # google-generativeai accepts dict with mime_type and data bytes for images
        return {"mime_type": self.mime_type, "data": self.data}


# ------------------------------------------------------------------ geometry


class Bounds(BaseModel):
    """Percentage box (0-100) relative to the reference image.

    Values are stored as received; clamping and rejection happen at crop time.
    """

    model_config = ConfigDict(frozen=True)

    top: float
    left: float
    width: float
    height: float


class Canvas(BaseModel):
    width: int = Field(default=FALLBACK_CANVAS_WIDTH, ge=1)
    height: int = Field(default=FALLBACK_CANVAS_HEIGHT, ge=1)
    background: str = "#ffffff"
    source: Literal["measured", "fallback"] = "fallback"


# ------------------------------------------------------------------ dom tree


class InteractionStates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hover: Dict[str, str] = Field(default_factory=dict)
    active: Dict[str, str] = Field(default_factory=dict)
    focus: Dict[str, str] = Field(default_factory=dict)
    disabled: Dict[str, str] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.hover or self.active or self.focus or self.disabled)


class AssetIcon(BaseModel):
    """Icon extracted as pixels; ``asset`` names a crop request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["asset"] = "asset"
    asset: str


class SvgIcon(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["svg"] = "svg"
    path: str
    view_box: str = "0 0 24 24"
    color: Optional[str] = None


class LibraryIcon(BaseModel):
    """Generic glyph from the fixed catalogue (chevron, close, check, ...)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["library"] = "library"
    name: str


IconRef = Annotated[Union[AssetIcon, SvgIcon, LibraryIcon], Field(discriminator="kind")]


class DomNode(BaseModel):
    """One element of the reconstructed UI. Children are owned by value."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    type: str = "div"
    styles: Dict[str, str] = Field(default_factory=dict)
    text: Optional[str] = None
    states: Optional[InteractionStates] = None
    icon: Optional[IconRef] = None
    bounds: Optional[Bounds] = None
    # Real-world object the element depicts ("cloud", "stone"); drives the
    # shaped+textured rendering rule.
    looks_like: Optional[str] = None
    asset: Optional[str] = None
    children: List["DomNode"] = Field(default_factory=list)

    def walk(self, prefix: str = "") -> Iterator[Tuple[str, "DomNode"]]:
        """Yield ``(path, node)`` depth-first; paths are ids joined by '/'."""
        path = f"{prefix}/{self.id}" if prefix else self.id
        yield path, self
        for child in self.children:
            yield from child.walk(path)

    def find(self, ref: str) -> Optional["DomNode"]:
        """Resolve a node by full path, path suffix, or bare id."""
        ref = ref.strip().strip("/")
        if not ref:
            return None
        by_id: Optional[DomNode] = None
        for path, node in self.walk():
            if path == ref or path.endswith("/" + ref):
                return node
            if by_id is None and node.id == ref:
                by_id = node
        return by_id


# ------------------------------------------------------------------ assets


class CropSource(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["crop"] = "crop"
    bounds: Bounds
    source_index: int = Field(default=0, ge=0)


class GenerateSource(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["generate"] = "generate"
    prompt: str = Field(min_length=1)
    # object: full real-world object for shape masking; texture: tileable fill
    target: Literal["object", "texture"] = "texture"


class LibrarySource(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["library"] = "library"
    key: str = Field(min_length=1)


AssetMode = Annotated[Union[CropSource, GenerateSource, LibrarySource], Field(discriminator="kind")]


class AssetRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    mode: AssetMode


class ResolvedAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    mode: Literal["crop", "generate", "library"]
    fill: Literal["object", "texture"] = "object"
    handle: Optional[str] = None
    error: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.handle is not None

    @classmethod
    def unresolved(cls, request: AssetRequest, error: str) -> "ResolvedAsset":
        fill = request.mode.target if isinstance(request.mode, GenerateSource) else "object"
        return cls(name=request.name, mode=request.mode.kind, fill=fill, handle=None, error=error)


# ------------------------------------------------------------------ manifest


class VisualManifest(BaseModel):
    file_index: int = Field(default=0, ge=0)
    canvas: Canvas = Field(default_factory=Canvas)
    root: DomNode = Field(default_factory=lambda: DomNode(id="root"))
    assets: List[AssetRequest] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_tree(self) -> "VisualManifest":
        seen: set[str] = set()
        for _, node in self.root.walk():
            if node.id in seen:
                raise ValueError(f"duplicate node id in manifest: {node.id}")
            seen.add(node.id)
        names = [a.name for a in self.assets]
        if len(names) != len(set(names)):
            raise ValueError("duplicate asset request names in manifest")
        return self

    @classmethod
    def minimal(cls, file_index: int = 0, canvas: Optional[Canvas] = None) -> "VisualManifest":
        canvas = canvas or Canvas()
        root = DomNode(
            id="root",
            type="div",
            styles={"width": "100%", "minHeight": f"{canvas.height}px", "backgroundColor": canvas.background},
        )
        return cls(file_index=file_index, canvas=canvas, root=root, assets=[])

    def walk(self) -> Iterator[Tuple[str, DomNode]]:
        return self.root.walk()

    def find_node(self, ref: str) -> Optional[DomNode]:
        return self.root.find(ref)

    def is_minimal(self) -> bool:
        return not self.root.children and not self.assets


# ------------------------------------------------------------------ build / critique


class BuildArtifact(BaseModel):
    """Generated source for one revision. Superseded, never mutated."""

    model_config = ConfigDict(frozen=True)

    source: str
    bound_assets: FrozenSet[str] = frozenset()
    revision: int = Field(default=0, ge=0)
    origin: Literal["assembly", "patch"] = "assembly"


class DimensionScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    layout: float = Field(default=0.0, ge=0.0, le=1.0)
    color: float = Field(default=0.0, ge=0.0, le=1.0)
    typography: float = Field(default=0.0, ge=0.0, le=1.0)
    spacing: float = Field(default=0.0, ge=0.0, le=1.0)


class Discrepancy(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_path: str
    issue: str = "mismatch"
    severity: Literal["minor", "moderate", "critical"] = "moderate"
    property: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None


class FidelityReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall: float = Field(ge=0.0, le=1.0)
    dimensions: DimensionScores = Field(default_factory=DimensionScores)
    discrepancies: Tuple[Discrepancy, ...] = ()
    summary: str = ""
    recommendation: Literal["accept", "refine", "regenerate"] = "refine"
