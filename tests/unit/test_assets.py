import base64
import io
import math
from pathlib import Path

from PIL import Image

from mockup2code.config import AssetConfig
from mockup2code.nodes import assets
from mockup2code.schema import (
    AssetRequest,
    Bounds,
    CropSource,
    DomNode,
    GenerateSource,
    LibrarySource,
    VisualManifest,
)

FAST = AssetConfig(timeout_seconds=5.0, retries=0)


def _crop(name: str, top: float, left: float, width: float, height: float, index: int = 0) -> AssetRequest:
    return AssetRequest(
        name=name,
        mode=CropSource(bounds=Bounds(top=top, left=left, width=width, height=height), source_index=index),
    )


def _image_from_handle(handle: str) -> Image.Image:
    if handle.startswith("data:"):
        data = base64.b64decode(handle.split(",", 1)[1])
    else:
        data = Path(handle).read_bytes()
    return Image.open(io.BytesIO(data))


def test_crop_uses_rounded_percent_box(reference) -> None:
    resolved = assets.resolve_request(_crop("hero", 10, 40, 20, 15), [reference], config=FAST)

    assert resolved.resolved
    assert resolved.mode == "crop"
    img = _image_from_handle(resolved.handle)
    assert img.format == "PNG"
    assert img.size == (200, 120)


def test_crop_is_deterministic(reference, tmp_path) -> None:
    cfg = AssetConfig(asset_dir=str(tmp_path))
    first = assets.resolve_request(_crop("hero", 10, 40, 20, 15), [reference], config=cfg)
    second = assets.resolve_request(_crop("hero", 10, 40, 20, 15), [reference], config=cfg)

    assert first.handle == second.handle
    assert Path(first.handle).parent == tmp_path
    assert len(list(tmp_path.iterdir())) == 1

    inline_a = assets.resolve_request(_crop("hero", 10, 40, 20, 15), [reference], config=FAST)
    inline_b = assets.resolve_request(_crop("hero", 10, 40, 20, 15), [reference], config=FAST)
    assert inline_a.handle == inline_b.handle
    assert base64.b64decode(inline_a.handle.split(",", 1)[1]) == Path(first.handle).read_bytes()


def test_handles_are_relative_to_the_run_directory(reference, tmp_path) -> None:
    cfg = AssetConfig(asset_dir=str(tmp_path / "assets"), handle_root=str(tmp_path))

    resolved = assets.resolve_request(_crop("hero", 10, 40, 20, 15), [reference], config=cfg)

    assert resolved.handle.startswith("assets/hero_")
    assert resolved.handle.endswith(".png")
    assert (tmp_path / resolved.handle).is_file()


def test_out_of_range_crop_is_clamped(reference) -> None:
    resolved = assets.resolve_request(_crop("edge", 90, 90, 50, 50), [reference], config=FAST)

    assert _image_from_handle(resolved.handle).size == (100, 80)


def test_invalid_crops_are_unresolved_not_fatal(reference) -> None:
    requests = [
        _crop("zero", 10, 10, 0, 10),
        _crop("outside", 10, 150, 20, 20),
        _crop("nan", math.nan, 10, 10, 10),
        _crop("no-source", 10, 10, 10, 10, index=3),
        _crop("fine", 0, 0, 10, 10),
    ]

    out = assets.resolve_assets(requests, [reference], config=FAST)

    assert [name for name, a in out.items() if not a.resolved] == ["zero", "outside", "nan", "no-source"]
    assert out["fine"].resolved
    assert all(out[n].error for n in ("zero", "outside", "nan", "no-source"))


def test_library_resolves_without_network(monkeypatch) -> None:
    def _no_network(kind, **kwargs):
        raise AssertionError("library assets must not call the service")

    monkeypatch.setattr(assets, "call_gemini", _no_network)

    out = assets.resolve_assets(
        [
            AssetRequest(name="x", mode=LibrarySource(key="close")),
            AssetRequest(name="more", mode=LibrarySource(key="ChevronDown")),
            AssetRequest(name="bird", mode=LibrarySource(key="twitter")),
        ],
        [],
        config=FAST,
    )

    assert out["x"].handle == "library:close"
    assert out["more"].handle == "library:chevron-down"
    assert not out["bird"].resolved


def test_object_and_texture_prompts_differ() -> None:
    ctx = assets.AestheticContext(color_scheme=("#87ceeb",), style_keywords=("playful",))

    obj = assets.asset_prompt(GenerateSource(prompt="fluffy cloud", target="object"), ctx)
    tex = assets.asset_prompt(GenerateSource(prompt="fluffy cloud", target="texture"), ctx)

    assert obj != tex
    assert "ENTIRE object" in obj and "white background" in obj
    assert "TILEABLE" in tex and "SEAMLESS" in tex
    assert "#87ceeb" in obj and "#87ceeb" in tex
    assert "playful" in tex


def test_generate_offline_writes_png(tmp_path) -> None:
    cfg = AssetConfig(asset_dir=str(tmp_path), timeout_seconds=10.0, retries=0)
    out = assets.resolve_assets(
        [
            AssetRequest(name="cloud", mode=GenerateSource(prompt="cloud", target="object")),
            AssetRequest(name="grass", mode=GenerateSource(prompt="grass", target="texture")),
        ],
        [],
        config=cfg,
    )

    assert out["cloud"].fill == "object"
    assert out["grass"].fill == "texture"
    for a in out.values():
        assert a.mode == "generate"
        assert Path(a.handle).exists()
        assert Image.open(a.handle).format == "PNG"


def test_one_failed_generation_does_not_fail_the_batch(reference, monkeypatch) -> None:
    real = assets.call_gemini

    def _flaky(kind, **kwargs):
        if "lava" in kwargs.get("prompt", ""):
            raise RuntimeError("quota exceeded")
        return real(kind, **kwargs)

    monkeypatch.setattr(assets, "call_gemini", _flaky)

    out = assets.resolve_assets(
        [
            AssetRequest(name="lava", mode=GenerateSource(prompt="lava", target="texture")),
            AssetRequest(name="moss", mode=GenerateSource(prompt="moss", target="texture")),
            _crop("logo", 0, 0, 10, 10),
        ],
        [reference],
        config=FAST,
    )

    assert not out["lava"].resolved
    assert "quota exceeded" in out["lava"].error
    assert out["moss"].resolved
    assert out["logo"].resolved


def test_crop_wins_over_generated_asset_of_the_same_name(reference) -> None:
    requests = [
        AssetRequest(name="hero", mode=GenerateSource(prompt="a hero image")),
        _crop("hero", 10, 40, 20, 15),
    ]

    chosen = assets.apply_precedence(requests)

    assert len(chosen) == 1
    assert isinstance(chosen[0].mode, CropSource)
    assert assets.resolve_assets(requests, [reference], config=FAST)["hero"].mode == "crop"


def test_aesthetic_context_collects_palette_and_keywords() -> None:
    root = DomNode(
        id="root",
        styles={"backgroundColor": "#112233"},
        children=[
            DomNode(id="a", styles={"color": "#112233", "backgroundImage": "linear-gradient(#abcdef, #fff)"}),
            DomNode(id="b", looks_like="stone"),
        ],
    )
    manifest = VisualManifest(root=root)

    ctx = assets.AestheticContext.from_manifests([manifest], "make it feel minimalist")

    assert ctx.color_scheme[0] == "#112233"
    assert "#abcdef" in ctx.color_scheme
    assert ctx.style_keywords[0] == "stone"
    assert "minimalist" in ctx.style_keywords
