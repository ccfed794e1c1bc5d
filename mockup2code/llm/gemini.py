from __future__ import annotations

import base64
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load .env if present to populate environment variables
load_dotenv()  # searches for .env in CWD/parents


def _get_api_key() -> Optional[str]:
    key = os.getenv("GEMINI_API_KEY")
    if key:
        return key
    # Optional: read from ~/.config/gemini/api_key
    cfg_path = Path.home() / ".config" / "gemini" / "api_key"
    try:
        if cfg_path.exists():
            return cfg_path.read_text().strip() or None
    except OSError:
        logger.debug("cannot read %s", cfg_path, exc_info=True)
    return None


def is_offline() -> bool:
    return _get_api_key() is None


def call_gemini(kind: str, **kwargs) -> Dict[str, Any]:
    """Unified entry for Gemini calls.

    kind: one of {"survey", "critique", "image_generate", "assemble"}
    kwargs: payload for the corresponding action

    Without an API key every kind falls back to a deterministic local
    stand-in so the pipeline remains runnable offline. With a key, service
    errors surface to the caller.
    """
    api_key = _get_api_key()
    if not api_key:
        return _local_placeholder(kind, **kwargs)
    return _real_gemini(kind, api_key=api_key, **kwargs)


# ------------------------- Local placeholders -------------------------


def _local_placeholder(kind: str, **kwargs) -> Dict[str, Any]:
    from .. import imaging

    if kind == "survey":
        canvas = kwargs.get("canvas") or imaging.measure_canvas(kwargs["reference"])
        payload = {
            "canvas": {"width": canvas.width, "height": canvas.height, "background": canvas.background},
            "dom_tree": {
                "id": "root",
                "type": "div",
                "styles": {
                    "width": f"{canvas.width}px",
                    "minHeight": f"{canvas.height}px",
                    "backgroundColor": canvas.background,
                    "display": "flex",
                    "flexDirection": "column",
                },
                "children": [
                    {
                        "id": "surface",
                        "type": "section",
                        "styles": {"flex": "1", "backgroundColor": canvas.background},
                        "bounds": {"top": 0, "left": 0, "width": 100, "height": 100},
                    }
                ],
            },
            "assets_needed": [],
        }
        return {"text": json.dumps(payload)}

    if kind == "critique":
        snapshot: bytes = kwargs["snapshot"]
        ref = kwargs["reference"]
        overall, color, layout = imaging.similarity(snapshot, ref.data)
        payload = {
            "fidelityScore": round(overall * 100, 2),
            "dimensions": {
                "layout": round(layout * 100, 2),
                "color": round(color * 100, 2),
                "typography": round(layout * 100, 2),
                "spacing": round(layout * 100, 2),
            },
            "overallAssessment": "local pixel comparison",
            "discrepancies": [],
        }
        return {"text": json.dumps(payload)}

    if kind == "image_generate":
        prompt: str = kwargs.get("prompt", "")
        out_path = Path(kwargs["out_path"])
        target = kwargs.get("target", "texture")
        img = imaging.placeholder_object(prompt) if target == "object" else imaging.placeholder_texture(prompt)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(imaging.encode_png(img))
        return {"path": str(out_path), "mime": "image/png"}

    if kind == "assemble":
        from .. import markup

        html = markup.render_document(kwargs.get("manifests", []), kwargs.get("assets", {}))
        return {"text": html}

    raise ValueError(f"Unsupported kind={kind}")


# ------------------------- Real Google GenAI calls -------------------------


def _real_gemini(kind: str, *, api_key: str, **kwargs) -> Dict[str, Any]:
    import google.generativeai as genai

    genai.configure(api_key=api_key)

    # Model names are configurable via env with safe defaults.
    text_model_name = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
    pro_model_name = os.getenv("GEMINI_PRO_MODEL", "gemini-1.5-pro")
    image_model_name = os.getenv("GEMINI_IMAGE_MODEL", "")  # e.g. "gemini-2.5-flash-image"
    timeout = float(kwargs.get("timeout", 120))

    if kind == "survey":
        ref = kwargs["reference"]
        prompt: str = kwargs["prompt"]
        uploaded = _upload_reference(
            genai,
            ref,
            wait=float(kwargs.get("upload_wait", 60)),
            poll=float(kwargs.get("poll_interval", 1.0)),
        )
        try:
            model = genai.GenerativeModel(pro_model_name)
            resp = model.generate_content(
                [uploaded, prompt],
                generation_config={"response_mime_type": "application/json"},
                request_options={"timeout": timeout},
            )
            return {"text": _first_text(resp)}
        finally:
            try:
                genai.delete_file(uploaded.name)
            except Exception:
                logger.warning("could not delete uploaded file %s", uploaded.name, exc_info=True)

    if kind == "critique":
        snapshot: bytes = kwargs["snapshot"]
        ref = kwargs["reference"]
        prompt = kwargs["prompt"]
        model = genai.GenerativeModel(text_model_name)
        resp = model.generate_content(
            [
                {"text": prompt},
                ref.part(),
                {"mime_type": "image/png", "data": snapshot},
            ],
            generation_config={"response_mime_type": "application/json"},
            request_options={"timeout": timeout},
        )
        return {"text": _first_text(resp)}

    if kind == "image_generate":
        prompt = kwargs["prompt"]
        out_path = Path(kwargs["out_path"])
        if not image_model_name:
            raise ValueError(
                "GEMINI_IMAGE_MODEL is not set. Please set it to a valid image model "
                "(e.g., 'gemini-2.5-flash-image' or 'gemini-2.5-flash-image-preview')."
            )
        mdl = genai.GenerativeModel(model_name=image_model_name)
        resp = mdl.generate_content(prompt, request_options={"timeout": timeout})
        img_bytes, mime = _first_image_bytes(resp)
        if not img_bytes:
            raise ValueError(f"image model did not return image bytes: {str(resp)[:200]}")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(img_bytes)
        return {"path": str(out_path), "mime": mime}

    if kind == "assemble":
        prompt = kwargs["prompt"]
        model = genai.GenerativeModel(pro_model_name)
        resp = model.generate_content(prompt, request_options={"timeout": timeout})
        return {"text": _first_text(resp)}

    raise ValueError(f"Unsupported kind={kind}")


def _upload_reference(genai: Any, ref: Any, *, wait: float, poll: float) -> Any:
    import io

    uploaded = genai.upload_file(io.BytesIO(ref.data), mime_type=ref.mime_type, display_name=ref.name)
    deadline = time.monotonic() + wait
    while getattr(uploaded.state, "name", "") == "PROCESSING":
        if time.monotonic() >= deadline:
            genai.delete_file(uploaded.name)
            raise TimeoutError(f"upload of {ref.name} still processing after {wait:.0f}s")
        time.sleep(poll)
        uploaded = genai.get_file(uploaded.name)
    if getattr(uploaded.state, "name", "") == "FAILED":
        raise ValueError(f"upload of {ref.name} failed")
    return uploaded


def _first_text(resp: Any) -> str:
    try:
        if hasattr(resp, "text"):
            return resp.text
    except ValueError:
        # .text raises when the candidate has no text part
        pass
    # Some SDK versions: candidates[0].content.parts[0].text
    cands = getattr(resp, "candidates", None) or []
    if cands:
        content = getattr(cands[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "text", None):
                return part.text
    return ""


def _first_image_bytes(resp: Any) -> tuple[bytes | None, str]:
    # resp.candidates[].content.parts[].inline_data
    for c in getattr(resp, "candidates", None) or []:
        content = getattr(c, "content", None)
        parts = getattr(content, "parts", None) if content else None
        for part in parts or []:
            inline = getattr(part, "inline_data", None)
            if inline and getattr(inline, "data", None):
                data = inline.data
                mime = getattr(inline, "mime_type", "image/png")
                if isinstance(data, bytes):
                    return data, mime
                # some versions may base64-encode
                return base64.b64decode(data), mime
    return None, ""
