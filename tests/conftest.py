import io

import pytest
from PIL import Image, ImageDraw

from mockup2code.llm import gemini
from mockup2code.schema import ReferenceImage


@pytest.fixture(autouse=True)
def offline(monkeypatch):
    """Every test runs against the local placeholders, whatever the machine has configured."""
    monkeypatch.setattr(gemini, "_get_api_key", lambda: None)


def make_reference(width: int = 1000, height: int = 800, name: str = "reference.png") -> ReferenceImage:
    img = Image.new("RGB", (width, height), (245, 246, 250))
    draw = ImageDraw.Draw(img)
    draw.rectangle((0, 0, width, height // 10), fill=(30, 41, 59))
    draw.rectangle((width // 10, height // 4, width // 2, height // 2), fill=(59, 130, 246))
    draw.ellipse((int(width * 0.6), int(height * 0.3), int(width * 0.8), int(height * 0.5)), fill=(234, 179, 8))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return ReferenceImage(data=buf.getvalue(), mime_type="image/png", name=name)


@pytest.fixture
def reference() -> ReferenceImage:
    return make_reference()


@pytest.fixture
def reference_factory():
    return make_reference
