from __future__ import annotations


class Mockup2CodeError(Exception):
    """Base class for pipeline errors."""


class ReferenceDecodeError(Mockup2CodeError):
    """The reference image bytes cannot be decoded as an image."""


class InvalidCropBounds(Mockup2CodeError):
    """Crop bounds are NaN or collapse to zero area inside the image."""


class AssetResolutionError(Mockup2CodeError):
    pass


class AssemblyError(Mockup2CodeError):
    """The assembly response did not contain a usable document."""


class CritiqueError(Mockup2CodeError):
    pass


class RenderError(Mockup2CodeError):
    pass


class InvalidTransition(Mockup2CodeError):
    pass
