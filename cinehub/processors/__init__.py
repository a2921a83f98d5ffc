from .mirror import ImageMirrorProcessor  # noqa: F401

__all__ = ["ImageMirrorProcessor"]
