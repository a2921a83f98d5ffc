from .cloudinary import CloudinaryHost, ImageHost, UploadOptions, upload_options_for  # noqa: F401
from .origin import FetchedImage, ImageSource, OriginImageSource  # noqa: F401

__all__ = [
    "CloudinaryHost",
    "ImageHost",
    "UploadOptions",
    "upload_options_for",
    "FetchedImage",
    "ImageSource",
    "OriginImageSource",
]
