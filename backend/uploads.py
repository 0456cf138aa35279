"""
Upload pipeline for untrusted images.

received -> validated -> transformed -> committed, or rejected at any step.

The staged temporary file belongs to the pipeline from the moment ``process``
is called: it is removed on every exit path, and a partially written output
is removed when a later step fails. Stored files get a fresh random name and
an extension taken from the decoded format, and their pixels are re-encoded
into a new image so no EXIF block or embedded profile survives.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from PIL import Image, ImageOps

from errors import BadRequestError
from settings import Settings

logger = logging.getLogger(__name__)

FORMAT_EXTENSIONS = {
    "PNG": ".png",
    "JPEG": ".jpg",
    "GIF": ".gif",
    "WEBP": ".webp",
}

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_RESERVED_DEVICE_NAMES = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])$", re.IGNORECASE)


@dataclass(frozen=True)
class UploadArtifact:
    temporary_path: str
    declared_mime_type: str
    declared_size: int
    original_name: str


@dataclass(frozen=True)
class StoredUpload:
    file_name: str
    original_name: str

    def to_dict(self):
        return {"fileName": self.file_name, "originalName": self.original_name}


def is_filename_safe(filename: str) -> bool:
    if not filename or filename.strip() in {".", ".."}:
        return False
    if _UNSAFE_FILENAME_CHARS.search(filename):
        return False
    stem = filename.split(".", 1)[0].strip()
    return not _RESERVED_DEVICE_NAMES.match(stem)


def discard_file(path: Optional[str]) -> None:
    """Best-effort unlink; failures are logged and never raised."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Unable to remove upload artifact %s: %s", path, exc)


def stage_upload(file_storage, temp_folder: str) -> Optional[UploadArtifact]:
    """Write a multipart ``FileStorage`` to a uniquely named temporary file."""
    if file_storage is None or not getattr(file_storage, "filename", ""):
        return None
    os.makedirs(temp_folder, exist_ok=True)
    temporary_path = os.path.join(temp_folder, f"{uuid4().hex}.upload")
    try:
        file_storage.save(temporary_path)
    except OSError:
        discard_file(temporary_path)
        raise
    return UploadArtifact(
        temporary_path=temporary_path,
        declared_mime_type=(file_storage.mimetype or "").lower(),
        declared_size=os.path.getsize(temporary_path),
        original_name=file_storage.filename,
    )


def _strip_metadata(image: Image.Image) -> Image.Image:
    """Copy only the pixels (and palette) into a fresh image."""
    oriented = ImageOps.exif_transpose(image)
    clean = Image.new(oriented.mode, oriented.size)
    if oriented.mode in ("P", "PA"):
        clean.putpalette(oriented.getpalette())
    clean.paste(oriented)
    return clean


class UploadPipeline:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.upload_folder = settings.upload_folder

    def validate(self, artifact: Optional[UploadArtifact]) -> UploadArtifact:
        settings = self.settings
        if artifact is None:
            raise BadRequestError("No file uploaded.")
        if artifact.declared_mime_type not in settings.allowed_image_types:
            raise BadRequestError("Unsupported file type.")
        if not is_filename_safe(artifact.original_name):
            raise BadRequestError("Invalid file name.")
        if artifact.declared_size < settings.min_upload_bytes:
            raise BadRequestError(
                f"File must be at least {settings.min_upload_bytes} bytes."
            )
        if artifact.declared_size > settings.max_upload_bytes:
            raise BadRequestError(
                f"File must not exceed {settings.max_upload_bytes} bytes."
            )
        return artifact

    def decode(self, artifact: UploadArtifact):
        """Decode the staged file and return metadata-free pixels plus save options."""
        try:
            with Image.open(artifact.temporary_path) as source:
                source.load()
                detected_format = source.format
                width, height = source.size
                if not width or not height or detected_format not in FORMAT_EXTENSIONS:
                    raise BadRequestError("invalid image")

                clean = _strip_metadata(source)
                save_kwargs = {"format": detected_format}
                transparency = source.info.get("transparency")
                if transparency is not None and detected_format in ("PNG", "GIF"):
                    save_kwargs["transparency"] = transparency
        except (Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
            # Unidentified, truncated and corrupt data all land here.
            logger.warning("Rejected undecodable upload %s: %s", artifact.original_name, exc)
            raise BadRequestError("invalid image")
        return clean, save_kwargs

    def transform(self, artifact: UploadArtifact) -> str:
        """Re-encode the decoded pixels under a fresh name in the upload folder."""
        clean, save_kwargs = self.decode(artifact)

        os.makedirs(self.upload_folder, exist_ok=True)
        file_name = f"{uuid4().hex}{FORMAT_EXTENSIONS[save_kwargs['format']]}"
        destination = os.path.join(self.upload_folder, file_name)
        try:
            clean.save(destination, **save_kwargs)
        except Exception:
            discard_file(destination)
            raise
        return file_name

    def process(self, artifact: Optional[UploadArtifact]) -> StoredUpload:
        try:
            self.validate(artifact)
            file_name = self.transform(artifact)
        finally:
            if artifact is not None:
                discard_file(artifact.temporary_path)
        return StoredUpload(file_name=file_name, original_name=artifact.original_name)
