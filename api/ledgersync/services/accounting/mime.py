"""
Attachment file-type handling. Pure functions, no I/O.

Stored MIME types are unreliable (uploads often arrive as
``application/octet-stream``), so the type is resolved in layers:

    1. stored type, when it is a concrete, known type
    2. file extension, case-insensitive
    3. magic bytes sniffed from the content

The first layer that identifies a type decides; the result must then be
accepted by the provider.
"""
import re
from dataclasses import dataclass

MB = 1024 * 1024

_PDF = "application/pdf"
_JPEG = "image/jpeg"
_PNG = "image/png"
_GIF = "image/gif"
_TIFF = "image/tiff"
_BMP = "image/bmp"
_WEBP = "image/webp"


@dataclass(frozen=True)
class AttachmentConfig:
    supported_types: frozenset[str]
    max_size_bytes: int


PROVIDER_ATTACHMENT_CONFIG: dict[str, AttachmentConfig] = {
    "fortnox": AttachmentConfig(frozenset({_PDF, _JPEG, _PNG}), 10 * MB),
    "xero": AttachmentConfig(frozenset({_PDF, _JPEG, _PNG, _GIF}), 3 * MB),
    "quickbooks": AttachmentConfig(frozenset({_PDF, _JPEG, _PNG, _GIF, _TIFF, _BMP}), 20 * MB),
}

DEFAULT_ATTACHMENT_CONFIG = AttachmentConfig(frozenset({_PDF, _JPEG, _PNG}), 10 * MB)

_EXTENSION_TYPES = {
    "pdf": _PDF,
    "jpg": _JPEG,
    "jpeg": _JPEG,
    "png": _PNG,
    "gif": _GIF,
    "tif": _TIFF,
    "tiff": _TIFF,
    "bmp": _BMP,
    "webp": _WEBP,
}

_KNOWN_TYPES = frozenset(_EXTENSION_TYPES.values())

_TYPE_ALIASES = {"image/jpg": _JPEG, "image/pjpeg": _JPEG, "image/x-png": _PNG}

# MIME type → extension, used when a file name lacks one
_TYPE_EXTENSIONS = {
    _PDF: "pdf",
    _JPEG: "jpg",
    _PNG: "png",
    _GIF: "gif",
    _TIFF: "tiff",
    _BMP: "bmp",
    _WEBP: "webp",
    "text/plain": "txt",
    "text/csv": "csv",
}

_EXTENSION_PATTERN = re.compile(r"\.[A-Za-z0-9]{2,5}$")


def get_attachment_config(provider: str) -> AttachmentConfig:
    return PROVIDER_ATTACHMENT_CONFIG.get(provider, DEFAULT_ATTACHMENT_CONFIG)


@dataclass
class MimeResolution:
    mime_type: str | None
    source: str             # stored | extension | buffer | failed
    error: str | None = None


def _normalize(mime_type: str | None) -> str | None:
    if not mime_type:
        return None
    value = mime_type.split(";")[0].strip().lower()
    return _TYPE_ALIASES.get(value, value)


def _from_extension(file_name: str | None) -> str | None:
    if not file_name or "." not in file_name:
        return None
    return _EXTENSION_TYPES.get(file_name.rsplit(".", 1)[1].lower())


def detect_mime_from_bytes(content: bytes) -> str | None:
    """Identify a file type from its leading magic bytes."""
    if content.startswith(b"%PDF"):
        return _PDF
    if content.startswith(b"\xff\xd8\xff"):
        return _JPEG
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return _PNG
    if content.startswith((b"GIF87a", b"GIF89a")):
        return _GIF
    if content.startswith((b"II*\x00", b"MM\x00*")):
        return _TIFF
    if content.startswith(b"RIFF") and content[8:12] == b"WEBP":
        return _WEBP
    if content.startswith(b"BM"):
        return _BMP
    return None


def resolve_mime_type(
    stored_type: str | None,
    file_name: str | None,
    content: bytes,
    provider: str,
) -> MimeResolution:
    config = get_attachment_config(provider)

    stored = _normalize(stored_type)
    if stored in _KNOWN_TYPES:
        mime_type, source = stored, "stored"
    elif (by_extension := _from_extension(file_name)) is not None:
        mime_type, source = by_extension, "extension"
    elif (by_content := detect_mime_from_bytes(content)) is not None:
        mime_type, source = by_content, "buffer"
    else:
        return MimeResolution(None, "failed", "Could not determine file type")

    if mime_type not in config.supported_types:
        return MimeResolution(None, "failed", f"File type {mime_type} is not supported by {provider}")
    return MimeResolution(mime_type, source)


def ensure_file_extension(file_name: str, mime_type: str) -> str:
    """Give ``file_name`` an extension matching ``mime_type`` unless it already has one."""
    if _EXTENSION_PATTERN.search(file_name):
        return file_name
    base = file_name.rstrip(".")
    extension = _TYPE_EXTENSIONS.get(_normalize(mime_type) or "", "pdf")
    return f"{base}.{extension}"
