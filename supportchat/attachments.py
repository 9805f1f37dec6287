"""
Attachment resolution for outgoing messages.

Checks a local file against the size ceiling and packages it as the
multipart part the backend expects. Uploaded attachments come back on
messages as a server-relative path; turning that into a fetchable URL is
left to the caller via ``resolve_attachment_url``.
"""
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

from supportchat.config import MAX_ATTACHMENT_BYTES
from supportchat.errors import AttachmentTooLarge, ChatValidationError

logger = logging.getLogger(__name__)

# Multipart field name used by every message endpoint
UPLOAD_FIELD = "image"


@dataclass(frozen=True)
class PreparedUpload:
    filename: str
    data: bytes
    mime_type: str

    def as_files(self) -> dict:
        return {UPLOAD_FIELD: (self.filename, self.data, self.mime_type)}


def check_size(size: int, limit: int | None = None) -> None:
    limit = MAX_ATTACHMENT_BYTES if limit is None else limit
    if size > limit:
        raise AttachmentTooLarge(size=size, limit=limit)


def prepare_upload(path: str | Path, limit: int | None = None) -> PreparedUpload:
    """Validate a local file and read it for upload.

    Raises ChatValidationError when the file is missing and AttachmentTooLarge
    when it exceeds the ceiling. The size is checked before the file is read.
    """
    p = Path(path)
    if not p.is_file():
        raise ChatValidationError(f"Attachment not found: {p}")
    check_size(p.stat().st_size, limit)
    mime_type = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
    data = p.read_bytes()
    logger.debug(f"Prepared attachment {p.name} ({len(data)} bytes, {mime_type})")
    return PreparedUpload(filename=p.name, data=data, mime_type=mime_type)


def resolve_attachment_url(base_url: str, file_path: str) -> str:
    if file_path.startswith(("http://", "https://")):
        return file_path
    return f"{base_url.rstrip('/')}/{file_path.lstrip('/')}"
