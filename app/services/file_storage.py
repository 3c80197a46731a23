"""Invoice document store: file validation plus metadata on local disk."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotFoundError, ValidationError
from app.models.stored_file import StoredFile
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)

SAFE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,99}$")
SAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._ -]+")

MAGIC_BYTES: dict[str, list[bytes]] = {
    ".pdf": [b"%PDF"],
    ".doc": [b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"],
    ".docx": [b"PK\x03\x04"],
    ".xls": [b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"],
    ".xlsx": [b"PK\x03\x04"],
    ".jpg": [b"\xff\xd8\xff"],
    ".jpeg": [b"\xff\xd8\xff"],
    ".png": [b"\x89PNG\r\n\x1a\n"],
}


@dataclass(frozen=True)
class FileDomainConfig:
    prefix: str
    max_size_bytes: int
    allowed_mime_types: frozenset[str]
    allowed_extensions: frozenset[str]
    require_magic_bytes: bool = False


INVOICE_DOCUMENTS = FileDomainConfig(
    prefix="invoices",
    max_size_bytes=10 * 1024 * 1024,
    allowed_mime_types=frozenset(
        {
            "application/pdf",
            "image/jpeg",
            "image/png",
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/vnd.ms-excel",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        }
    ),
    allowed_extensions=frozenset(
        {".pdf", ".jpg", ".jpeg", ".png", ".doc", ".docx", ".xls", ".xlsx"}
    ),
    require_magic_bytes=True,
)


def _sanitize_filename(filename: str) -> str:
    name = Path(filename).name
    cleaned = SAFE_FILENAME_RE.sub("_", name).strip().strip(".")
    return cleaned[:255] or "file"


def _safe_segment(value: str) -> str:
    if not SAFE_SEGMENT_RE.match(value):
        raise ValidationError("Unsafe path segment")
    return value


def _magic_valid(data: bytes, ext: str) -> bool:
    signatures = MAGIC_BYTES.get(ext)
    if not signatures:
        return True
    return any(data[: len(sig)] == sig for sig in signatures)


def build_content_disposition(filename: str) -> str:
    safe = _sanitize_filename(filename).replace('"', "")
    return f'attachment; filename="{safe}"'


class LocalDocumentStore:
    """Keeps document bytes under a base directory and metadata in ``stored_files``."""

    def __init__(self, base_dir: str | Path | None = None, config: FileDomainConfig = INVOICE_DOCUMENTS):
        self._base_dir = Path(base_dir) if base_dir is not None else None
        self.config = config

    @property
    def base_dir(self) -> Path:
        return (self._base_dir or Path(settings.document_storage_dir)).resolve()

    def validate(self, *, filename: str, content_type: str | None, data: bytes) -> tuple[str, str]:
        config = self.config
        if not data:
            raise ValidationError("File is empty")
        if len(data) > config.max_size_bytes:
            raise ValidationError("File exceeds maximum allowed size")

        sanitized_filename = _sanitize_filename(filename)
        ext = Path(sanitized_filename).suffix.lower()
        if ext not in config.allowed_extensions:
            raise ValidationError("File extension not allowed")

        guessed_type = mimetypes.guess_type(sanitized_filename)[0]
        if content_type and content_type not in config.allowed_mime_types:
            raise ValidationError("MIME type not allowed")
        if guessed_type and guessed_type not in config.allowed_mime_types:
            raise ValidationError("Filename extension resolves to disallowed MIME")

        if config.require_magic_bytes and not _magic_valid(data, ext):
            raise ValidationError("File signature does not match expected format")

        return sanitized_filename, content_type or guessed_type or "application/octet-stream"

    def _storage_key(self, subscriber_id: uuid.UUID | None, data: bytes, extension: str) -> str:
        owner = _safe_segment(str(subscriber_id).replace("-", "_")) if subscriber_id else "shared"
        checksum = hashlib.sha256(data).hexdigest()
        return f"{self.config.prefix}/{owner}/{checksum[:24]}_{uuid.uuid4().hex[:8]}{extension}"

    def _resolve(self, storage_key: str) -> Path:
        path = (self.base_dir / storage_key).resolve()
        try:
            path.relative_to(self.base_dir)
        except ValueError as exc:
            raise PermissionError("Access denied: path outside storage directory") from exc
        return path

    def store(
        self,
        db: Session,
        data: bytes,
        *,
        filename: str,
        content_type: str | None = None,
        subscriber_id=None,
        uploaded_by: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> StoredFile:
        """Validate and persist a document, returning its metadata row.

        With ``commit=False`` the row is only flushed so a caller can keep it
        in a larger transaction; the bytes on disk are removed by
        :meth:`discard` if that transaction is abandoned.
        """
        safe_name, final_type = self.validate(filename=filename, content_type=content_type, data=data)
        owner_id = coerce_uuid(subscriber_id)
        storage_key = self._storage_key(owner_id, data, Path(safe_name).suffix.lower())
        path = self._resolve(storage_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        record = StoredFile(
            subscriber_id=owner_id,
            category=self.config.prefix,
            description=description,
            original_filename=safe_name,
            storage_key=storage_key,
            file_size=len(data),
            content_type=final_type,
            checksum=hashlib.sha256(data).hexdigest(),
            uploaded_by=uploaded_by,
            uploaded_at=datetime.now(UTC),
        )
        db.add(record)
        if commit:
            db.commit()
            db.refresh(record)
        else:
            db.flush()
        logger.info(
            "document_stored file_id=%s subscriber_id=%s key=%s size=%s",
            record.id,
            owner_id,
            storage_key,
            record.file_size,
        )
        return record

    def get(self, db: Session, document_id) -> StoredFile:
        record = db.get(StoredFile, coerce_uuid(document_id))
        if not record or record.is_deleted:
            raise NotFoundError("Document not found")
        return record

    def exists(self, db: Session, document_id) -> bool:
        record = db.get(StoredFile, coerce_uuid(document_id))
        if not record or record.is_deleted:
            return False
        return self._resolve(record.storage_key).is_file()

    def fetch(self, db: Session, document_id) -> bytes:
        record = self.get(db, document_id)
        path = self._resolve(record.storage_key)
        if not path.is_file():
            logger.warning("document_missing_on_disk file_id=%s key=%s", record.id, record.storage_key)
            raise NotFoundError("Document content not found")
        return path.read_bytes()

    def discard(self, record: StoredFile) -> None:
        path = self._resolve(record.storage_key)
        path.unlink(missing_ok=True)
        logger.info("document_discarded key=%s", record.storage_key)


document_store = LocalDocumentStore()
