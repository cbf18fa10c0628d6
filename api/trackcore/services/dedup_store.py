"""
Content-addressed file store with reference counting.

Identical uploads are detected by SHA-256 and share a single row and blob.
Every check-then-act sequence runs in one transaction holding the row lock
on the content hash, so concurrent workers never create duplicate rows or
delete a blob another upload is about to reuse.
"""

import hashlib
import logging
import uuid
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trackcore.clock import Clock, utcnow
from trackcore.config import FileStoreConfig
from trackcore.database import dialect_insert
from trackcore.errors import (
    StorageIntegrityError,
    StoredFileNotFoundError,
    TransientStorageError,
    ValidationError,
    translate_db_error,
)
from trackcore.models.stored_file import StoredFile
from trackcore.schemas.files import FileMetadata, ReleaseFileResponse, StoredFileRef
from trackcore.services.blob_storage import BLOB_ERRORS, BlobStorage

logger = logging.getLogger(__name__)

# Attempts before a repeated uniqueness violation is treated as corruption
MAX_STORE_ATTEMPTS = 3


class FileDedupStore:
    """Owns the files table and the blobs it points at."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        blobs: BlobStorage,
        config: FileStoreConfig | None = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.blobs = blobs
        self.config = config or FileStoreConfig()
        self.clock = clock

    @staticmethod
    def hash_content(content: bytes) -> str:
        """Generate SHA256 hash of file content."""
        return hashlib.sha256(content).hexdigest()

    def storage_path_for(self, content_hash: str) -> str:
        """Hash-derived blob path, fanned out over two directory levels."""
        prefix = self.config.path_prefix.strip("/")
        relative = f"{content_hash[:2]}/{content_hash[2:4]}/{content_hash}"
        return f"{prefix}/{relative}" if prefix else relative

    def resolve_url(self, path: str) -> str:
        return self.blobs.public_url(path)

    def _to_ref(self, row, deduplicated: bool = False) -> StoredFileRef:
        return StoredFileRef(
            id=str(row.id),
            content_hash=row.content_hash,
            storage_path=row.storage_path,
            url=self.resolve_url(row.storage_path),
            media_type=row.media_type,
            size=row.size,
            original_name=row.original_name,
            reference_count=row.reference_count,
            deduplicated=deduplicated,
        )

    def validate(self, content: bytes) -> None:
        """
        Reject content that can never be stored.

        Callers run this before charging quota or reserving keys, so a bad
        upload has no side effects.
        """
        if not content:
            raise ValidationError("File content is empty", code="EMPTY_FILE")
        if len(content) > self.config.max_upload_bytes:
            raise ValidationError(
                f"File exceeds maximum size of {self.config.max_upload_bytes} bytes",
                code="FILE_TOO_LARGE",
            )

    # --- Writes ---

    async def store(self, content: bytes, metadata: FileMetadata | None = None) -> StoredFileRef:
        """
        Store content, reusing the existing blob when the hash is known.

        Returns a reference to the (possibly pre-existing) stored file. The
        metadata of a duplicate upload is discarded; the first upload's
        media type and name stay on the row.

        Raises:
            ValidationError - empty or oversized content
            TransientStorageError - database or blob backend unavailable
            StorageIntegrityError - stored row disagrees with the content
        """
        self.validate(content)

        metadata = metadata or FileMetadata()
        content_hash = self.hash_content(content)
        path = self.storage_path_for(content_hash)

        for attempt in range(1, MAX_STORE_ATTEMPTS + 1):
            try:
                return await self._store_once(content, content_hash, path, metadata)
            except IntegrityError:
                # Lost a race on a unique column; the next attempt sees the winner's row
                logger.warning(
                    "Uniqueness race storing hash=%s (attempt %d/%d)",
                    content_hash,
                    attempt,
                    MAX_STORE_ATTEMPTS,
                )
            except DBAPIError as exc:
                raise translate_db_error(exc) from exc

        raise StorageIntegrityError(
            "Could not store file after repeated uniqueness violations",
            content_hash=content_hash,
        )

    async def _store_once(
        self,
        content: bytes,
        content_hash: str,
        path: str,
        metadata: FileMetadata,
    ) -> StoredFileRef:
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            stmt = dialect_insert(session, StoredFile).values(
                id=uuid.uuid4(),
                content_hash=content_hash,
                storage_path=path,
                media_type=metadata.media_type,
                size=len(content),
                original_name=metadata.original_name,
                user_id=metadata.user_id,
                reference_count=1,
                created_at=now,
                updated_at=now,
            )
            # Insert-or-increment in one statement; the row stays locked until commit
            stmt = stmt.on_conflict_do_update(
                index_elements=[StoredFile.content_hash],
                set_={
                    "reference_count": StoredFile.reference_count + 1,
                    "updated_at": now,
                },
            ).returning(
                StoredFile.id,
                StoredFile.content_hash,
                StoredFile.storage_path,
                StoredFile.media_type,
                StoredFile.size,
                StoredFile.original_name,
                StoredFile.reference_count,
            )
            row = (await session.execute(stmt)).one()

            if row.size != len(content):
                raise StorageIntegrityError(
                    "Stored size does not match content with the same hash",
                    content_hash=content_hash,
                    stored_size=row.size,
                    content_size=len(content),
                )

            try:
                if not await self.blobs.exists(row.storage_path):
                    await self.blobs.put(row.storage_path, content, metadata.media_type)
            except BLOB_ERRORS as exc:
                logger.error("Blob write failed for %s: %s", row.storage_path, exc)
                raise TransientStorageError("File upload failed") from exc

        deduplicated = row.reference_count > 1
        if deduplicated:
            logger.info(
                "Deduplicated upload hash=%s references=%d",
                content_hash,
                row.reference_count,
            )
        else:
            logger.info("Stored new blob hash=%s size=%d", content_hash, row.size)
        return self._to_ref(row, deduplicated=deduplicated)

    async def release(self, file_id: UUID) -> ReleaseFileResponse:
        """
        Drop one reference to a stored file.

        When the last reference goes, the row and blob are removed in the
        same transaction that holds the row lock, so a concurrent store()
        of the same content waits and then starts a fresh row.
        """
        now = self.clock()
        try:
            async with self.session_factory() as session, session.begin():
                result = await session.execute(
                    update(StoredFile)
                    .where(StoredFile.id == file_id)
                    .where(StoredFile.reference_count > 0)
                    .values(
                        reference_count=StoredFile.reference_count - 1,
                        updated_at=now,
                    )
                    .returning(StoredFile.reference_count, StoredFile.storage_path)
                    .execution_options(synchronize_session=False)
                )
                row = result.one_or_none()
                if row is None:
                    raise StoredFileNotFoundError(file_id=file_id)

                deleted = row.reference_count == 0
                if deleted:
                    await session.execute(
                        delete(StoredFile)
                        .where(StoredFile.id == file_id)
                        .where(StoredFile.reference_count == 0)
                        .execution_options(synchronize_session=False)
                    )
                    try:
                        await self.blobs.delete(row.storage_path)
                    except BLOB_ERRORS as exc:
                        raise TransientStorageError("File delete failed") from exc
        except DBAPIError as exc:
            raise translate_db_error(exc) from exc

        if deleted:
            logger.info("Deleted file %s and blob %s", file_id, row.storage_path)
        return ReleaseFileResponse(
            id=str(file_id),
            reference_count=row.reference_count,
            deleted=deleted,
        )

    # --- Reads ---

    async def get(self, file_id: UUID) -> StoredFileRef:
        async with self.session_factory() as session:
            record = await session.get(StoredFile, file_id)
        if record is None:
            raise StoredFileNotFoundError(file_id=file_id)
        return self._to_ref(record)

    async def get_by_hash(self, content_hash: str) -> StoredFileRef | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(StoredFile).where(StoredFile.content_hash == content_hash)
            )
            record = result.scalar_one_or_none()
        return self._to_ref(record) if record else None

    async def download_url(self, file_id: UUID, expires_in: int = 3600) -> str:
        """Time-limited URL for fetching the blob; public backends return the plain URL."""
        ref = await self.get(file_id)
        return self.blobs.download_url(ref.storage_path, expires_in)

    async def exists(self, content_hash: str) -> bool:
        return await self.get_by_hash(content_hash) is not None

    async def list_for_user(self, user_id: UUID) -> list[StoredFileRef]:
        """Files first uploaded by a user, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(StoredFile)
                .where(StoredFile.user_id == user_id)
                .order_by(StoredFile.created_at.desc())
            )
            records = list(result.scalars().all())
        return [self._to_ref(record) for record in records]
