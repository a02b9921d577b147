"""Versioned catalog object store.

Objects are identified by (bucket, name) and own an append-only list of
revisions. The current revision is never stored: it is the revision with the
greatest commit time. Mutations of one object (create, new revision, restore,
delete) are serialized by a per-object lock; the unique constraints of the
schema back that lock when several processes share one database.
"""
import logging
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from catalog.archive import extract_archive
from catalog.exceptions import (
    BucketNotFound,
    CatalogObjectNotFound,
    DuplicateBucket,
    DuplicateObject,
    InvalidContent,
    RevisionNotFound,
)
from catalog.locks import KeyedLock
from catalog.models import Bucket, BucketMetadata, CatalogObject, CatalogObjectMetadata, Revision
from catalog.storage import ContentStorage, calculate_etag

logger = logging.getLogger(__name__)

# Bucket names double as directory names under the storage root
BUCKET_NAME = re.compile(r"^[a-z0-9][a-z0-9.-]{1,62}$")


def epoch_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class RawContent:
    name: str
    content: bytes
    content_type: str


class CatalogStore:
    def __init__(
        self,
        engine: Engine,
        storage: ContentStorage,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], int] = epoch_millis,
    ):
        self.engine = engine
        self.storage = storage
        self.locks = locks or KeyedLock()
        self.clock = clock

    # --- Buckets ---

    def create_bucket(self, name: str, owner: str = "") -> BucketMetadata:
        if not BUCKET_NAME.match(name or "") or ".." in name:
            raise InvalidContent(f"Invalid bucket name '{name}'")
        with Session(self.engine) as session:
            if session.get(Bucket, name) is not None:
                raise DuplicateBucket(name)
            bucket = Bucket(name=name, owner=owner)
            session.add(bucket)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateBucket(name) from exc
            session.refresh(bucket)
            logger.info("Created bucket %s", name)
            return BucketMetadata(name=bucket.name, owner=bucket.owner, creation_date=bucket.creation_date)

    def get_bucket(self, name: str) -> BucketMetadata:
        with Session(self.engine) as session:
            bucket = self._get_bucket(session, name)
            return BucketMetadata(name=bucket.name, owner=bucket.owner, creation_date=bucket.creation_date)

    def list_buckets(self) -> List[BucketMetadata]:
        with Session(self.engine) as session:
            buckets = session.exec(select(Bucket).order_by(Bucket.name)).all()
            return [BucketMetadata(name=b.name, owner=b.owner, creation_date=b.creation_date) for b in buckets]

    # --- Catalog objects ---

    def create_object(
        self,
        bucket: str,
        name: str,
        kind: str,
        commit_message: str,
        content_type: str,
        content: bytes,
    ) -> CatalogObjectMetadata:
        self._validate(name, kind, content_type)
        with self.locks.hold(bucket, name), Session(self.engine) as session:
            self._get_bucket(session, bucket)
            if self._find_object(session, bucket, name) is not None:
                raise DuplicateObject(bucket, name)
            try:
                with self._transaction(session) as written:
                    obj, revision = self._insert_object(
                        session, bucket, name, kind, commit_message, content_type, content, written
                    )
            except IntegrityError as exc:
                # Another process won the race on the unique (bucket, name) constraint
                raise DuplicateObject(bucket, name) from exc
            logger.info("Created catalog object %s/%s (kind=%s, commit_time=%d)", bucket, name, kind, revision.commit_time)
            return CatalogObjectMetadata.from_revision(obj, revision)

    def create_objects_from_archive(
        self,
        bucket: str,
        kind: str,
        commit_message: str,
        content_type: str,
        archive_bytes: bytes,
    ) -> List[CatalogObjectMetadata]:
        """Create one object per file of a zip archive, all or nothing.

        A duplicate name, against the bucket or inside the archive itself,
        aborts the whole batch with ``DuplicateObject``.
        """
        entries = extract_archive(archive_bytes)
        for entry in entries:
            self._validate(entry.name, kind, content_type)

        with self.locks.hold_many(bucket, [e.name for e in entries]), Session(self.engine) as session:
            self._get_bucket(session, bucket)
            created = []
            seen = set()
            current = None
            try:
                with self._transaction(session) as written:
                    for entry in entries:
                        current = entry.name
                        if entry.name in seen or self._find_object(session, bucket, entry.name) is not None:
                            raise DuplicateObject(bucket, entry.name)
                        seen.add(entry.name)
                        created.append(self._insert_object(
                            session, bucket, entry.name, kind, commit_message, content_type, entry.content, written
                        ))
            except IntegrityError as exc:
                raise DuplicateObject(bucket, current) from exc
            logger.info("Created %d catalog objects in bucket %s from archive", len(created), bucket)
            return [CatalogObjectMetadata.from_revision(obj, revision) for obj, revision in created]

    def get_metadata(self, bucket: str, name: str) -> CatalogObjectMetadata:
        with Session(self.engine) as session:
            obj, revision = self._get_current(session, bucket, name)
            return CatalogObjectMetadata.from_revision(obj, revision)

    def get_raw_content(self, bucket: str, name: str) -> RawContent:
        with Session(self.engine) as session:
            obj, revision = self._get_current(session, bucket, name)
            return self._read_raw(session, obj, revision)

    def list_objects(self, bucket: str, kind: Optional[str] = None) -> List[CatalogObjectMetadata]:
        with Session(self.engine) as session:
            self._get_bucket(session, bucket)
            latest = (
                select(Revision.catalog_object_id, func.max(Revision.commit_time).label("commit_time"))
                .group_by(Revision.catalog_object_id)
                .subquery()
            )
            stmt = (
                select(CatalogObject, Revision)
                .select_from(CatalogObject)
                .join(latest, latest.c.catalog_object_id == CatalogObject.id)
                .join(
                    Revision,
                    and_(
                        Revision.catalog_object_id == CatalogObject.id,
                        Revision.commit_time == latest.c.commit_time,
                    ),
                )
                .where(CatalogObject.bucket_name == bucket)
                .order_by(CatalogObject.name)
            )
            if kind is not None:
                stmt = stmt.where(CatalogObject.kind == kind)
            return [CatalogObjectMetadata.from_revision(obj, rev) for obj, rev in session.exec(stmt).all()]

    def delete(self, bucket: str, name: str):
        with self.locks.hold(bucket, name):
            with Session(self.engine) as session:
                obj = self._get_object(session, bucket, name)
                storage_paths = [r.storage_path for r in obj.revisions]
                session.delete(obj)
                session.commit()
            # Blobs go only once the rows are gone, still under the object lock
            for storage_path in storage_paths:
                try:
                    self.storage.delete_physical_file(storage_path)
                except OSError as exc:
                    logger.warning("Could not remove blob %s of deleted object %s/%s: %s", storage_path, bucket, name, exc)
        logger.info("Deleted catalog object %s/%s and %d revisions", bucket, name, len(storage_paths))

    def restore(self, bucket: str, name: str, commit_time: int) -> CatalogObjectMetadata:
        """Append a copy of revision ``commit_time`` as the new current revision."""
        with self.locks.hold(bucket, name), Session(self.engine) as session:
            obj = self._get_object(session, bucket, name)
            target = self._get_revision(session, obj, commit_time)
            content = self.storage.get_file_content(target.storage_path)
            with self._transaction(session) as written:
                revision = self._append_revision(
                    session, obj, f"Restored from revision {commit_time}", content, written,
                    content_type=target.content_type,
                )
            logger.info("Restored %s/%s to revision %d as %d", bucket, name, commit_time, revision.commit_time)
            return CatalogObjectMetadata.from_revision(obj, revision)

    # --- Revisions ---

    def create_revision(self, bucket: str, name: str, commit_message: str, content: bytes) -> CatalogObjectMetadata:
        with self.locks.hold(bucket, name), Session(self.engine) as session:
            obj = self._get_object(session, bucket, name)
            with self._transaction(session) as written:
                revision = self._append_revision(session, obj, commit_message, content, written)
            logger.info("Added revision %d to %s/%s", revision.commit_time, bucket, name)
            return CatalogObjectMetadata.from_revision(obj, revision)

    def list_revisions(self, bucket: str, name: str) -> List[CatalogObjectMetadata]:
        with Session(self.engine) as session:
            obj = self._get_object(session, bucket, name)
            stmt = (
                select(Revision)
                .where(Revision.catalog_object_id == obj.id)
                .order_by(Revision.commit_time.desc())
            )
            return [CatalogObjectMetadata.from_revision(obj, rev) for rev in session.exec(stmt).all()]

    def get_revision(self, bucket: str, name: str, commit_time: int) -> CatalogObjectMetadata:
        with Session(self.engine) as session:
            obj = self._get_object(session, bucket, name)
            return CatalogObjectMetadata.from_revision(obj, self._get_revision(session, obj, commit_time))

    def get_revision_raw_content(self, bucket: str, name: str, commit_time: int) -> RawContent:
        with Session(self.engine) as session:
            obj = self._get_object(session, bucket, name)
            return self._read_raw(session, obj, self._get_revision(session, obj, commit_time))

    # --- Helpers ---

    @staticmethod
    def _validate(name: str, kind: str, content_type: str):
        if not name:
            raise InvalidContent("Catalog object name must not be empty")
        if not kind:
            raise InvalidContent("Catalog object kind must not be empty")
        if not content_type:
            raise InvalidContent("Catalog object content type must not be empty")

    @contextmanager
    def _transaction(self, session: Session):
        """Commit on success; on failure roll back and remove the blobs written so far."""
        written: List[str] = []
        try:
            yield written
            session.commit()
        except BaseException:
            session.rollback()
            for storage_path in written:
                self.storage.delete_physical_file(storage_path)
            raise

    def _get_bucket(self, session: Session, bucket: str) -> Bucket:
        found = session.get(Bucket, bucket)
        if found is None:
            raise BucketNotFound(bucket)
        return found

    def _find_object(self, session: Session, bucket: str, name: str) -> Optional[CatalogObject]:
        stmt = select(CatalogObject).where(CatalogObject.bucket_name == bucket, CatalogObject.name == name)
        return session.exec(stmt).first()

    def _get_object(self, session: Session, bucket: str, name: str) -> CatalogObject:
        obj = self._find_object(session, bucket, name)
        if obj is None:
            raise CatalogObjectNotFound(bucket, name)
        return obj

    def _get_current(self, session: Session, bucket: str, name: str) -> Tuple[CatalogObject, Revision]:
        # Single statement, so a concurrent delete is either fully seen or not at all
        stmt = (
            select(CatalogObject, Revision)
            .join(Revision, Revision.catalog_object_id == CatalogObject.id)
            .where(CatalogObject.bucket_name == bucket, CatalogObject.name == name)
            .order_by(Revision.commit_time.desc())
            .limit(1)
        )
        row = session.exec(stmt).first()
        if row is None:
            raise CatalogObjectNotFound(bucket, name)
        return row

    def _get_revision(self, session: Session, obj: CatalogObject, commit_time: int) -> Revision:
        stmt = select(Revision).where(Revision.catalog_object_id == obj.id, Revision.commit_time == commit_time)
        revision = session.exec(stmt).first()
        if revision is None:
            raise RevisionNotFound(obj.bucket_name, obj.name, commit_time)
        return revision

    def _latest_commit_time(self, session: Session, obj: CatalogObject) -> int:
        stmt = select(func.max(Revision.commit_time)).where(Revision.catalog_object_id == obj.id)
        return session.exec(stmt).one() or 0

    def _read_raw(self, session: Session, obj: CatalogObject, revision: Revision) -> RawContent:
        try:
            content = self.storage.get_file_content(revision.storage_path)
        except FileNotFoundError:
            # The object was deleted between the lookup and the read
            if self._find_object(session, obj.bucket_name, obj.name) is None:
                raise CatalogObjectNotFound(obj.bucket_name, obj.name)
            raise
        return RawContent(name=obj.name, content=content, content_type=revision.content_type)

    def _insert_object(self, session, bucket, name, kind, commit_message, content_type, content, written):
        obj = CatalogObject(bucket_name=bucket, name=name, kind=kind, content_type=content_type)
        session.add(obj)
        # Assigns obj.id and hits the unique constraint before any blob is written
        session.flush()
        revision = self._append_revision(session, obj, commit_message, content, written)
        return obj, revision

    def _append_revision(
        self,
        session: Session,
        obj: CatalogObject,
        commit_message: str,
        content: bytes,
        written: List[str],
        content_type: Optional[str] = None,
    ) -> Revision:
        # Strictly increasing per object even when the clock stalls or goes back
        commit_time = max(self.clock(), self._latest_commit_time(session, obj) + 1)
        storage_path = self.storage.save_file(obj.bucket_name, obj.name, content)
        written.append(storage_path)
        revision = Revision(
            catalog_object_id=obj.id,
            commit_time=commit_time,
            commit_message=commit_message,
            content_type=content_type or obj.content_type,
            size=len(content),
            etag=calculate_etag(content),
            storage_path=storage_path,
        )
        session.add(revision)
        session.flush()
        return revision
