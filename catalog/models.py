from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Bucket(SQLModel, table=True):
    name: str = Field(primary_key=True, index=True)
    owner: str = Field(default="")
    creation_date: datetime = Field(default_factory=utcnow)

    catalog_objects: List["CatalogObject"] = Relationship(back_populates="bucket_conn")


class CatalogObject(SQLModel, table=True):
    __tablename__ = "catalog_object"
    __table_args__ = (UniqueConstraint("bucket_name", "name", name="uq_catalog_object_bucket_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    bucket_name: str = Field(foreign_key="bucket.name", index=True)
    name: str = Field(index=True)
    kind: str = Field(index=True)
    content_type: str = Field(default="application/octet-stream")
    creation_date: datetime = Field(default_factory=utcnow)

    bucket_conn: Bucket = Relationship(back_populates="catalog_objects")
    revisions: List["Revision"] = Relationship(
        back_populates="catalog_object",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class Revision(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("catalog_object_id", "commit_time", name="uq_revision_object_commit_time"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    catalog_object_id: int = Field(foreign_key="catalog_object.id", index=True)
    commit_time: int = Field(index=True)  # epoch milliseconds
    commit_message: str = Field(default="")
    content_type: str = Field(default="application/octet-stream")
    size: int = Field(default=0)
    etag: str = Field(default="")
    storage_path: str  # relative to the storage root

    catalog_object: CatalogObject = Relationship(back_populates="revisions")


class CatalogObjectMetadata(SQLModel):
    """Metadata of one revision of a catalog object, as returned to callers."""

    bucket_name: str
    name: str
    kind: str
    content_type: str
    commit_message: str
    commit_time: int
    commit_date: datetime
    size: int = 0
    etag: str = ""
    links: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_revision(cls, obj: CatalogObject, revision: Revision) -> "CatalogObjectMetadata":
        return cls(
            bucket_name=obj.bucket_name,
            name=obj.name,
            kind=obj.kind,
            content_type=revision.content_type,
            commit_message=revision.commit_message,
            commit_time=revision.commit_time,
            commit_date=datetime.fromtimestamp(revision.commit_time / 1000, tz=timezone.utc),
            size=revision.size,
            etag=revision.etag,
        )


class CatalogObjectMetadataList(SQLModel):
    objects: List[CatalogObjectMetadata]


class BucketMetadata(SQLModel):
    name: str
    owner: str
    creation_date: datetime
