from typing import List, Optional
from urllib.parse import quote, unquote_plus

import anyio

from fastapi import APIRouter, Depends, File, Form, Header, Query, Request, Response, UploadFile
from pydantic import BaseModel

from catalog.archive import ZIP_CONTENT_TYPE, ArchiveBuilder
from catalog.auth import SessionAccessService
from catalog.exceptions import CatalogObjectNotFound
from catalog.models import BucketMetadata, CatalogObjectMetadata, CatalogObjectMetadataList
from catalog.raw import raw_response
from catalog.service import CatalogStore

router = APIRouter()

# Handlers that touch the store are plain functions: FastAPI runs them on its
# threadpool, where the per-object locks of the store apply.


# --- Dependencies ---
def get_store(request: Request) -> CatalogStore:
    return request.app.state.store


def get_access_service(request: Request) -> SessionAccessService:
    return request.app.state.access


def check_bucket_access(
    bucket_name: str,
    request: Request,
    session_id: Optional[str] = Header(None, alias="sessionID"),
):
    if request.app.state.settings.session_id_required:
        get_access_service(request).authorize(session_id, bucket_name)


# --- Helpers ---
def decode_name(name: str) -> str:
    # Clients percent-encode names once more than the path requires
    return unquote_plus(name)


def decorate(metadata: CatalogObjectMetadata, request: Request) -> CatalogObjectMetadata:
    base = (
        f"{str(request.base_url).rstrip('/')}/buckets/{quote(metadata.bucket_name, safe='')}"
        f"/resources/{quote(metadata.name, safe='')}"
    )
    metadata.links = {"self": base, "raw": f"{base}/raw"}
    return metadata


# --- Login ---
class LoginRequest(BaseModel):
    username: str
    password: str


@router.post("/api/login")
def login(creds: LoginRequest, access: SessionAccessService = Depends(get_access_service)):
    return {"token": access.login(creds.username, creds.password)}


# --- Buckets ---
@router.post("/buckets", status_code=201, response_model=BucketMetadata)
def create_bucket(name: str, owner: str = "", store: CatalogStore = Depends(get_store)):
    return store.create_bucket(name, owner)


@router.get("/buckets", response_model=List[BucketMetadata])
def list_buckets(store: CatalogStore = Depends(get_store)):
    return store.list_buckets()


# --- Catalog objects ---
@router.post(
    "/buckets/{bucket_name}/resources",
    status_code=201,
    response_model=CatalogObjectMetadataList,
    dependencies=[Depends(check_bucket_access)],
)
def create_objects(
    bucket_name: str,
    request: Request,
    kind: str = Form(...),
    commitMessage: str = Form(...),
    objectContentType: str = Form(...),
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    store: CatalogStore = Depends(get_store),
):
    """Create one object, or one object per file of a zip upload when no name is given."""
    content = file.file.read()
    if name:
        created = [store.create_object(bucket_name, name, kind, commitMessage, objectContentType, content)]
    else:
        created = store.create_objects_from_archive(bucket_name, kind, commitMessage, objectContentType, content)
    return CatalogObjectMetadataList(objects=[decorate(m, request) for m in created])


@router.get("/buckets/{bucket_name}/resources", dependencies=[Depends(check_bucket_access)])
def list_objects(
    bucket_name: str,
    request: Request,
    kind: Optional[str] = None,
    name: Optional[List[str]] = Query(None),
    store: CatalogStore = Depends(get_store),
):
    if not name:
        return [decorate(m, request).model_dump(mode="json") for m in store.list_objects(bucket_name, kind)]

    store.get_bucket(bucket_name)
    names = [decode_name(n) for n in name]

    def client_gone() -> bool:
        # Sync handlers run in an anyio worker thread
        return anyio.from_thread.run(request.is_disconnected)

    archive = ArchiveBuilder(store).build_archive(bucket_name, names, is_cancelled=client_gone)
    if archive.is_empty:
        raise CatalogObjectNotFound(bucket_name, ", ".join(names))

    headers = {
        "Content-Disposition": 'attachment; filename="archive.zip"',
        "Content-Encoding": "binary",
    }
    return Response(
        content=archive.content,
        status_code=206 if archive.is_partial else 200,
        media_type=ZIP_CONTENT_TYPE,
        headers=headers,
    )


@router.get(
    "/buckets/{bucket_name}/resources/{name}",
    response_model=CatalogObjectMetadata,
    dependencies=[Depends(check_bucket_access)],
)
def get_metadata(bucket_name: str, name: str, request: Request, store: CatalogStore = Depends(get_store)):
    return decorate(store.get_metadata(bucket_name, decode_name(name)), request)


@router.get("/buckets/{bucket_name}/resources/{name}/raw", dependencies=[Depends(check_bucket_access)])
def get_raw(bucket_name: str, name: str, store: CatalogStore = Depends(get_store)):
    return raw_response(store.get_raw_content(bucket_name, decode_name(name)))


@router.delete("/buckets/{bucket_name}/resources/{name}", dependencies=[Depends(check_bucket_access)])
def delete_object(bucket_name: str, name: str, store: CatalogStore = Depends(get_store)):
    store.delete(bucket_name, decode_name(name))
    return Response(status_code=200)


@router.put(
    "/buckets/{bucket_name}/resources/{name}",
    response_model=CatalogObjectMetadata,
    dependencies=[Depends(check_bucket_access)],
)
def restore(
    bucket_name: str,
    name: str,
    commitTimeRaw: int,
    request: Request,
    store: CatalogStore = Depends(get_store),
):
    return decorate(store.restore(bucket_name, decode_name(name), commitTimeRaw), request)


# --- Revisions ---
@router.post(
    "/buckets/{bucket_name}/resources/{name}/revisions",
    status_code=201,
    response_model=CatalogObjectMetadata,
    dependencies=[Depends(check_bucket_access)],
)
def create_revision(
    bucket_name: str,
    name: str,
    request: Request,
    commitMessage: str = Form(...),
    file: UploadFile = File(...),
    store: CatalogStore = Depends(get_store),
):
    metadata = store.create_revision(bucket_name, decode_name(name), commitMessage, file.file.read())
    return decorate(metadata, request)


@router.get(
    "/buckets/{bucket_name}/resources/{name}/revisions",
    response_model=List[CatalogObjectMetadata],
    dependencies=[Depends(check_bucket_access)],
)
def list_revisions(bucket_name: str, name: str, request: Request, store: CatalogStore = Depends(get_store)):
    return [decorate(m, request) for m in store.list_revisions(bucket_name, decode_name(name))]


@router.get(
    "/buckets/{bucket_name}/resources/{name}/revisions/{commit_time}",
    response_model=CatalogObjectMetadata,
    dependencies=[Depends(check_bucket_access)],
)
def get_revision(
    bucket_name: str, name: str, commit_time: int, request: Request, store: CatalogStore = Depends(get_store)
):
    return decorate(store.get_revision(bucket_name, decode_name(name), commit_time), request)


@router.get(
    "/buckets/{bucket_name}/resources/{name}/revisions/{commit_time}/raw",
    dependencies=[Depends(check_bucket_access)],
)
def get_revision_raw(bucket_name: str, name: str, commit_time: int, store: CatalogStore = Depends(get_store)):
    return raw_response(store.get_revision_raw_content(bucket_name, decode_name(name), commit_time))
