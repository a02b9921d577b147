"""Error taxonomy of the catalog.

Every failure raised by the store or the access layer is a ``CatalogError``;
the app registers one handler that maps ``status_code`` and ``code`` onto the
JSON error body.
"""


class CatalogError(Exception):
    status_code = 500
    code = "CatalogError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BucketNotFound(CatalogError):
    status_code = 404
    code = "NoSuchBucket"

    def __init__(self, bucket_name: str):
        super().__init__(f"Bucket '{bucket_name}' not found")
        self.bucket_name = bucket_name


class DuplicateBucket(CatalogError):
    status_code = 409
    code = "BucketAlreadyExists"

    def __init__(self, bucket_name: str):
        super().__init__(f"Bucket '{bucket_name}' already exists")
        self.bucket_name = bucket_name


class CatalogObjectNotFound(CatalogError):
    status_code = 404
    code = "NoSuchObject"

    def __init__(self, bucket_name: str, name: str):
        super().__init__(f"Catalog object '{name}' not found in bucket '{bucket_name}'")
        self.bucket_name = bucket_name
        self.name = name


class RevisionNotFound(CatalogError):
    status_code = 404
    code = "NoSuchRevision"

    def __init__(self, bucket_name: str, name: str, commit_time: int):
        super().__init__(
            f"Revision {commit_time} of catalog object '{name}' not found in bucket '{bucket_name}'"
        )
        self.bucket_name = bucket_name
        self.name = name
        self.commit_time = commit_time


class DuplicateObject(CatalogError):
    status_code = 409
    code = "ObjectAlreadyExists"

    def __init__(self, bucket_name: str, name: str):
        super().__init__(f"Catalog object '{name}' already exists in bucket '{bucket_name}'")
        self.bucket_name = bucket_name
        self.name = name


class InvalidContent(CatalogError):
    status_code = 422
    code = "InvalidContent"


class InvalidArchive(InvalidContent):
    code = "InvalidArchive"


class ArchiveBuildFailure(CatalogError):
    status_code = 500
    code = "ArchiveBuildFailure"


class ArchiveBuildCancelled(CatalogError):
    # nginx-style "client closed request"
    status_code = 499
    code = "ArchiveBuildCancelled"


class NotAuthenticated(CatalogError):
    status_code = 401
    code = "NotAuthenticated"


class AccessDenied(CatalogError):
    status_code = 403
    code = "AccessDenied"
