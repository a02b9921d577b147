import mimetypes
import re
from urllib.parse import quote

from fastapi import Response

from catalog.service import RawContent

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# type "/" subtype, optionally followed by parameters
_MEDIA_TYPE = re.compile(r"^[\w!#$&^.+-]+/[\w!#$&^.+-]+(\s*;.*)?$")


def resolve_content_type(declared: str) -> str:
    if declared and _MEDIA_TYPE.match(declared.strip()):
        return declared.strip()
    return DEFAULT_CONTENT_TYPE


# mimetypes maps application/xml to .xsl
PREFERRED_EXTENSIONS = {"application/xml": ".xml", "text/xml": ".xml"}


def attachment_filename(name: str, content_type: str) -> str:
    media_type = content_type.split(";")[0].strip().lower()
    extension = PREFERRED_EXTENSIONS.get(media_type) or mimetypes.guess_extension(media_type) or ""
    if extension and name.endswith(extension):
        return name
    return name + extension


def raw_response(raw: RawContent) -> Response:
    """Response carrying the stored bytes verbatim under their declared content type.

    The content type goes in as a plain header so Starlette does not append a
    charset to text types.
    """
    content_type = resolve_content_type(raw.content_type)
    filename = quote(attachment_filename(raw.name, content_type))
    headers = {
        "Content-Type": content_type,
        "Content-Disposition": f"inline; filename*=UTF-8''{filename}",
    }
    return Response(content=raw.content, headers=headers)
