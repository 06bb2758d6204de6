from types import MappingProxyType


# Supported resource extensions. Lookups are exact and case-sensitive.
EXTENSIONS = MappingProxyType({
    "gif": "image/gif",
    "jpg": "image/jpg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "ico": "image/ico",
    "htm": "text/html",
    "html": "text/html",
})


def content_type_for(ext: str) -> str | None:
    return EXTENSIONS.get(ext)
