"""Extension to Content-Type classification for static assets."""

DEFAULT_CONTENT_TYPE: str = "text/html"

CONTENT_TYPES: dict[str, str] = {
    "html": "text/html",
    "htm": "text/html",
    "txt": "text/plain",
    "css": "text/css",
    "gif": "image/gif",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "ico": "image/x-icon",
    "svg": "image/svg+xml",
    "js": "application/javascript",
    "mp4": "video/mp4",
    "woff": "font/woff",
    "woff2": "font/woff2",
    "ttf": "font/ttf",
}

# Keyed by the extension in front of ".map". The css/js pairing is kept as
# deployed clients expect it.
SOURCE_MAP_CONTENT_TYPES: dict[str, str] = {
    "css": "application/json",
    "js": "application/octet-stream",
}


def classify(file_extension: str, secondary_extension: str = "") -> str:
    """Return the Content-Type for an extension; unknown or empty maps to text/html."""
    if file_extension == "map":
        return SOURCE_MAP_CONTENT_TYPES.get(secondary_extension, DEFAULT_CONTENT_TYPE)
    return CONTENT_TYPES.get(file_extension, DEFAULT_CONTENT_TYPE)
