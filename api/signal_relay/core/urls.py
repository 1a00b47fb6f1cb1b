from urllib.parse import urlparse

SAFE_ATTACHMENT_SCHEMES = {"http", "https"}


def is_safe_attachment_url(raw_url: str | None) -> bool:
    """Accept only absolute http(s) URLs with a host; anything else is dropped at ingest."""
    if not isinstance(raw_url, str):
        return False
    value = raw_url.strip()
    if not value or any(char.isspace() for char in value):
        return False
    try:
        parsed = urlparse(value)
        # Accessing port validates the netloc (raises on junk like "host:abc").
        parsed.port
    except ValueError:
        return False
    if parsed.scheme.lower() not in SAFE_ATTACHMENT_SCHEMES:
        return False
    return bool(parsed.hostname)
