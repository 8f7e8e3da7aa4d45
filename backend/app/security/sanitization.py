import re

# anything but letters, whitespace, apostrophes and hyphens (\w without digits/_)
_NAME_JUNK = re.compile(r"[^\w\s'\-]|[\d_]")
_NAME_EDGES = re.compile(r"^['\-\s]+|['\-\s]+$")
_PHONE_JUNK = re.compile(r"[^0-9\s\-+()]")
_SPACES = re.compile(r"\s+")


def sanitize_name(value: str) -> str:
    """Keep letters (any script), spaces, apostrophes and hyphens."""
    value = _NAME_JUNK.sub('', (value or '').strip())
    value = _SPACES.sub(' ', value)
    return _NAME_EDGES.sub('', value)


def sanitize_phone(value: str) -> str:
    value = _PHONE_JUNK.sub('', (value or '').strip())
    return _SPACES.sub(' ', value).strip()
