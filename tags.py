"""Player and club tag helpers."""

from urllib.parse import quote

_ENCODED_HASH = "%23"


def normalize_tag(tag: str | None) -> str:
    """Return the canonical form of a tag: ``#`` followed by upper-case text.

    Accepts the plain form (``ABC``), the literal form (``#abc``) and the
    percent-escaped form (``%23ABC``) that the battle log sometimes returns.
    """
    if not tag:
        return ""
    clean = str(tag).strip()
    if clean[:3].upper() == _ENCODED_HASH:
        clean = clean[3:]
    clean = clean.lstrip("#").strip()
    if not clean:
        return ""
    return f"#{clean.upper()}"


def tags_match(a: str | None, b: str | None) -> bool:
    left = normalize_tag(a)
    return bool(left) and left == normalize_tag(b)


def encode_tag(tag: str) -> str:
    """Encode a player or club tag for URL usage."""
    return quote(normalize_tag(tag), safe="")
