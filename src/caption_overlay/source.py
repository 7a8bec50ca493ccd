"""Google Drive source reference parsing.

Turns the many shapes of a Drive sharing link into a canonical file ID and
the direct-download URLs the fetcher tries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import quote

from caption_overlay.errors import InvalidReferenceFormat

PRIMARY_HOST = "https://drive.google.com"
CONTENT_HOST = "https://drive.usercontent.google.com"

# Tried in order; first match wins.
REFERENCE_PATTERNS = (
    re.compile(r"/file/d/([a-zA-Z0-9_-]+)"),  # Sharing page
    re.compile(r"[?&]id=([a-zA-Z0-9_-]+)"),  # open?id= / uc?id=
    re.compile(r"/d/([a-zA-Z0-9_-]+)"),  # Short link
)


def extract_file_id(url: str) -> str:
    """Extract the Drive file ID from a sharing URL.

    Raises:
        InvalidReferenceFormat: If no accepted URL shape matches
    """
    for pattern in REFERENCE_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)

    raise InvalidReferenceFormat(url)


def is_valid_reference(url: str) -> bool:
    """Check whether ``url`` is a usable Drive reference."""
    try:
        extract_file_id(url)
        return True
    except InvalidReferenceFormat:
        return False


@dataclass(frozen=True)
class AssetReference:
    """A parsed Drive reference.

    Attributes:
        source: The string the caller supplied
        file_id: Canonical Drive file ID
    """

    source: str
    file_id: str = field(default="")

    def __post_init__(self) -> None:
        file_id = extract_file_id(self.source)
        if self.file_id and self.file_id != file_id:
            raise InvalidReferenceFormat(self.source)
        object.__setattr__(self, "file_id", file_id)

    @property
    def primary_url(self) -> str:
        """Direct-download URL tried first."""
        return f"{PRIMARY_HOST}/uc?export=download&id={self.file_id}"

    @property
    def alternate_url(self) -> str:
        """Content-host URL used once when confirmation keeps failing."""
        return (
            f"{CONTENT_HOST}/download?id={self.file_id}"
            "&export=download&authuser=0&confirm=t"
        )

    def confirmed_url(self, token: str) -> str:
        """Primary URL carrying a confirmation token."""
        return f"{self.primary_url}&confirm={quote(token, safe='-_')}"


def resolve_reference(url: str) -> AssetReference:
    """Parse ``url`` into an :class:`AssetReference`."""
    return AssetReference(source=url.strip())
