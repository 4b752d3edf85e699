from abc import ABC, abstractmethod
from typing import Optional


class RichTextDecoder(ABC):
    """
    Abstract base class for rich-text blob decoders.
    Defines the contract used when a message's plain text column is empty.
    """
    @abstractmethod
    def decode(self, blob: Optional[bytes]) -> Optional[str]:
        """
        Extracts plain text from a serialized rich-text blob.

        Args:
            blob (bytes): The raw blob, possibly empty or None.

        Returns:
            str: The extracted text, or None when the blob holds no text or
            cannot be decoded. Implementations must not raise.
        """
        pass


def resolve_text(text: Optional[str], blob: Optional[bytes],
                 decoder: Optional[RichTextDecoder], enabled: bool = True) -> str:
    """Return the plain text column, falling back to the decoded blob, or an empty string"""
    if text:
        return text
    if not enabled or decoder is None or not blob:
        return ""
    try:
        return decoder.decode(blob) or ""
    except Exception:
        # A failed decode counts as no text
        return ""
