"""
attributedBody text extraction

Newer macOS releases leave message.text empty and store the message body only
inside message.attributedBody, an NSAttributedString archived in Apple's
typedstream format. Reaction rows are no exception: the "Reacted 🎉 to ..."
text used to identify custom emoji often lives only in this blob.

Full typedstream parsing is not needed to recover the plain string:

1. Length-prefixed read after the '+' marker that precedes the NSString
   payload (primary method)
2. Control-character scan after the '+' marker at the common offsets
3. Regex patterns over the leniently decoded blob, skipping archiver artifacts

Empty or undecodable blobs yield None; the decoder never raises.
"""

import re
from typing import Optional

from tapbacks.base_decoder import RichTextDecoder

# Length prefix markers used by typedstream for integers that do not fit in one byte
TWO_BYTE_LENGTH = 0x81
FOUR_BYTE_LENGTH = 0x82

FALLBACK_PATTERNS = [
    # Text after + marker, skipping length prefix character
    r'[\x01-\x04][+].([^\x00-\x08\x0e-\x1f]+)',
    # Text after + marker with optional length prefix
    r'[\x01-\x04][+][\x1c-\x1f]?\s*([^\x00-\x08\x0e-\x1f]+)',
    # Text after NSString marker
    r'NSString[^\x00-\x1f]*[\x00-\x1f]+([^\x00-\x08\x0e-\x1f]{3,})',
]

TECHNICAL_PREFIXES = ('kIM', '__k', 'NS', 'Z$', 'X$', 'R(', 'RMSV')
TECHNICAL_FRAGMENTS = ('AttributeName', 'NSDictionary', 'PhoneNumber', 'EmailAddress',
                       'streamtyped', '$class')


class TypedStreamDecoder(RichTextDecoder):
    """Extracts the plain string from an attributedBody typedstream blob"""

    def decode(self, blob: Optional[bytes]) -> Optional[str]:
        if not blob or not isinstance(blob, (bytes, bytearray, memoryview)):
            return None
        data = bytes(blob)

        text = self._read_after_plus_marker(data)
        if text:
            return text
        return self._match_fallback_patterns(data)

    def _read_length_prefixed(self, data: bytes, start: int) -> Optional[str]:
        """Read a typedstream length-prefixed string beginning at start"""
        if start >= len(data):
            return None

        marker = data[start]
        if marker == TWO_BYTE_LENGTH:
            header = 3
            length = int.from_bytes(data[start + 1:start + 3], 'little')
        elif marker == FOUR_BYTE_LENGTH:
            header = 5
            length = int.from_bytes(data[start + 1:start + 5], 'little')
        else:
            header = 1
            length = marker

        text_start = start + header
        text_end = text_start + length
        if length == 0 or text_end > len(data):
            return None

        text = data[text_start:text_end].decode('utf-8', errors='ignore').strip()
        return text or None

    def _read_after_plus_marker(self, data: bytes) -> Optional[str]:
        plus_idx = data.find(b'+')
        if plus_idx < 0 or plus_idx + 2 >= len(data):
            return None

        text = self._read_length_prefixed(data, plus_idx + 1)
        if text:
            return text

        # Common patterns: +. and +\x81\xd5\x00
        for offset in (2, 4):
            start_idx = plus_idx + offset
            if start_idx >= len(data):
                continue
            end_idx = start_idx
            while end_idx < len(data):
                byte_val = data[end_idx]
                # Stop at control characters except tab, newline, carriage return
                if byte_val < 0x20 and byte_val not in (0x09, 0x0A, 0x0D):
                    break
                end_idx += 1

            if end_idx > start_idx:
                text = data[start_idx:end_idx].decode('utf-8', errors='ignore').strip()
                if text:
                    return text
        return None

    def _match_fallback_patterns(self, data: bytes) -> Optional[str]:
        text_data = data.decode('utf-8', errors='ignore')

        for pattern in FALLBACK_PATTERNS:
            candidates = [m.strip() for m in re.findall(pattern, text_data)]
            candidates = [text for text in candidates if self._looks_like_text(text)]
            if candidates:
                return max(candidates, key=len)
        return None

    @staticmethod
    def _looks_like_text(text: str) -> bool:
        if len(text) <= 2:
            return False
        if text.startswith(TECHNICAL_PREFIXES):
            return False
        if any(fragment in text for fragment in TECHNICAL_FRAGMENTS):
            return False
        # Short strings with $ are NSKeyedArchiver artifacts
        if text.count('$') > 2 or (len(text) < 50 and '$' in text):
            return False
        return True
