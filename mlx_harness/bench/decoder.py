# Copyright © 2023-2025 Apple Inc.

_MAX_SEQUENCE_LEN = 4


def _expected_length(lead: int) -> int:
    """Encoded length implied by a UTF-8 lead byte, 0 if it cannot lead."""
    if 0xC2 <= lead <= 0xDF:
        return 2
    if 0xE0 <= lead <= 0xEF:
        return 3
    if 0xF0 <= lead <= 0xF4:
        return 4
    return 0


def _second_byte_range(lead: int) -> tuple[int, int]:
    # Excludes overlongs (E0, F0), surrogates (ED) and code points above U+10FFFF (F4).
    if lead == 0xE0:
        return 0xA0, 0xBF
    if lead == 0xED:
        return 0x80, 0x9F
    if lead == 0xF0:
        return 0x90, 0xBF
    if lead == 0xF4:
        return 0x80, 0x8F
    return 0x80, 0xBF


def _incomplete_tail_length(buf: bytes | bytearray) -> int:
    """Length of a trailing sequence that can still become a valid character (0 if none)."""
    for i in range(1, min(_MAX_SEQUENCE_LEN - 1, len(buf)) + 1):
        b = buf[-i]
        if b & 0xC0 == 0x80:
            continue
        need = _expected_length(b)
        if need <= i:
            return 0
        if i >= 2:
            lo, hi = _second_byte_range(b)
            if not lo <= buf[-i + 1] <= hi:
                return 0
        return i
    return 0


class ByteStreamDecoder:
    """Turns per-token byte pieces into UTF-8 text without splitting code points.

    A token piece may end half way through a multi-byte character. The decoder
    holds such a tail back until the following piece completes it, so every
    chunk it returns is well-formed and the chunks concatenate to the exact
    generated text.
    """

    def __init__(self):
        self._pending = bytearray()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def push(self, data: bytes) -> str | None:
        self._pending.extend(data)
        if not self._pending:
            return None

        tail = _incomplete_tail_length(self._pending)
        if tail == 0:
            return self._drain(len(self._pending))

        head = bytes(self._pending[:-tail])
        try:
            head.decode("utf-8")
        except UnicodeDecodeError:
            # head is broken regardless of what follows; keep only the tail
            return self._drain(len(head))
        return None

    def flush(self) -> str | None:
        """Force out whatever is pending, replacing undecodable bytes."""
        if not self._pending:
            return None
        return self._drain(len(self._pending))

    def reset(self) -> None:
        self._pending.clear()

    def _drain(self, n: int) -> str | None:
        text = bytes(self._pending[:n]).decode("utf-8", errors="replace")
        del self._pending[:n]
        return text or None
