"""Escape sequence to key press decoding."""

from dataclasses import dataclass, replace
from enum import Enum, auto

# Modifier bits (XTerm standard encoding)
# Parameter = 1 + bits, so Shift=2, Alt=3, Ctrl=5, Shift+Ctrl=6, etc.
MOD_SHIFT = 1
MOD_ALT = 2
MOD_CTRL = 4

ESC = 0x1B


class KeyType(Enum):
    """Kinds of key the decoder can produce."""

    CHAR = auto()
    ENTER = auto()
    TAB = auto()
    BACKTAB = auto()
    BACKSPACE = auto()
    ESCAPE = auto()
    DELETE = auto()
    INSERT = auto()
    UP = auto()
    DOWN = auto()
    RIGHT = auto()
    LEFT = auto()
    HOME = auto()
    END = auto()
    PAGE_UP = auto()
    PAGE_DOWN = auto()
    F1 = auto()
    F2 = auto()
    F3 = auto()
    F4 = auto()
    F5 = auto()
    F6 = auto()
    F7 = auto()
    F8 = auto()
    F9 = auto()
    F10 = auto()
    F11 = auto()
    F12 = auto()


@dataclass(frozen=True)
class Key:
    """A single key press.

    Attributes:
        type: Kind of key.
        char: The character for CHAR keys (lowercase letter for Ctrl+letter).
        modifiers: Bitmask of MOD_SHIFT, MOD_ALT, MOD_CTRL.
    """

    type: KeyType
    char: str = ""
    modifiers: int = 0

    @property
    def ctrl(self) -> bool:
        return bool(self.modifiers & MOD_CTRL)

    @property
    def alt(self) -> bool:
        return bool(self.modifiers & MOD_ALT)

    @property
    def shift(self) -> bool:
        return bool(self.modifiers & MOD_SHIFT)


# Escape sequence to key mapping, including the common alternates sent by
# xterm, rxvt and the linux console
KEY_SEQUENCES: dict[bytes, KeyType] = {
    # Arrow keys (normal and application cursor mode)
    b"\x1b[A": KeyType.UP,
    b"\x1b[B": KeyType.DOWN,
    b"\x1b[C": KeyType.RIGHT,
    b"\x1b[D": KeyType.LEFT,
    b"\x1bOA": KeyType.UP,
    b"\x1bOB": KeyType.DOWN,
    b"\x1bOC": KeyType.RIGHT,
    b"\x1bOD": KeyType.LEFT,
    # Navigation
    b"\x1b[H": KeyType.HOME,
    b"\x1b[F": KeyType.END,
    b"\x1bOH": KeyType.HOME,
    b"\x1bOF": KeyType.END,
    b"\x1b[1~": KeyType.HOME,
    b"\x1b[4~": KeyType.END,
    b"\x1b[7~": KeyType.HOME,
    b"\x1b[8~": KeyType.END,
    b"\x1b[2~": KeyType.INSERT,
    b"\x1b[3~": KeyType.DELETE,
    b"\x1b[5~": KeyType.PAGE_UP,
    b"\x1b[6~": KeyType.PAGE_DOWN,
    b"\x1b[Z": KeyType.BACKTAB,
    # Function keys
    b"\x1bOP": KeyType.F1,
    b"\x1bOQ": KeyType.F2,
    b"\x1bOR": KeyType.F3,
    b"\x1bOS": KeyType.F4,
    b"\x1b[11~": KeyType.F1,
    b"\x1b[12~": KeyType.F2,
    b"\x1b[13~": KeyType.F3,
    b"\x1b[14~": KeyType.F4,
    b"\x1b[15~": KeyType.F5,
    b"\x1b[17~": KeyType.F6,
    b"\x1b[18~": KeyType.F7,
    b"\x1b[19~": KeyType.F8,
    b"\x1b[20~": KeyType.F9,
    b"\x1b[21~": KeyType.F10,
    b"\x1b[23~": KeyType.F11,
    b"\x1b[24~": KeyType.F12,
}


def decode_keys(data: bytes) -> list[Key]:
    """Decode raw terminal input into key presses, in order.

    Unknown escape sequences (mouse reports, focus events) are dropped.
    Invalid UTF-8 decodes to U+FFFD rather than failing.

    Args:
        data: Bytes received from the peer's terminal.

    Returns:
        Zero or more keys.
    """
    keys: list[Key] = []
    i = 0
    while i < len(data):
        key, i = _decode_one(data, i)
        if key is not None:
            keys.append(key)
    return keys


class KeyDecoder:
    """Incremental decode_keys() for input arriving in packets.

    An escape sequence or UTF-8 character cut off at the end of one packet
    is held back and completed by the next. Held bytes that never get
    completed (a lone ESC press) are emitted by flush().
    """

    def __init__(self):
        self._pending = b""

    @property
    def pending(self) -> bytes:
        """Bytes held back waiting for the rest of their sequence."""
        return self._pending

    def feed(self, data: bytes) -> list[Key]:
        """Decode data, holding back an unfinished trailing sequence."""
        data = self._pending + data
        split = _incomplete_tail(data)
        self._pending = data[split:]
        return decode_keys(data[:split])

    def flush(self) -> list[Key]:
        """Decode whatever is held back, as it stands."""
        data, self._pending = self._pending, b""
        return decode_keys(data)


def _incomplete_tail(data: bytes) -> int:
    """Index where an unfinished trailing sequence starts, len(data) if none."""
    esc = data.rfind(b"\x1b", max(len(data) - 16, 0))
    if esc != -1:
        rest = data[esc + 1 :]
        if not rest:
            return esc
        if rest == b"O":
            return esc
        if rest[:1] == b"[" and all(0x30 <= b <= 0x3F for b in rest[1:]):
            return esc

    # UTF-8 lead byte still missing continuation bytes
    for back in range(1, min(len(data), 3) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue
        if byte >= 0xC0 and _utf8_length(byte) > back:
            return len(data) - back
        break
    return len(data)


def _decode_one(data: bytes, i: int) -> tuple[Key | None, int]:
    """Decode the key starting at data[i].

    Returns:
        The key (None if unrecognised) and the index after it.
    """
    byte = data[i]

    if byte == ESC:
        return _decode_escape(data, i)

    if byte == 0x0D:
        # CRLF from some clients is a single keystroke
        if data[i + 1 : i + 2] == b"\n":
            return Key(KeyType.ENTER), i + 2
        return Key(KeyType.ENTER), i + 1
    if byte == 0x0A:
        return Key(KeyType.ENTER), i + 1
    if byte == 0x09:
        return Key(KeyType.TAB), i + 1
    if byte in (0x7F, 0x08):
        return Key(KeyType.BACKSPACE), i + 1
    if byte == 0x00:
        return Key(KeyType.CHAR, " ", MOD_CTRL), i + 1
    if byte < 0x20:
        # 0x01 -> Ctrl+a ... 0x1a -> Ctrl+z, 0x1c..0x1f -> Ctrl+\ ] ^ _
        return Key(KeyType.CHAR, chr(byte + 0x40).lower(), MOD_CTRL), i + 1

    length = _utf8_length(byte)
    chunk = data[i : i + length]
    try:
        return Key(KeyType.CHAR, chunk.decode("utf-8")), i + len(chunk)
    except UnicodeDecodeError:
        # Resynchronise on the next byte
        return Key(KeyType.CHAR, "\ufffd"), i + 1


def _decode_escape(data: bytes, i: int) -> tuple[Key | None, int]:
    """Decode a sequence starting with ESC at data[i]."""
    if i + 1 >= len(data):
        return Key(KeyType.ESCAPE), i + 1

    introducer = data[i + 1]

    if introducer == ord("["):
        # CSI: ESC [ <parameter bytes 0x30-0x3f> <final byte 0x40-0x7e>
        j = i + 2
        while j < len(data) and 0x30 <= data[j] <= 0x3F:
            j += 1
        if j >= len(data) or not 0x40 <= data[j] <= 0x7E:
            return Key(KeyType.ESCAPE), i + 1
        return _decode_csi(data[i : j + 1]), j + 1

    if introducer == ord("O"):
        # SS3: ESC O <final>
        if i + 2 >= len(data):
            return Key(KeyType.ESCAPE), i + 1
        key_type = KEY_SEQUENCES.get(data[i : i + 3])
        return (Key(key_type) if key_type else None), i + 3

    if introducer == ESC:
        return Key(KeyType.ESCAPE), i + 1

    # ESC followed by a key is Alt+key
    key, end = _decode_one(data, i + 1)
    if key is None:
        return None, end
    return replace(key, modifiers=key.modifiers | MOD_ALT), end


def _decode_csi(seq: bytes) -> Key | None:
    """Decode a complete CSI sequence, with optional XTerm modifiers.

    Examples:
        \\x1b[A → Up
        \\x1b[1;5A → Ctrl+Up
        \\x1b[5;2~ → Shift+PageUp
        \\x1b[1;3P → Alt+F1
    """
    key_type = KEY_SEQUENCES.get(seq)
    if key_type is not None:
        return Key(key_type)

    final = seq[-1:]
    params = seq[2:-1].split(b";")
    if len(params) != 2 or not params[1].isdigit():
        return None

    modifiers = max(int(params[1]) - 1, 0)
    if final == b"~":
        key_type = KEY_SEQUENCES.get(b"\x1b[" + params[0] + final)
    else:
        key_type = KEY_SEQUENCES.get(b"\x1b[" + final) or KEY_SEQUENCES.get(
            b"\x1bO" + final
        )

    if key_type is None:
        return None
    return Key(key_type, modifiers=modifiers)


def _utf8_length(lead: int) -> int:
    """Number of bytes in the UTF-8 sequence introduced by lead."""
    if lead >= 0xF0:
        return 4
    if lead >= 0xE0:
        return 3
    if lead >= 0xC0:
        return 2
    return 1
