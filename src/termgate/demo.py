"""Counter application served by `termgate serve`."""

from termgate.app import QUIT, AppSpec, TerminalSize
from termgate.keys import Key, KeyType
from termgate.protocols import KeyPress


def init() -> int:
    return 0


def update(count: int, event):
    if not isinstance(event, KeyPress):
        return count

    key: Key = event.key
    if key.type is KeyType.CHAR:
        if key.ctrl and key.char in ("c", "d"):
            return QUIT
        if key.char == "q":
            return QUIT
        if key.char == "+":
            return count + 1
        if key.char == "-":
            return count - 1
    elif key.type is KeyType.UP:
        return count + 1
    elif key.type is KeyType.DOWN:
        return count - 1
    elif key.type is KeyType.ESCAPE:
        return QUIT
    return count


def view(count: int, size: TerminalSize) -> str:
    lines = [
        "termgate demo",
        "",
        f"count: {count}",
        "",
        "+/up increment, -/down decrement, q quit",
        f"terminal {size.width}x{size.height}",
    ]
    return "\n".join(line[: size.width] for line in lines)


COUNTER = AppSpec(init=init, update=update, view=view)
