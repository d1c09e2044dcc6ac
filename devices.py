"""
CHIP-8 Peripheral / Device Layer
=================================
The two devices the interpreter talks to besides memory:

  Framebuffer : monochrome pixel grid with XOR sprite blits
  Keypad      : 16-key hex pad fed asynchronously by the host

Both are written by the interpreter (chip8.py) and read by the host-side
collaborators in display.py.  The Keypad is the only object shared across
threads: the host event loop calls accept() while the execution loop
reads key state and waits for presses.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

SCREEN_WIDTH    = 64
SCREEN_HEIGHT   = 32
SPRITE_WIDTH    = 8
MAX_SPRITE_ROWS = 15
NUM_KEYS        = 16


# ---------------------------------------------------------------------------
#  Framebuffer
# ---------------------------------------------------------------------------
# Pixels are stored row-major, one byte per pixel, each 0 or 1.
#
# Sprite origin wrapping:
#   default      : origin reduced modulo width / height
#   wrap_quirk   : origin reduced modulo (width - 1) / (height - 1), which
#                  is what some early interpreters did and shifts where
#                  edge-wrapping sprites land by one row/column.
# Pixels of a sprite that run past the right or bottom edge are clipped.

class Framebuffer:
    """Monochrome display memory with sprite blit and collision detect."""

    def __init__(self, width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT,
                 wrap_quirk: bool = False):
        self.width = width
        self.height = height
        self.wrap_quirk = wrap_quirk
        self.pixels = bytearray(width * height)

    def clear(self):
        self.pixels = bytearray(self.width * self.height)

    def set(self, x: int, y: int, val: int):
        self.pixels[y * self.width + x] = 1 if val else 0

    def get(self, x: int, y: int) -> int:
        return self.pixels[y * self.width + x]

    def _wrap_origin(self, x: int, y: int) -> tuple[int, int]:
        if self.wrap_quirk:
            return x % (self.width - 1), y % (self.height - 1)
        return x % self.width, y % self.height

    def blit(self, x: int, y: int, rows) -> bool:
        """XOR a sprite onto the screen with its top-left corner at (x, y).

        Each row byte maps to 8 pixels, MSB leftmost.  Returns True if any
        lit pixel was switched off.
        """
        ox, oy = self._wrap_origin(x, y)
        w, h = self.width, self.height
        pixels = self.pixels
        collided = False
        for r, bits in enumerate(rows[:MAX_SPRITE_ROWS]):
            py = oy + r
            if py >= h:
                break
            base = py * w
            for b in range(SPRITE_WIDTH):
                if not (bits >> (7 - b)) & 1:
                    continue
                px = ox + b
                if px >= w:
                    break
                idx = base + px
                if pixels[idx]:
                    collided = True
                pixels[idx] ^= 1
        return collided

    def lit(self) -> Iterator[tuple[int, int]]:
        """Yield (x, y) of every lit pixel."""
        w = self.width
        for idx, p in enumerate(self.pixels):
            if p:
                yield idx % w, idx // w

    def snapshot(self) -> bytes:
        """Copy of the pixel grid, row-major."""
        return bytes(self.pixels)

    def render_text(self, on: str = "o", off: str = " ") -> str:
        w = self.width
        return "\n".join(
            "".join(on if p else off for p in self.pixels[row:row + w])
            for row in range(0, len(self.pixels), w)
        )


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------
# Layout of the COSMAC VIP hex keypad:
#
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F
#
# The host translates its own key symbols to these indices (display.py)
# and pushes KeyEvents into accept().  Repeated "down" events for a key
# that is already held do not count as new presses.

@dataclass(frozen=True)
class KeyEvent:
    key: int
    pressed: bool


class Keypad:
    """Thread-safe key state table plus a single-slot "last press" channel."""

    def __init__(self):
        self._cond = threading.Condition()
        self._state: list[bool] = [False] * NUM_KEYS
        self._last_press: Optional[int] = None
        self._cancelled = False

    def accept(self, event: KeyEvent):
        """Ingest a key transition from the host.  Never blocks on a waiter."""
        key = event.key
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Key index out of range: {key!r}")
        with self._cond:
            was_down = self._state[key]
            self._state[key] = event.pressed
            if event.pressed and not was_down:
                self._last_press = key
                self._cond.notify_all()

    def press(self, key: int):
        self.accept(KeyEvent(key, True))

    def release(self, key: int):
        self.accept(KeyEvent(key, False))

    def is_pressed(self, key: int) -> bool:
        with self._cond:
            return self._state[key]

    def pressed_keys(self) -> list[int]:
        with self._cond:
            return [k for k in range(NUM_KEYS) if self._state[k]]

    def arm(self):
        """Forget any press that arrived before the caller started waiting."""
        with self._cond:
            self._last_press = None

    def poll_press(self) -> Optional[int]:
        """Take the pending press, if any, without blocking."""
        with self._cond:
            key = self._last_press
            self._last_press = None
            return key

    def wait_for_press(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until a key goes down.

        Returns the key index, or None on timeout or after cancel().
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._last_press is not None or self._cancelled,
                timeout)
            key = self._last_press
            self._last_press = None
            return key

    def cancel(self):
        """Wake every waiter; later waits return None immediately."""
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def reopen(self):
        """Undo cancel() so a new execution loop can wait again."""
        with self._cond:
            self._cancelled = False

    def reset(self):
        with self._cond:
            self._state = [False] * NUM_KEYS
            self._last_press = None
            self._cancelled = False
