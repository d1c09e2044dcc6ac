"""
CHIP-8 Display Backends
========================
Rendering collaborators for the interpreter.  Every backend implements the
same four calls, which chip8.py issues after each visible framebuffer
change:

    clear()            forget the previous frame
    set_pixel(x, y)    light one pixel of the frame being built
    draw()             publish the frame
    stop()             release the backend

Backends:
  FramebufferDisplay  pygame window, rendered from a background thread,
                      which also feeds host key events into the Keypad
  TerminalDisplay     prints the frame as text ("o" for lit pixels)
  HeadlessDisplay     records frames for tests

Usage (programmatic):
    from display import FramebufferDisplay
    disp = FramebufferDisplay(keypad, scale=10)
    disp.start()       # launches background thread
    ...                # run the system with display=disp
    disp.stop()        # clean shutdown
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from typing import Callable, Optional

from devices import Keypad, KeyEvent, SCREEN_WIDTH, SCREEN_HEIGHT

log = logging.getLogger(__name__)

DEFAULT_SCALE = 10
DEFAULT_FPS   = 60

FG_COLOR = (255, 255, 255)
BG_COLOR = (0, 0, 0)

# Host key name (pygame.key.name spelling) -> hex keypad index.
#
#   1 2 3 4        1 2 3 C
#   q w e r   ->   4 5 6 D
#   a s d f        7 8 9 E
#   z x c v        A 0 B F
DEFAULT_KEYMAP = {
    "1": 0x1, "2": 0x2, "3": 0x3, "4": 0xC,
    "q": 0x4, "w": 0x5, "e": 0x6, "r": 0xD,
    "a": 0x7, "s": 0x8, "d": 0x9, "f": 0xE,
    "z": 0xA, "x": 0x0, "c": 0xB, "v": 0xF,
}


def load_keymap(path: str) -> dict[str, int]:
    """Read a JSON object mapping key names to hex digits ("0"-"F" or ints)."""
    with open(path, "r") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: keymap must be a JSON object")
    keymap = {}
    for name, val in raw.items():
        key = int(val, 16) if isinstance(val, str) else int(val)
        if not 0 <= key <= 0xF:
            raise ValueError(f"{path}: key {name!r} maps outside 0-F ({val!r})")
        keymap[name.lower()] = key
    return keymap


# ── Base ──────────────────────────────────────────────────────────────


class Display:
    """Frame-building base shared by the concrete backends."""

    def __init__(self, width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT):
        self.width = width
        self.height = height
        self._back = bytearray(width * height)

    def clear(self):
        self._back = bytearray(self.width * self.height)

    def set_pixel(self, x: int, y: int):
        self._back[y * self.width + x] = 1

    def draw(self):
        raise NotImplementedError

    def stop(self):
        pass


# ── Text backends ─────────────────────────────────────────────────────


class HeadlessDisplay(Display):
    """No-op display for testing; records a snapshot on every draw()."""

    def __init__(self, width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT):
        super().__init__(width, height)
        self.frames: list[bytes] = []
        self.stopped = False

    def draw(self):
        self.frames.append(bytes(self._back))

    def stop(self):
        self.stopped = True

    @property
    def last_frame(self) -> Optional[bytes]:
        return self.frames[-1] if self.frames else None


class TerminalDisplay(Display):
    """Renders each frame as text on a terminal stream."""

    HOME = "\x1b[H"
    ERASE = "\x1b[2J"

    def __init__(self, stream=None, width: int = SCREEN_WIDTH,
                 height: int = SCREEN_HEIGHT, ansi: bool = True):
        super().__init__(width, height)
        self.stream = stream if stream is not None else sys.stdout
        self.ansi = ansi
        self._first = True

    def render(self) -> str:
        w = self.width
        return "\n".join(
            "".join("o" if p else " " for p in self._back[row:row + w])
            for row in range(0, len(self._back), w)
        )

    def draw(self):
        out = self.render()
        if self.ansi:
            prefix = self.ERASE + self.HOME if self._first else self.HOME
            out = prefix + out
        self._first = False
        self.stream.write(out + "\n")
        self.stream.flush()


# ── pygame window ─────────────────────────────────────────────────────


class FramebufferDisplay(Display):
    """pygame window showing the framebuffer, scaled up.

    Runs its own thread: pygame events are pumped there, key events are
    translated through the keymap and pushed into the Keypad, and the most
    recently published frame is blitted at `fps`.  Closing the window or
    pressing Escape calls on_quit.
    """

    def __init__(self, keypad: Optional[Keypad] = None,
                 scale: int = DEFAULT_SCALE, fps: int = DEFAULT_FPS,
                 keymap: Optional[dict[str, int]] = None,
                 on_quit: Optional[Callable[[], None]] = None,
                 title: str = "CHIP-8",
                 width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT):
        super().__init__(width, height)
        self.keypad = keypad
        self.scale = scale
        self.fps = fps
        self.keymap = dict(keymap if keymap is not None else DEFAULT_KEYMAP)
        self.on_quit = on_quit
        self.title = title

        self._front = bytes(width * height)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._started = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- frame publishing (interpreter thread) ----------------------------

    def draw(self):
        with self._lock:
            self._front = bytes(self._back)

    # -- lifecycle --------------------------------------------------------

    def start(self):
        """Open the window on a background thread."""
        self._stop_event.clear()
        self._started.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chip8-display")
        self._thread.start()
        self._started.wait(timeout=5.0)

    def stop(self):
        """Signal the display thread to shut down and wait for it."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=3.0)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- internals --------------------------------------------------------

    def _resolve_keymap(self, pygame) -> dict[int, int]:
        codes = {}
        for name, key in self.keymap.items():
            try:
                codes[pygame.key.key_code(name)] = key
            except ValueError:
                log.warning("Unknown key name in keymap: %r", name)
        return codes

    def _frame_array(self, np):
        """Current frame as a (width, height, 3) RGB array for surfarray."""
        with self._lock:
            front = self._front
        grid = np.frombuffer(front, dtype=np.uint8).reshape(self.height, self.width)
        rgb = np.empty((self.width, self.height, 3), dtype=np.uint8)
        lit = grid.T.astype(bool)
        rgb[:] = BG_COLOR
        rgb[lit] = FG_COLOR
        return rgb

    def _quit(self):
        self._stop_event.set()
        if self.on_quit is not None:
            self.on_quit()

    def _run(self):
        """Main display loop (runs in background thread)."""
        import pygame
        import numpy as np

        pygame.init()
        pygame.display.set_caption(self.title)
        screen = pygame.display.set_mode(
            (self.width * self.scale, self.height * self.scale))
        surface = pygame.Surface((self.width, self.height))
        clock = pygame.time.Clock()
        codes = self._resolve_keymap(pygame)

        self._started.set()

        try:
            while not self._stop_event.is_set():
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self._quit()
                        return
                    elif event.type in (pygame.KEYDOWN, pygame.KEYUP):
                        if event.key == pygame.K_ESCAPE:
                            self._quit()
                            return
                        key = codes.get(event.key)
                        if key is not None and self.keypad is not None:
                            self.keypad.accept(
                                KeyEvent(key, event.type == pygame.KEYDOWN))

                pygame.surfarray.blit_array(surface, self._frame_array(np))
                pygame.transform.scale(surface, screen.get_size(), screen)
                pygame.display.flip()
                clock.tick(self.fps)

        except pygame.error as e:
            log.error("display error: %s", e)
        finally:
            pygame.quit()
