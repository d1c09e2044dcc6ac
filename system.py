"""
CHIP-8 System Emulator
=======================
Wires together:
  - the Chip8 interpreter (chip8.py)
  - the Framebuffer and Keypad devices (devices.py)
  - a rendering collaborator (display.py) and an audio collaborator (audio.py)
  - the Scheduler, which paces instruction execution and the 60 Hz timers
    against an injected clock

The two cadences are independent: instructions run at cpu_hz (500 by
default) and the delay/sound timers tick at exactly timer_hz.  Timer
ticks are never dropped or bunched up because of slow instructions; if
the host falls far behind, surplus instruction ticks are dropped instead.

While the program is suspended on Fx0A the timers keep counting down and
the execution thread blocks on the keypad, waking for each timer tick and
for stop().
"""

from __future__ import annotations
import logging
import random
import threading
import time
from typing import Optional

from chip8 import Chip8, Chip8Error, PROGRAM_START
from devices import Framebuffer, Keypad, KeyEvent

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Timing constants
# ---------------------------------------------------------------------------

DEFAULT_CPU_HZ = 500
TIMER_HZ       = 60
MAX_CATCHUP    = 0.25     # seconds of instruction backlog kept before dropping

RUNNING = "running"
STOPPED = "stopped"


# ---------------------------------------------------------------------------
#  Clocks
# ---------------------------------------------------------------------------

class MonotonicClock:
    """Wall-clock time source for real sessions."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        if seconds > 0:
            time.sleep(seconds)

    def wait_for_key(self, keypad: Keypad, timeout: float) -> Optional[int]:
        """Block on the keypad for at most *timeout* seconds."""
        return keypad.wait_for_press(timeout)


class ManualClock:
    """Clock that only moves when told to.  sleep() advances it.

    wait_for_key() never blocks: it takes a press that is already pending,
    otherwise lets the whole timeout elapse in simulated time.
    """

    def __init__(self, start: float = 0.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float):
        if seconds > 0:
            self.t += seconds

    def advance(self, seconds: float):
        self.t += seconds

    def wait_for_key(self, keypad: Keypad, timeout: float) -> Optional[int]:
        key = keypad.poll_press()
        if key is None and not keypad.cancelled:
            self.sleep(timeout)
        return key


# ---------------------------------------------------------------------------
#  Scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    """Drives one Chip8 at a fixed instruction rate and a fixed timer rate.

    Deadlines are computed as base + k / hz rather than accumulated, so
    long runs don't drift.  States: RUNNING -> STOPPED, nothing else.
    """

    def __init__(self, cpu: Chip8, clock=None,
                 cpu_hz: int = DEFAULT_CPU_HZ, timer_hz: int = TIMER_HZ,
                 audio=None, max_catchup: Optional[float] = MAX_CATCHUP):
        if cpu_hz <= 0 or timer_hz <= 0:
            raise ValueError(
                f"Rates must be positive (cpu_hz={cpu_hz}, timer_hz={timer_hz})")
        self.cpu = cpu
        self.keypad: Keypad = cpu.keypad
        self.clock = clock if clock is not None else MonotonicClock()
        self.cpu_hz = cpu_hz
        self.timer_hz = timer_hz
        self.audio = audio
        self.max_catchup = max_catchup

        self.state = RUNNING
        self._stop_event = threading.Event()
        self._sound_on = False

        # Statistics
        self.instr_ticks = 0      # instruction ticks elapsed
        self.timer_ticks = 0      # timer ticks elapsed
        self.dropped_ticks = 0    # instruction ticks skipped when behind

        self.rebase(self.clock.now())

    def rebase(self, now: float):
        """Restart both cadences so their first ticks fall one period after now."""
        self._cpu_base, self._cpu_k = now, 0
        self._timer_base, self._timer_k = now, 0

    def _rebase_cpu(self, now: float):
        self._cpu_base, self._cpu_k = now, 0

    @property
    def next_cpu_tick(self) -> float:
        return self._cpu_base + (self._cpu_k + 1) / self.cpu_hz

    @property
    def next_timer_tick(self) -> float:
        return self._timer_base + (self._timer_k + 1) / self.timer_hz

    # -- Ticks --

    def _cpu_tick(self):
        self._cpu_k += 1
        self.instr_ticks += 1
        self.cpu.step()
        self._update_audio()

    def _timer_tick(self):
        self._timer_k += 1
        self.timer_ticks += 1
        self.cpu.tick_timers()
        self._update_audio()

    def _update_audio(self):
        sounding = self.cpu.sound > 0
        if sounding == self._sound_on:
            return
        self._sound_on = sounding
        if self.audio is None:
            return
        if sounding:
            self.audio.start()
        else:
            self.audio.stop()

    def advance(self, now: float) -> int:
        """Run every tick due at or before *now*, earliest deadline first.

        Returns the number of instruction ticks consumed.
        """
        if self.state != RUNNING:
            return 0
        if self.max_catchup is not None:
            behind = now - self.next_cpu_tick
            if behind > self.max_catchup:
                skipped = int(behind * self.cpu_hz)
                self.dropped_ticks += skipped
                # next tick lands exactly on now
                self._cpu_base, self._cpu_k = now, -1
                log.debug("Dropped %d instruction ticks (%.3fs behind)",
                          skipped, behind)

        ran = 0
        while self.state == RUNNING:
            cpu_due = self.next_cpu_tick
            timer_due = self.next_timer_tick
            if timer_due <= now and timer_due <= cpu_due:
                self._timer_tick()
            elif cpu_due <= now:
                self._cpu_tick()
                ran += 1
            else:
                break
        return ran

    # -- Main loop --

    def run(self):
        """Execute until stop().  Fatal interpreter errors propagate."""
        self.rebase(self.clock.now())
        log.info("Scheduler running at %d Hz (timers %d Hz)",
                 self.cpu_hz, self.timer_hz)
        try:
            while not self._stop_event.is_set():
                self.advance(self.clock.now())
                if self._stop_event.is_set():
                    break
                if self.cpu.waiting:
                    self._wait_for_key()
                else:
                    wake = min(self.next_cpu_tick, self.next_timer_tick)
                    self.clock.sleep(wake - self.clock.now())
        except Chip8Error as e:
            log.error("Interpreter fault: %s", e)
            raise
        finally:
            self.state = STOPPED
            self._stop_event.set()
            if self.audio is not None and self._sound_on:
                self.audio.stop()
            self._sound_on = False
            log.info("Scheduler stopped after %d instructions, %d timer ticks",
                     self.instr_ticks, self.timer_ticks)

    def _wait_for_key(self):
        # Wake no later than the next timer tick so timers keep counting
        timeout = max(0.0, self.next_timer_tick - self.clock.now())
        key = self.clock.wait_for_key(self.keypad, timeout)
        if key is None:
            return
        log.debug("Key %X pressed, resuming", key)
        self.cpu.resume_with_key(key)
        # Ticks that passed while suspended are not owed
        self._rebase_cpu(self.clock.now())

    def stop(self):
        """Request a transition to STOPPED.  Safe from any thread."""
        self._stop_event.set()
        self.state = STOPPED
        self.keypad.cancel()

    @property
    def stopped(self) -> bool:
        return self.state == STOPPED


# ---------------------------------------------------------------------------
#  Chip8System
# ---------------------------------------------------------------------------

class Chip8System:
    """
    One emulation session: interpreter + devices + collaborators.

    display needs clear(), set_pixel(x, y), draw() and stop().
    audio needs start(), stop() and destroy().  Either may be None.
    """

    def __init__(self, display=None, audio=None,
                 cpu_hz: int = DEFAULT_CPU_HZ, timer_hz: int = TIMER_HZ,
                 wrap_quirk: bool = False, seed: Optional[int] = None,
                 clock=None, max_catchup: Optional[float] = MAX_CATCHUP):
        if cpu_hz <= 0 or timer_hz <= 0:
            raise ValueError(
                f"Rates must be positive (cpu_hz={cpu_hz}, timer_hz={timer_hz})")
        self.fb = Framebuffer(wrap_quirk=wrap_quirk)
        self.keypad = Keypad()
        self.display = display
        self.audio = audio
        self.cpu_hz = cpu_hz
        self.timer_hz = timer_hz
        self.max_catchup = max_catchup
        self.clock = clock if clock is not None else MonotonicClock()
        self.cpu = Chip8(self.fb, self.keypad, display=display,
                         rng=random.Random(seed))

        self.scheduler: Optional[Scheduler] = None
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_program(self, data: bytes | bytearray):
        self.cpu.load_program(data)
        log.info("Loaded %d bytes at %#05x", len(data), PROGRAM_START)

    def load_program_file(self, path: str):
        """Load a program image from disk."""
        with open(path, "rb") as f:
            data = f.read()
        self.load_program(data)

    def reset(self):
        self.cpu.reset()
        self.keypad.reset()

    def attach_display(self, display):
        """Swap the rendering collaborator and show the current frame on it."""
        self.display = display
        self.cpu.display = display
        self.cpu.present()

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def step(self) -> int:
        """Execute one instruction without pacing."""
        return self.cpu.step()

    def _new_scheduler(self) -> Scheduler:
        self.keypad.reopen()
        self.scheduler = Scheduler(self.cpu, clock=self.clock,
                                   cpu_hz=self.cpu_hz, timer_hz=self.timer_hz,
                                   audio=self.audio,
                                   max_catchup=self.max_catchup)
        return self.scheduler

    def run(self):
        """Run in the calling thread until stop() or a fatal fault."""
        self._new_scheduler().run()

    def start(self):
        """Run in a background thread."""
        if self.running:
            return
        self.error = None
        sched = self._new_scheduler()
        self._thread = threading.Thread(target=self._run_thread, args=(sched,),
                                        daemon=True, name="chip8-cpu")
        self._thread.start()

    def _run_thread(self, sched: Scheduler):
        try:
            sched.run()
        except Chip8Error as e:
            self.error = e

    def request_stop(self):
        """Ask the scheduler to stop without waiting (signal handlers, UI threads)."""
        if self.scheduler is not None:
            self.scheduler.stop()

    def stop(self, timeout: float = 3.0):
        """Stop the scheduler and wait for the execution thread."""
        if self.scheduler is not None:
            self.scheduler.stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def shutdown(self):
        """Stop execution and release the collaborators."""
        self.stop()
        if self.display is not None:
            self.display.stop()
        if self.audio is not None:
            self.audio.destroy()

    # -----------------------------------------------------------------
    #  Input
    # -----------------------------------------------------------------

    def press(self, key: int):
        self.keypad.accept(KeyEvent(key, True))

    def release(self, key: int):
        self.keypad.accept(KeyEvent(key, False))

    # -----------------------------------------------------------------
    #  Convenience
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        """CPU + device state dump."""
        lines = ["=== Registers ===", self.cpu.dump_regs(),
                 f"  Instructions: {self.cpu.cycle_count}", ""]
        lines.append("=== Devices ===")
        lit = sum(self.fb.pixels)
        lines.append(f"  Framebuffer: {self.fb.width}x{self.fb.height} "
                     f"lit={lit} wrap_quirk={'Y' if self.fb.wrap_quirk else 'N'}")
        held = self.keypad.pressed_keys()
        lines.append("  Keypad: held=" +
                     (" ".join(f"{k:X}" for k in held) if held else "none"))
        if self.scheduler is not None:
            s = self.scheduler
            lines.append(f"  Scheduler: {s.state} instr={s.instr_ticks} "
                         f"timer={s.timer_ticks} dropped={s.dropped_ticks}")
        return "\n".join(lines)
