"""
CHIP-8 Bytecode Interpreter
============================
Memory, register file, call stack and timers of the CHIP-8 virtual machine,
plus the fetch/decode/execute step that mutates them.

Every instruction is two bytes, most-significant byte first.  The step
loop mirrors the classic interpreters: fetch the word at PC, advance PC
by two, switch on the high nibble and let the group executor pick the
operation from the remaining fields.

The interpreter does no pacing of its own; system.py drives step() and
tick_timers() at their respective rates.
"""

from __future__ import annotations
import random
from typing import Callable, Optional

from devices import Framebuffer, Keypad

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 4096
MEM_MASK      = MEM_SIZE - 1
PROGRAM_START = 0x200   # 0x000-0x1FF reserved for the interpreter
FONT_BASE     = 0x050
GLYPH_BYTES   = 5
STACK_DEPTH   = 16
NUM_REGS      = 16
VF            = 0xF     # carry / borrow / collision flag

MAX_PROGRAM_SIZE = MEM_SIZE - PROGRAM_START

# Hex digit glyphs 0-F, 4x5 pixels each (high nibble of each byte)
FONT = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u8(v: int) -> int:
    """Mask to unsigned 8 bits."""
    return v & 0xFF

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & 0xFFFF

def decode(word: int) -> tuple[int, int, int, int, int, int]:
    """Split an instruction word into (group, x, y, n, kk, nnn)."""
    return (
        (word >> 12) & 0xF,
        (word >> 8) & 0xF,
        (word >> 4) & 0xF,
        word & 0xF,
        word & 0xFF,
        word & 0xFFF,
    )

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for fatal interpreter faults."""
    pass

class DecodeError(Chip8Error):
    def __init__(self, opcode: int, addr: int):
        self.opcode = opcode
        self.addr = addr
        super().__init__(f"Illegal opcode {opcode:#06x} @ {addr:#05x}")

class StackError(Chip8Error):
    pass

class StackOverflowError(StackError):
    pass

class StackUnderflowError(StackError):
    pass

class ProgramTooLargeError(Chip8Error):
    pass


# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 interpreter: memory, registers, stack, timers, decoder."""

    def __init__(self, fb: Optional[Framebuffer] = None,
                 keypad: Optional[Keypad] = None,
                 display=None,
                 rng: Optional[random.Random] = None):
        self.fb = fb if fb is not None else Framebuffer()
        self.keypad = keypad if keypad is not None else Keypad()
        self.display = display        # clear/set_pixel/draw/stop
        self.rng = rng if rng is not None else random.Random()

        self.mem = bytearray(MEM_SIZE)

        # 16 x 8-bit general registers; VF doubles as the flag register
        self.v: list[int] = [0] * NUM_REGS

        self.i: int  = 0   # 16-bit index register
        self.pc: int = PROGRAM_START
        self.sp: int = 0   # number of live stack entries
        self.stack: list[int] = [0] * STACK_DEPTH

        # 60 Hz countdown timers
        self.delay: int = 0
        self.sound: int = 0

        # Register index awaiting a key press (Fx0A), or None
        self.key_wait: Optional[int] = None

        self.cycle_count: int = 0

        # Called with (addr, word) before each instruction executes
        self.on_trace: Optional[Callable[[int, int], None]] = None

        self._load_font()

    def _load_font(self):
        self.mem[FONT_BASE:FONT_BASE + len(FONT)] = FONT

    def reset(self):
        """Clear registers, stack, timers and screen; PC back to 0x200.

        Memory is left alone so a loaded program survives a reset.
        """
        self.v = [0] * NUM_REGS
        self.i = 0
        self.pc = PROGRAM_START
        self.sp = 0
        self.stack = [0] * STACK_DEPTH
        self.delay = 0
        self.sound = 0
        self.key_wait = None
        self.cycle_count = 0
        self._load_font()
        self.fb.clear()
        self.present()

    # -- Memory access --

    def mem_read8(self, addr: int) -> int:
        return self.mem[addr & MEM_MASK]

    def mem_write8(self, addr: int, val: int):
        self.mem[addr & MEM_MASK] = u8(val)

    def load_bytes(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory at the given address."""
        for n, b in enumerate(data):
            self.mem[(addr + n) & MEM_MASK] = b

    def load_program(self, data: bytes | bytearray):
        """Copy a program image to 0x200."""
        if len(data) > MAX_PROGRAM_SIZE:
            raise ProgramTooLargeError(
                f"Program is {len(data)} bytes; at most {MAX_PROGRAM_SIZE} fit")
        self.load_bytes(PROGRAM_START, data)

    # -- Stack helpers --

    def push(self, addr: int):
        if self.sp >= STACK_DEPTH:
            raise StackOverflowError(
                f"CALL nested deeper than {STACK_DEPTH} @ {self.pc:#05x}")
        self.stack[self.sp] = u16(addr)
        self.sp += 1

    def pop(self) -> int:
        if self.sp == 0:
            raise StackUnderflowError(f"RET with empty stack @ {self.pc:#05x}")
        self.sp -= 1
        return self.stack[self.sp]

    # -- Fetch --

    def fetch(self) -> int:
        """Fetch the big-endian word at PC and advance PC."""
        word = (self.mem_read8(self.pc) << 8) | self.mem_read8(self.pc + 1)
        self.pc = u16(self.pc + 2)
        return word

    def _skip(self, cond: bool):
        if cond:
            self.pc = u16(self.pc + 2)

    # -- Timers --

    def tick_timers(self):
        """One 60 Hz tick: count both timers toward zero."""
        if self.delay > 0:
            self.delay -= 1
        if self.sound > 0:
            self.sound -= 1

    # -- Rendering collaborator --

    def present(self):
        if self.display is None:
            return
        self.display.clear()
        for x, y in self.fb.lit():
            self.display.set_pixel(x, y)
        self.display.draw()

    # -- Key wait --

    @property
    def waiting(self) -> bool:
        return self.key_wait is not None

    def resume_with_key(self, key: int):
        """Finish a pending Fx0A with the key that was pressed."""
        if self.key_wait is None:
            return
        self.v[self.key_wait] = key & 0xF
        self.key_wait = None

    # =====================================================================
    #  STEP: the core decode/execute loop
    # =====================================================================

    def step(self) -> int:
        """Execute one instruction.

        Returns 1 when an instruction ran and 0 while suspended on Fx0A.
        A press already sitting in the keypad completes the wait here, so
        single-stepping never blocks; system.py blocks on the keypad
        instead of spinning.
        """
        if self.key_wait is not None:
            key = self.keypad.poll_press()
            if key is not None:
                self.resume_with_key(key)
            return 0

        addr = self.pc
        word = self.fetch()
        if self.on_trace:
            self.on_trace(addr, word)
        f, x, y, n, kk, nnn = decode(word)

        if   f == 0x0: self._exec_sys(word, addr)
        elif f == 0x1: self.pc = nnn                          # JP nnn
        elif f == 0x2:                                        # CALL nnn
            self.push(self.pc)
            self.pc = nnn
        elif f == 0x3: self._skip(self.v[x] == kk)            # SE Vx, kk
        elif f == 0x4: self._skip(self.v[x] != kk)            # SNE Vx, kk
        elif f == 0x5:                                        # SE Vx, Vy
            if n != 0:
                raise DecodeError(word, addr)
            self._skip(self.v[x] == self.v[y])
        elif f == 0x6: self.v[x] = kk                         # LD Vx, kk
        elif f == 0x7: self.v[x] = u8(self.v[x] + kk)         # ADD Vx, kk
        elif f == 0x8: self._exec_alu(x, y, n, word, addr)
        elif f == 0x9:                                        # SNE Vx, Vy
            if n != 0:
                raise DecodeError(word, addr)
            self._skip(self.v[x] != self.v[y])
        elif f == 0xA: self.i = nnn                           # LD I, nnn
        elif f == 0xB: self.pc = u16(nnn + self.v[0])         # JP V0, nnn
        elif f == 0xC: self.v[x] = self.rng.randrange(256) & kk  # RND
        elif f == 0xD: self._exec_draw(x, y, n)
        elif f == 0xE: self._exec_key(x, kk, word, addr)
        elif f == 0xF: self._exec_misc(x, kk, word, addr)

        self.cycle_count += 1
        return 1

    # =====================================================================
    #  Group executors
    # =====================================================================

    # -- 0x0: CLS / RET --
    def _exec_sys(self, word: int, addr: int):
        if word == 0x00E0:      # CLS
            self.fb.clear()
            self.present()
        elif word == 0x00EE:    # RET
            self.pc = self.pop()
        else:
            # 0nnn jumps to native code on the COSMAC VIP
            raise DecodeError(word, addr)

    # -- 0x8: register ALU --
    def _exec_alu(self, x: int, y: int, n: int, word: int, addr: int):
        v = self.v
        if n == 0x0:    # LD Vx, Vy
            v[x] = v[y]
        elif n == 0x1:  # OR
            v[x] |= v[y]
        elif n == 0x2:  # AND
            v[x] &= v[y]
        elif n == 0x3:  # XOR
            v[x] ^= v[y]
        elif n == 0x4:  # ADD with carry
            total = v[x] + v[y]
            v[x] = u8(total)
            v[VF] = 1 if total > 0xFF else 0
        elif n == 0x5:  # SUB, VF = not borrow
            flag = 1 if v[x] > v[y] else 0
            v[x] = u8(v[x] - v[y])
            v[VF] = flag
        elif n == 0x6:  # SHR
            flag = v[x] & 0x01
            v[x] >>= 1
            v[VF] = flag
        elif n == 0x7:  # SUBN, VF = not borrow
            flag = 1 if v[y] > v[x] else 0
            v[x] = u8(v[y] - v[x])
            v[VF] = flag
        elif n == 0xE:  # SHL
            flag = (v[x] >> 7) & 0x01
            v[x] = u8(v[x] << 1)
            v[VF] = flag
        else:
            raise DecodeError(word, addr)

    # -- 0xD: DRW Vx, Vy, n --
    def _exec_draw(self, x: int, y: int, n: int):
        rows = [self.mem_read8(self.i + r) for r in range(n)]
        collided = self.fb.blit(self.v[x], self.v[y], rows)
        self.v[VF] = 1 if collided else 0
        self.present()

    # -- 0xE: SKP / SKNP --
    def _exec_key(self, x: int, kk: int, word: int, addr: int):
        if kk == 0x9E:
            self._skip(self.keypad.is_pressed(self.v[x] & 0xF))
        elif kk == 0xA1:
            self._skip(not self.keypad.is_pressed(self.v[x] & 0xF))
        else:
            raise DecodeError(word, addr)

    # -- 0xF: timers, index, BCD, block load/store --
    def _exec_misc(self, x: int, kk: int, word: int, addr: int):
        if kk == 0x07:      # LD Vx, DT
            self.v[x] = self.delay
        elif kk == 0x0A:    # LD Vx, K
            self.keypad.arm()
            self.key_wait = x
        elif kk == 0x15:    # LD DT, Vx
            self.delay = self.v[x]
        elif kk == 0x18:    # LD ST, Vx
            self.sound = self.v[x]
        elif kk == 0x1E:    # ADD I, Vx
            self.i = u16(self.i + self.v[x])
        elif kk == 0x29:    # LD F, Vx
            self.i = FONT_BASE + GLYPH_BYTES * (self.v[x] & 0xF)
        elif kk == 0x33:    # LD B, Vx
            val = self.v[x]
            self.mem_write8(self.i, val // 100)
            self.mem_write8(self.i + 1, (val // 10) % 10)
            self.mem_write8(self.i + 2, val % 10)
        elif kk == 0x55:    # LD [I], V0..Vx
            for r in range(x + 1):
                self.mem_write8(self.i + r, self.v[r])
        elif kk == 0x65:    # LD V0..Vx, [I]
            for r in range(x + 1):
                self.v[r] = self.mem_read8(self.i + r)
        else:
            raise DecodeError(word, addr)

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{r:X}={self.v[r]:#04x}" for r in range(row, row + 4)))
        lines.append(f"  I={self.i:#06x}  PC={self.pc:#06x}  SP={self.sp}  "
                     f"DT={self.delay}  ST={self.sound}")
        if self.sp:
            lines.append("  Stack: " + " ".join(
                f"{a:#05x}" for a in self.stack[:self.sp]))
        if self.key_wait is not None:
            lines.append(f"  Waiting for key -> V{self.key_wait:X}")
        return "\n".join(lines)
