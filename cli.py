#!/usr/bin/env python3
"""
CHIP-8 System Monitor / CLI
============================
Command-line front end for the CHIP-8 system emulator.

Provides:
  - Program loading at 0x200
  - Paced execution with a pygame window, a terminal renderer or no output
  - An interactive debug monitor (step / breakpoints / registers / memory)
  - Disassembly and instruction tracing

Usage:
  python cli.py ROM [--display window|terminal|none] [--scale N] [--hz N]
                    [--legacy-wrap] [--seed N] [--keymap FILE] [--mute]
                    [--monitor] [--trace] [--log-level LEVEL]
"""

from __future__ import annotations
import argparse
import cmd
import logging
import shlex
import signal
import sys
from typing import Optional

from chip8 import (Chip8Error, ProgramTooLargeError, PROGRAM_START, u8, u16,
                   decode)
from system import Chip8System, DEFAULT_CPU_HZ
from audio import NullAudio

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

ALU_NAMES = {
    0x0: "LD", 0x1: "OR", 0x2: "AND", 0x3: "XOR",
    0x4: "ADD", 0x5: "SUB", 0x7: "SUBN",
}

MISC_FORMATS = {
    0x07: "LD V{x:X}, DT",
    0x0A: "LD V{x:X}, K",
    0x15: "LD DT, V{x:X}",
    0x18: "LD ST, V{x:X}",
    0x1E: "ADD I, V{x:X}",
    0x29: "LD F, V{x:X}",
    0x33: "LD B, V{x:X}",
    0x55: "LD [I], V{x:X}",
    0x65: "LD V{x:X}, [I]",
}


def disasm_one(word: int) -> str:
    """Disassemble one instruction word.  Undefined words give '???'."""
    f, x, y, n, kk, nnn = decode(word)

    if word == 0x00E0:
        return "CLS"
    if word == 0x00EE:
        return "RET"
    if f == 0x1:
        return f"JP {nnn:#05x}"
    if f == 0x2:
        return f"CALL {nnn:#05x}"
    if f == 0x3:
        return f"SE V{x:X}, {kk:#04x}"
    if f == 0x4:
        return f"SNE V{x:X}, {kk:#04x}"
    if f == 0x5 and n == 0:
        return f"SE V{x:X}, V{y:X}"
    if f == 0x6:
        return f"LD V{x:X}, {kk:#04x}"
    if f == 0x7:
        return f"ADD V{x:X}, {kk:#04x}"
    if f == 0x8:
        if n in ALU_NAMES:
            return f"{ALU_NAMES[n]} V{x:X}, V{y:X}"
        if n == 0x6:
            return f"SHR V{x:X}"
        if n == 0xE:
            return f"SHL V{x:X}"
    if f == 0x9 and n == 0:
        return f"SNE V{x:X}, V{y:X}"
    if f == 0xA:
        return f"LD I, {nnn:#05x}"
    if f == 0xB:
        return f"JP V0, {nnn:#05x}"
    if f == 0xC:
        return f"RND V{x:X}, {kk:#04x}"
    if f == 0xD:
        return f"DRW V{x:X}, V{y:X}, {n}"
    if f == 0xE:
        if kk == 0x9E:
            return f"SKP V{x:X}"
        if kk == 0xA1:
            return f"SKNP V{x:X}"
    if f == 0xF and kk in MISC_FORMATS:
        return MISC_FORMATS[kk].format(x=x)
    return "???"


def word_at(system: Chip8System, addr: int) -> int:
    cpu = system.cpu
    return (cpu.mem_read8(addr) << 8) | cpu.mem_read8(addr + 1)


# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

class Chip8CLI(cmd.Cmd):
    """Interactive monitor for the CHIP-8 system."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║              CHIP-8 System Monitor                       ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "C8> "

    def __init__(self, system: Chip8System, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()

    def _print(self, text: str = ""):
        self.stdout.write(text + "\n")

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with optional 0x prefix, 'pc' or 'i')."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 16) if not s.startswith("0x") else int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _parse_key(self, s: str) -> int:
        key = int(s.strip(), 16)
        if not 0 <= key <= 0xF:
            raise ValueError(f"key must be 0-F, got {s!r}")
        return key

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            self._print(f"Error: {e}")
        except Chip8Error as e:
            self._print(f"Fault: {e}")

    def emptyline(self):
        pass

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a program image at 0x200: load <file>"""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: load <file>")
            return
        try:
            self.sys.load_program_file(parts[0])
        except OSError as e:
            self._print(f"Error: {e}")
            return
        self._print(f"Loaded '{parts[0]}' at {PROGRAM_START:#05x}")

    def do_reset(self, arg):
        """Reset registers, stack, timers and screen.  Memory is kept."""
        self.sys.reset()
        self._print("System reset.")

    # -- Execution --

    def _deliver_key(self) -> bool:
        """Try to complete a pending key wait.  True if the CPU can go on."""
        cpu = self.sys.cpu
        reg = cpu.key_wait
        self.sys.step()
        if cpu.waiting:
            return False
        self._print(f"  Key {cpu.v[reg]:X} -> V{reg:X}")
        return True

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            if cpu.waiting:
                if not self._deliver_key():
                    self._print("  Waiting for key (use 'press <key>').")
                    break
                continue
            addr = cpu.pc
            word = word_at(self.sys, addr)
            self.sys.step()
            self._print(f"  {addr:#05x}: {word:04x}  {disasm_one(word)}")

    def do_run(self, arg):
        """Run unpaced until breakpoint, key wait or max_steps: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 100_000
        cpu = self.sys.cpu
        for n in range(max_steps):
            if cpu.waiting:
                if not self._deliver_key():
                    self._print(f"Waiting for key after {n} steps.")
                    return
                continue
            if n and cpu.pc in self.breakpoints:
                self._print(f"Breakpoint hit at {cpu.pc:#05x}")
                return
            self.sys.step()
        self._print(f"Stopped after {max_steps} steps.")

    def do_tick(self, arg):
        """Advance the delay/sound timers: tick [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            self.sys.cpu.tick_timers()
        self._print(f"  DT={self.sys.cpu.delay}  ST={self.sys.cpu.sound}")

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                self._print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._print(f"  {a:#05x}")
            else:
                self._print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._print(f"Breakpoint set at {addr:#05x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._print(f"Breakpoint at {addr:#05x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show CPU registers."""
        self._print(self.sys.cpu.dump_regs())

    def do_status(self, arg):
        """Show full system status (CPU + devices)."""
        self._print(self.sys.dump_state())

    def do_setreg(self, arg):
        """Set register: setreg <V0-VF|i|pc|dt|st> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = self._parse_int(parts[1])
        cpu = self.sys.cpu
        if reg_s == "pc":
            cpu.pc = u16(val)
        elif reg_s == "i":
            cpu.i = u16(val)
        elif reg_s == "dt":
            cpu.delay = u8(val)
        elif reg_s == "st":
            cpu.sound = u8(val)
        elif len(reg_s) == 2 and reg_s[0] == "v":
            cpu.v[int(reg_s[1], 16)] = u8(val)
        else:
            self._print("Unknown register.")
            return
        self._print(f"  {reg_s.upper()} = {val:#x}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 bytes."""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64

        for row_start in range(addr, addr + count, 16):
            hex_bytes = []
            for n in range(16):
                if row_start + n < addr + count:
                    hex_bytes.append(f"{self.sys.cpu.mem_read8(row_start + n):02x}")
                else:
                    hex_bytes.append("  ")
            hex_str = ' '.join(hex_bytes[:8]) + '  ' + ' '.join(hex_bytes[8:])
            self._print(f"  {row_start & 0xFFF:#05x}: {hex_str}")

    def do_setmem(self, arg):
        """Set memory bytes: setmem <address> <byte> [byte] ..."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: setmem <addr> <byte...>")
            return
        addr = self._parse_addr(parts[0])
        for n, tok in enumerate(parts[1:]):
            self.sys.cpu.mem_write8(addr + n, self._parse_int(tok))
        self._print(f"  Wrote {len(parts) - 1} bytes at {addr:#05x}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            word = word_at(self.sys, addr)
            marker = ">>>" if addr == self.sys.cpu.pc else "   "
            self._print(f"  {marker} {addr:#05x}: {word:04x}  {disasm_one(word)}")
            addr = (addr + 2) & 0xFFF

    def do_screen(self, arg):
        """Print the framebuffer."""
        w = self.sys.fb.width
        self._print("+" + "-" * w + "+")
        for line in self.sys.fb.render_text(on="#", off=".").split("\n"):
            self._print("|" + line + "|")
        self._print("+" + "-" * w + "+")

    # -- Input --

    def do_press(self, arg):
        """Press a keypad key: press <0-F>"""
        self.sys.press(self._parse_key(arg))

    def do_release(self, arg):
        """Release a keypad key: release <0-F>"""
        self.sys.release(self._parse_key(arg))

    def do_quit(self, arg):
        """Exit the monitor."""
        return True
    do_q = do_quit

    def do_EOF(self, arg):
        self._print()
        return True


# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

def _positive_int(text: str) -> int:
    value = int(text)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {text!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CHIP-8 system emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("rom", nargs="?", default=None,
                        help="program image to load at 0x200")
    parser.add_argument("--display", choices=("window", "terminal", "none"),
                        default="window",
                        help="renderer (default: window)")
    parser.add_argument("--scale", type=_positive_int, default=10,
                        help="window pixels per CHIP-8 pixel (default: 10)")
    parser.add_argument("--hz", type=_positive_int, default=DEFAULT_CPU_HZ,
                        help=f"instructions per second (default: {DEFAULT_CPU_HZ})")
    parser.add_argument("--legacy-wrap", action="store_true",
                        help="wrap sprite origins modulo (size - 1) like "
                             "early interpreters")
    parser.add_argument("--seed", type=int, default=None,
                        help="seed for the RND instruction")
    parser.add_argument("--keymap", type=str, default=None, metavar="FILE",
                        help="JSON object mapping host key names to hex keys")
    parser.add_argument("--mute", action="store_true",
                        help="disable the sound-timer tone")
    parser.add_argument("--monitor", action="store_true",
                        help="start in the interactive debug monitor")
    parser.add_argument("--trace", action="store_true",
                        help="log every executed instruction (DEBUG level)")
    parser.add_argument("--log-level", default="WARNING",
                        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
                        help="logging level (default: WARNING)")
    return parser


def _make_display(args, system: Chip8System, keymap):
    if args.display == "none":
        return None
    if args.display == "window":
        try:
            import pygame  # noqa: F401
        except ImportError as e:
            log.warning("pygame not available (%s); using terminal display", e)
        else:
            from display import FramebufferDisplay
            disp = FramebufferDisplay(system.keypad, scale=args.scale,
                                      keymap=keymap,
                                      on_quit=system.request_stop)
            disp.start()
            return disp
    from display import TerminalDisplay
    return TerminalDisplay()


def _make_audio(args):
    if args.mute or args.display == "none":
        return NullAudio()
    try:
        from audio import ToneAudio
        return ToneAudio()
    except (ImportError, RuntimeError) as e:
        log.warning("audio unavailable (%s); running silent", e)
        return NullAudio()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.trace else getattr(logging, args.log_level),
        format="[%(levelname)s] %(name)s: %(message)s")

    if args.rom is None and not args.monitor:
        parser.error("a ROM is required unless --monitor is given")

    keymap = None
    if args.keymap:
        from display import load_keymap
        try:
            keymap = load_keymap(args.keymap)
        except (OSError, ValueError) as e:
            print(f"Keymap error: {e}", file=sys.stderr)
            return 1

    system = Chip8System(cpu_hz=args.hz, wrap_quirk=args.legacy_wrap,
                         seed=args.seed)

    if args.rom is not None:
        try:
            system.load_program_file(args.rom)
        except (OSError, ProgramTooLargeError) as e:
            print(f"Cannot load '{args.rom}': {e}", file=sys.stderr)
            return 1

    if args.trace:
        def _trace(addr: int, word: int):
            log.debug("%#05x: %04x  %s", addr, word, disasm_one(word))
        system.cpu.on_trace = _trace

    # ---- Monitor mode --------------------------------------------------
    if args.monitor:
        cli = Chip8CLI(system)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return 0

    # ---- Paced run -----------------------------------------------------
    system.audio = _make_audio(args)
    system.attach_display(_make_display(args, system, keymap))

    def _on_signal(signum, frame):
        log.warning("Received signal %d, stopping", signum)
        system.request_stop()

    prev_int = signal.signal(signal.SIGINT, _on_signal)
    prev_term = signal.signal(signal.SIGTERM, _on_signal)

    try:
        system.run()
    except Chip8Error as e:
        print(f"Emulation stopped: {e}", file=sys.stderr)
        return 1
    finally:
        system.shutdown()
        signal.signal(signal.SIGINT, prev_int)
        signal.signal(signal.SIGTERM, prev_term)
    return 0


if __name__ == "__main__":
    sys.exit(main())
