"""
Tests for the disassembler, the debug monitor and the command-line entry
point.
"""
import contextlib
import io
import os
import tempfile
import unittest

from chip8 import PROGRAM_START
from cli import Chip8CLI, build_parser, disasm_one, main
from system import Chip8System


def words(*ws: int) -> bytes:
    return b"".join(w.to_bytes(2, "big") for w in ws)


class TestDisassembler(unittest.TestCase):
    def test_known_words(self):
        cases = {
            0x00E0: "CLS",
            0x00EE: "RET",
            0x1ABC: "JP 0xabc",
            0x2300: "CALL 0x300",
            0x3A05: "SE VA, 0x05",
            0x4B10: "SNE VB, 0x10",
            0x5120: "SE V1, V2",
            0x6A05: "LD VA, 0x05",
            0x7F01: "ADD VF, 0x01",
            0x8124: "ADD V1, V2",
            0x8127: "SUBN V1, V2",
            0x8126: "SHR V1",
            0x812E: "SHL V1",
            0x9120: "SNE V1, V2",
            0xA050: "LD I, 0x050",
            0xB300: "JP V0, 0x300",
            0xC30F: "RND V3, 0x0f",
            0xD125: "DRW V1, V2, 5",
            0xE49E: "SKP V4",
            0xE4A1: "SKNP V4",
            0xF30A: "LD V3, K",
            0xF133: "LD B, V1",
            0xF265: "LD V2, [I]",
        }
        for word, text in cases.items():
            self.assertEqual(disasm_one(word), text, f"{word:04x}")

    def test_undefined_words(self):
        for word in (0x0000, 0x0123, 0x5121, 0x8128, 0x9121, 0xE0FF, 0xF0FF):
            self.assertEqual(disasm_one(word), "???", f"{word:04x}")


class TestMonitor(unittest.TestCase):
    def setUp(self):
        self.system = Chip8System()
        self.out = io.StringIO()
        self.cli = Chip8CLI(self.system, stdout=self.out)

    def run_cmd(self, line: str) -> str:
        self.out.seek(0)
        self.out.truncate()
        self.cli.onecmd(line)
        return self.out.getvalue()

    def load(self, *program: int):
        self.system.load_program(words(*program))

    def test_setmem_and_step(self):
        self.run_cmd("setmem 200 0x60 0x2a")
        text = self.run_cmd("step")
        self.assertIn("0x200: 602a  LD V0, 0x2a", text)
        self.assertIn("V0=0x2a", self.run_cmd("regs"))

    def test_breakpoint(self):
        self.load(0x6001, 0x7001, 0x7001, 0x1206)
        self.assertIn("Breakpoint set at 0x204", self.run_cmd("bp 204"))
        self.assertIn("0x204", self.run_cmd("bp"))
        self.assertIn("Breakpoint hit at 0x204", self.run_cmd("run"))
        self.assertEqual(self.system.cpu.v[0], 2)
        self.run_cmd("bpd all")
        self.assertIn("No breakpoints", self.run_cmd("bp"))

    def test_run_step_limit(self):
        self.load(0x1200)
        self.assertIn("Stopped after 50 steps", self.run_cmd("run 50"))

    def test_key_wait(self):
        self.load(0xF50A, 0x1202)
        self.run_cmd("step")
        self.assertIn("Waiting for key", self.run_cmd("step"))
        self.run_cmd("press 7")
        self.assertIn("Key 7 -> V5", self.run_cmd("step"))
        self.assertEqual(self.system.cpu.v[5], 7)
        self.run_cmd("release 7")
        self.assertEqual(self.system.keypad.pressed_keys(), [])

    def test_bad_key(self):
        self.assertIn("Error:", self.run_cmd("press 10"))
        self.assertIn("Error:", self.run_cmd("press zz"))

    def test_fault_is_reported(self):
        self.load(0x0000)
        self.assertIn("Fault: Illegal opcode", self.run_cmd("step"))

    def test_setreg(self):
        self.run_cmd("setreg va 0x10")
        self.run_cmd("setreg i 0x123")
        self.run_cmd("setreg pc 0x300")
        cpu = self.system.cpu
        self.assertEqual((cpu.v[0xA], cpu.i, cpu.pc), (0x10, 0x123, 0x300))
        self.assertIn("Unknown register", self.run_cmd("setreg zz 1"))

    def test_timers(self):
        self.run_cmd("setreg dt 5")
        self.assertIn("DT=3", self.run_cmd("tick 2"))

    def test_dump_font(self):
        self.assertIn("0x050: f0 90 90 90 f0", self.run_cmd("dump 50 5"))

    def test_disasm_marks_pc(self):
        self.load(0x00E0, 0xA050)
        text = self.run_cmd("disasm 200 2")
        self.assertIn(">>> 0x200: 00e0  CLS", text)
        self.assertIn("0x202: a050  LD I, 0x050", text)

    def test_screen(self):
        self.load(0xA050, 0xD005)
        self.run_cmd("step 2")
        text = self.run_cmd("screen")
        self.assertEqual(text.count("#"), 14)
        self.assertIn("|####....", text)

    def test_status_and_reset(self):
        self.load(0x6A01)
        self.run_cmd("step")
        self.assertIn("=== Devices ===", self.run_cmd("status"))
        self.assertIn("System reset", self.run_cmd("reset"))
        self.assertEqual(self.system.cpu.pc, PROGRAM_START)

    def test_quit(self):
        self.assertTrue(self.cli.onecmd("quit"))
        self.assertTrue(self.cli.onecmd("q"))


class TestMain(unittest.TestCase):
    def write_rom(self, data: bytes) -> str:
        fd, path = tempfile.mkstemp(suffix=".ch8")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        self.addCleanup(os.unlink, path)
        return path

    def test_defaults(self):
        args = build_parser().parse_args(["game.ch8"])
        self.assertEqual(args.display, "window")
        self.assertEqual(args.hz, 500)
        self.assertFalse(args.legacy_wrap)

    def test_rejects_nonpositive_rates(self):
        for argv in (["--hz", "0", "game.ch8"], ["--hz", "-3", "game.ch8"],
                     ["--scale", "0", "game.ch8"]):
            with contextlib.redirect_stderr(io.StringIO()):
                with self.assertRaises(SystemExit) as ctx:
                    main(argv)
            self.assertEqual(ctx.exception.code, 2, repr(argv))

    def test_missing_rom(self):
        self.assertEqual(main(["--display", "none", "/nonexistent/rom.ch8"]), 1)

    def test_oversized_rom(self):
        path = self.write_rom(bytes(4096))
        self.assertEqual(main(["--display", "none", path]), 1)

    def test_bad_keymap(self):
        path = self.write_rom(words(0x1200))
        keymap = self.write_rom(b"[1, 2]")
        self.assertEqual(
            main(["--display", "none", "--keymap", keymap, path]), 1)

    def test_fault_exits_nonzero(self):
        path = self.write_rom(words(0x6001, 0x0000))
        self.assertEqual(main(["--display", "none", "--mute", path]), 1)


if __name__ == "__main__":
    unittest.main()
