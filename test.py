#!/usr/bin/env python3

import sys
import os
from os import path
import subprocess
import shlex
import shutil
from io import BytesIO, StringIO
from contextlib import redirect_stderr
from typing import BinaryIO, Tuple
from dataclasses import dataclass

import tack

TACK_EXT = tack.TACK_EXT
TACK_PATH = path.join(path.dirname(path.abspath(__file__)), "tack.py")
BUILD_DIR = path.join(path.dirname(path.abspath(__file__)), "build")

def cmd_run_echoed(cmd, **kwargs):
    print("[CMD] %s" % " ".join(map(shlex.quote, cmd)))
    return subprocess.run(cmd, **kwargs)

def read_blob_field(f: BinaryIO, name: bytes) -> bytes:
    line = f.readline()
    field = b':b ' + name + b' '
    assert line.startswith(field)
    assert line.endswith(b'\n')
    size = int(line[len(field):-1])
    blob = f.read(size)
    assert f.read(1) == b'\n'
    return blob

def read_int_field(f: BinaryIO, name: bytes) -> int:
    line = f.readline()
    field = b':i ' + name + b' '
    assert line.startswith(field)
    assert line.endswith(b'\n')
    return int(line[len(field):-1])

def write_int_field(f: BinaryIO, name: bytes, value: int):
    f.write(b':i %s %d\n' % (name, value))

def write_blob_field(f: BinaryIO, name: bytes, blob: bytes):
    f.write(b':b %s %d\n' % (name, len(blob)))
    f.write(blob)
    f.write(b'\n')

@dataclass
class TestCase:
    returncode: int
    stdout: bytes
    stderr: bytes

def load_test_case(file_path: str) -> TestCase:
    with open(file_path, "rb") as f:
        returncode = read_int_field(f, b'returncode')
        stdout = read_blob_field(f, b'stdout')
        stderr = read_blob_field(f, b'stderr')
        return TestCase(returncode, stdout, stderr)

def save_test_case(file_path: str, tc: TestCase):
    with open(file_path, "wb") as f:
        write_int_field(f, b'returncode', tc.returncode)
        write_blob_field(f, b'stdout', tc.stdout)
        write_blob_field(f, b'stderr', tc.stderr)

def simulate_file(file_path: str) -> TestCase:
    # Diagnostics name the file relative to its folder, the same way the
    # compiler sees it when the harness runs it from there.
    with open(file_path, "r", encoding='utf-8') as f:
        text = f.read()
    stdout = BytesIO()
    stderr = StringIO()
    returncode = 1
    with redirect_stderr(stderr):
        try:
            program = tack.parse_words(tack.lex_text(path.basename(file_path), text))
            returncode = tack.simulate_program(program, stdout)
        except tack.CompilerError as e:
            tack.report_error(e)
    return TestCase(returncode, stdout.getvalue(), stderr.getvalue().encode('utf-8'))

def compile_and_run_file(file_path: str) -> TestCase:
    com = cmd_run_echoed([sys.executable, TACK_PATH, path.basename(file_path)],
                         cwd=path.dirname(file_path) or '.', capture_output=True)
    if com.returncode != 0:
        return TestCase(com.returncode, com.stdout, com.stderr)

    os.makedirs(BUILD_DIR, exist_ok=True)
    basepath = path.join(BUILD_DIR, path.basename(file_path)[:-len(TACK_EXT)])
    with open(basepath + ".asm", "wb") as f:
        f.write(com.stdout)
    fasm = cmd_run_echoed(["fasm", basepath + ".asm", basepath], capture_output=True)
    if fasm.returncode != 0:
        print("[ERROR] fasm failed on %s" % (basepath + ".asm"), file=sys.stderr)
        return TestCase(fasm.returncode, fasm.stdout, fasm.stderr)
    os.chmod(basepath, 0o755)
    run = cmd_run_echoed([basepath], capture_output=True)
    return TestCase(run.returncode, run.stdout, run.stderr)

def report_mismatch(what: str, expected: TestCase, actual: TestCase):
    print("[ERROR] Unexpected %s output" % what)
    print("  Expected:")
    print("    return code: %s" % expected.returncode)
    print("    stdout: %s" % expected.stdout.decode("utf-8"))
    print("    stderr: %s" % expected.stderr.decode("utf-8"))
    print("  Actual:")
    print("    return code: %s" % actual.returncode)
    print("    stdout: %s" % actual.stdout.decode("utf-8"))
    print("    stderr: %s" % actual.stderr.decode("utf-8"))

def run_test_for_file(file_path: str, have_fasm: bool) -> Tuple[bool, bool]:

    assert path.isfile(file_path)
    assert file_path.endswith(TACK_EXT)

    print('[INFO] Testing %s' % file_path)

    tc_path = file_path[:-len(TACK_EXT)] + ".txt"
    tc = load_test_case(tc_path)

    sim = simulate_file(file_path)
    sim_ok = sim == tc
    if not sim_ok:
        report_mismatch("simulation", tc, sim)

    com_ok = True
    if have_fasm:
        com = compile_and_run_file(file_path)
        com_ok = com == tc
        if not com_ok:
            report_mismatch("compilation", tc, com)

    return (sim_ok, com_ok)

def run_test_for_folder(folder: str, have_fasm: bool):
    sim_failed = 0
    com_failed = 0
    for entry in sorted(os.scandir(folder), key=lambda e: e.name):
        if entry.is_file() and entry.path.endswith(TACK_EXT):
            sim_ok, com_ok = run_test_for_file(entry.path, have_fasm)
            if not sim_ok:
                sim_failed += 1
            if not com_ok:
                com_failed += 1
    print()
    print("Simulation failed: %d, Compilation failed: %d" % (sim_failed, com_failed))
    if sim_failed != 0 or com_failed != 0:
        exit(1)

def update_output_for_file(file_path: str):
    assert file_path.endswith(TACK_EXT)
    tc_path = file_path[:-len(TACK_EXT)] + ".txt"
    output = simulate_file(file_path)
    print("[INFO] Saving output to %s" % tc_path)
    save_test_case(tc_path, output)

def update_output_for_folder(folder: str):
    for entry in os.scandir(folder):
        if entry.is_file() and entry.path.endswith(TACK_EXT):
            update_output_for_file(entry.path)

def usage(exe_name: str):
    print("Usage: ./test.py [SUBCOMMAND]")
    print("  Run or update the tests. The default [SUBCOMMAND] is 'run'.")
    print()
    print("  SUBCOMMAND:")
    print("    run [TARGET]")
    print("      Run the test on the [TARGET]. The [TARGET] is either a *.tack file or ")
    print("      folder with *.tack files. The default [TARGET] is './tests/'.")
    print("      Compiled runs need `fasm` on the PATH and are skipped without it.")
    print()
    print("    update [TARGET]")
    print("      Record the simulated output of the [TARGET] as the expected one.")
    print("      The [TARGET] is either a *.tack file or folder with *.tack files.")
    print("      The default [TARGET] is './tests/'")
    print()
    print("    help")
    print("      Print this message to stdout and exit with 0 code.")

if __name__ == '__main__':
    exe_name, *argv = sys.argv

    subcommand = "run"

    if len(argv) > 0:
        subcommand, *argv = argv

    if subcommand == 'update' or subcommand == 'record':
        target = './tests/'

        if len(argv) > 0:
            target, *argv = argv

        if path.isdir(target):
            update_output_for_folder(target)
        elif path.isfile(target):
            update_output_for_file(target)
        else:
            usage(exe_name)
            print("[ERROR] `%s` is neither a file nor a folder" % target, file=sys.stderr)
            exit(1)
    elif subcommand == 'run' or subcommand == 'test':
        target = './tests/'

        if len(argv) > 0:
            target, *argv = argv

        have_fasm = shutil.which("fasm") is not None
        if not have_fasm:
            print("[INFO] `fasm` is not found in PATH, only the simulation is checked")

        if path.isdir(target):
            run_test_for_folder(target, have_fasm)
        elif path.isfile(target):
            sim_ok, com_ok = run_test_for_file(target, have_fasm)
            if not sim_ok or not com_ok:
                exit(1)
        else:
            usage(exe_name)
            print("[ERROR] `%s` is neither a file nor a folder" % target, file=sys.stderr)
            exit(1)
    elif subcommand == 'help':
        usage(exe_name)
    else:
        usage(exe_name)
        print("[ERROR] unknown subcommand `%s`" % subcommand, file=sys.stderr)
        exit(1)
