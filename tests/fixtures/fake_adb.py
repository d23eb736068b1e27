"""Stand-in for adb used by the CLI smoke tests. Answers from tests/fixtures."""

import os
import sys

FIXTURES_DIR = os.environ.get("FAKE_ADB_FIXTURES", os.path.dirname(os.path.abspath(__file__)))
PACKAGE = "com.example.app"


def emit(name):
    with open(os.path.join(FIXTURES_DIR, name), "r", encoding="utf-8") as f:
        sys.stdout.write(f.read())


args = sys.argv[1:]
if args[:1] == ["-s"]:
    args = args[2:]

if args == ["version"]:
    print("Android Debug Bridge version 1.0.41")
    sys.exit(0)
if args == ["devices"]:
    print("List of devices attached")
    print("emulator-5554\tdevice")
    sys.exit(0)
if args[:1] == ["logcat"]:
    print("01-01 12:00:00.000 E/ExampleApp( 4321): ERROR failed to load config")
    print("01-01 12:00:00.010 I/ExampleApp( 4321): activity resumed")
    sys.exit(0)
if args[:1] == ["shell"]:
    cmd = args[1:]
    if cmd[:1] == ["pidof"]:
        if cmd[1:] == [PACKAGE]:
            print("4321")
            sys.exit(0)
        sys.exit(1)
    if cmd[:2] == ["dumpsys", "meminfo"]:
        if cmd[2:] == [PACKAGE]:
            emit("meminfo.txt")
        else:
            print(f"No process found for: {cmd[2]}")
        sys.exit(0)
    if cmd[:2] == ["ps", "-T"]:
        emit("ps_threads.txt")
        sys.exit(0)

print(f"adb: unknown command {' '.join(args)}", file=sys.stderr)
sys.exit(1)
