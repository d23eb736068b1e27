"""
Smoke tests for droidmon. Run from project root: python -m pytest tests/smoke_test.py -v
Or: python tests/smoke_test.py
The CLI runs end to end against a generated fake adb that answers from tests/fixtures.
"""

import glob
import json
import os
import shutil
import stat
import subprocess
import sys
import tempfile
import textwrap
import unittest

# Project root: parent of tests/
TESTS_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(TESTS_DIR)
DROIDMON_PY = os.path.join(PROJECT_ROOT, "droidmon.py")
FIXTURES_DIR = os.path.join(TESTS_DIR, "fixtures")
FAKE_ADB_SOURCE = os.path.join(FIXTURES_DIR, "fake_adb.py")

REQUIRED_CLI_OPTIONS = [
    "--config",
    "--package",
    "--regex",
    "--output-file",
    "--interval",
    "--memory",
    "--threads",
    "--so-memory",
    "--adb-path",
    "--serial",
    "--output-dir",
    "--plot-file",
]


def run_droidmon(args, cwd, timeout=60):
    """Run droidmon.py with given args. Returns (returncode, stdout, stderr)."""
    env = os.environ.copy()
    env["FAKE_ADB_FIXTURES"] = FIXTURES_DIR
    r = subprocess.run([sys.executable, DROIDMON_PY] + args, cwd=cwd, capture_output=True,
                       text=True, timeout=timeout, env=env)
    return r.returncode, r.stdout or "", r.stderr or ""


def find_report(cwd, base_name, ext):
    matches = glob.glob(os.path.join(cwd, f"{base_name}_*.{ext}"))
    return matches[0] if len(matches) == 1 else None


@unittest.skipIf(sys.platform == "win32", "fake adb relies on a shebang script")
class CliTestCase(unittest.TestCase):

    def setUp(self):
        self.workdir = tempfile.mkdtemp(prefix="droidmon_smoke_")
        self.adb = os.path.join(self.workdir, "fake-adb")
        with open(FAKE_ADB_SOURCE, "r", encoding="utf-8") as src:
            body = src.read()
        with open(self.adb, "w", encoding="utf-8") as f:
            f.write(f"#!{sys.executable}\n{body}")
        os.chmod(self.adb, os.stat(self.adb).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def tearDown(self):
        shutil.rmtree(self.workdir, ignore_errors=True)

    def run_cli(self, *args):
        return run_droidmon(["--adb-path", self.adb] + list(args), cwd=self.workdir)


class TestHelpAndCLI(unittest.TestCase):

    def test_help_output(self):
        """Exit 0; usage and required options visible."""
        code, out, err = run_droidmon(["--help"], cwd=PROJECT_ROOT)
        self.assertEqual(code, 0, f"Expected exit 0, got {code}. stderr: {err}")
        for opt in REQUIRED_CLI_OPTIONS:
            self.assertIn(opt, out + err, f"Help should mention {opt}")

    def test_reject_two_modes(self):
        code, _, err = run_droidmon(["--threads", "--memory", "5"], cwd=PROJECT_ROOT)
        self.assertNotEqual(code, 0)
        self.assertIn("not allowed with", err)

    def test_reject_zero_interval(self):
        code, _, err = run_droidmon(["--interval", "0"], cwd=PROJECT_ROOT)
        self.assertNotEqual(code, 0)
        self.assertIn("--interval", err)


class TestSnapshots(CliTestCase):

    def test_threads_report(self):
        code, out, err = self.run_cli("--threads")
        self.assertEqual(code, 0, err or out)
        self.assertIn("Thread Analysis:", out)
        path = find_report(self.workdir, "thread_info", "json")
        self.assertIsNotNone(path, "Expected a thread_info_*.json report")
        with open(path, encoding="utf-8") as f:
            threads = json.load(f)
        self.assertEqual([t["tid"] for t in threads], ["4321", "4330"])
        self.assertIsNotNone(find_report(self.workdir, "thread_info", "csv"))

    def test_so_memory_report(self):
        code, out, err = self.run_cli("--so-memory", "--output-dir", self.workdir)
        self.assertEqual(code, 0, err or out)
        self.assertIn("SO Library Memory Analysis:", out)
        self.assertIn("Warning: Failed to parse native library line", err)
        with open(find_report(self.workdir, "so_memory", "json"), encoding="utf-8") as f:
            libs = json.load(f)
        self.assertEqual(libs[0]["name"], "/system/lib64/libhwui.so")
        self.assertEqual([lib["pss"] for lib in libs], [5310, 1204, 310])

    def test_unknown_package(self):
        code, _, err = self.run_cli("--package", "com.not.running", "--threads")
        self.assertEqual(code, 1)
        self.assertIn("not found on device", err)
        self.assertEqual(glob.glob(os.path.join(self.workdir, "thread_info_*")), [])

    def test_config_file_with_cli_override(self):
        cfg = os.path.join(self.workdir, "droidmon.yaml")
        with open(cfg, "w", encoding="utf-8") as f:
            f.write(textwrap.dedent("""
                package_name: com.not.running
                sample_interval: 2
                """))
        code, _, err = self.run_cli("--config", cfg, "--threads")
        self.assertEqual(code, 1)
        self.assertIn("com.not.running", err)
        code, out, err = self.run_cli("--config", cfg, "--package", "com.example.app", "--threads")
        self.assertEqual(code, 0, err or out)


class TestMemoryMonitoring(CliTestCase):

    def test_short_run_writes_chart_and_reports(self):
        code, out, err = self.run_cli("--memory", "1", "--interval", "1")
        self.assertEqual(code, 0, err or out)
        self.assertIn("Collected 1 memory samples.", out)
        self.assertTrue(os.path.getsize(os.path.join(self.workdir, "memory_plot.png")) > 0)
        with open(find_report(self.workdir, "memory_samples", "json"), encoding="utf-8") as f:
            samples = json.load(f)
        self.assertEqual(samples[0]["timestamp"], 0)
        self.assertEqual(samples[0]["total_pss"], 24036)
        self.assertIsNotNone(find_report(self.workdir, "memory_samples", "csv"))

    def test_chart_failure_keeps_reports(self):
        plot = os.path.join(self.workdir, "missing", "plot.png")
        code, out, err = self.run_cli("--memory", "1", "--plot-file", plot)
        self.assertEqual(code, 1)
        self.assertIn("Could not save chart", err)
        self.assertIsNotNone(find_report(self.workdir, "memory_samples", "json"))


class TestLogStreaming(CliTestCase):

    def test_matches_written_to_output_file(self):
        out_file = os.path.join(self.workdir, "matches.txt")
        code, out, err = self.run_cli("--regex", "ERROR|WARNING", "--output-file", out_file)
        self.assertEqual(code, 0, err or out)
        self.assertIn("Match found:", out)
        with open(out_file, encoding="utf-8") as f:
            lines = f.read().splitlines()
        self.assertEqual(len(lines), 1)
        self.assertIn("ERROR failed to load config", lines[0])

    def test_invalid_regex_fails_before_adb(self):
        code, _, err = run_droidmon(["--adb-path", "/nonexistent/adb", "--regex", "(oops"], cwd=self.workdir)
        self.assertEqual(code, 1)
        self.assertIn("Invalid keyword regex", err)

    def test_missing_adb(self):
        code, _, err = run_droidmon(["--adb-path", "/nonexistent/adb", "--threads"], cwd=self.workdir)
        self.assertEqual(code, 1)
        self.assertIn("Cannot start", err)


def run_tests():
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for cls in [TestHelpAndCLI, TestSnapshots, TestMemoryMonitoring, TestLogStreaming]:
        suite.addTests(loader.loadTestsFromTestCase(cls))
    runner = unittest.TextTestRunner(verbosity=2)
    return runner.run(suite)


if __name__ == "__main__":
    sys.exit(0 if run_tests().wasSuccessful() else 1)
