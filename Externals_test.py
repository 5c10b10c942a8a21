# Externals_test.py
import contextlib, errno, io, os, signal, stat, shutil, sys, tempfile, unittest
from unittest import mock

import external_runner
from external_runner import (NOT_EXEC, NOT_FOUND, ProcessLauncher, SearchPath, Stage,
                             is_executable)
from tokenizer import Redirect, Redirections


def read(path):
    with open(path) as f:
        return f.read()


class TestSearchPath(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp)

    def make_file(self, name, mode=0o755, directory=None):
        path = os.path.join(directory or self.tmp, name)
        with open(path, "w") as f:
            f.write("#!/bin/sh\necho hi\n")
        os.chmod(path, mode)
        return path

    def test_path_lookup(self):
        self.assertIsNotNone(SearchPath.from_environ(os.environ).resolve("ls"))

    def test_from_environ_skips_empty_entries(self):
        sp = SearchPath.from_environ({"PATH": "/a::/b:"})
        self.assertEqual(sp.directories, ("/a", "/b"))

    def test_missing_path_warns_and_is_empty(self):
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            sp = SearchPath.from_environ({})
        self.assertEqual(sp.directories, ())
        self.assertIn("PATH not set", err.getvalue())
        self.assertIsNone(sp.resolve("ls"))

    def test_first_directory_wins(self):
        second = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, second)
        first_tool = self.make_file("tool")
        self.make_file("tool", directory=second)
        sp = SearchPath((self.tmp, second))
        self.assertEqual(sp.resolve("tool"), first_tool)

    def test_non_executable_is_skipped(self):
        self.make_file("plain", mode=stat.S_IRUSR | stat.S_IWUSR)
        self.assertIsNone(SearchPath((self.tmp,)).resolve("plain"))

    def test_directories_are_not_executables(self):
        os.mkdir(os.path.join(self.tmp, "subdir"))
        self.assertIsNone(SearchPath((self.tmp,)).resolve("subdir"))
        self.assertFalse(is_executable(os.path.join(self.tmp, "subdir")))

    def test_slash_names_are_not_searched(self):
        path = self.make_file("direct")
        sp = SearchPath(())
        self.assertEqual(sp.resolve(path), path)
        self.assertIsNone(sp.resolve(os.path.join(self.tmp, "missing")))

    def test_executables_by_prefix(self):
        self.make_file("alpha")
        self.make_file("alpine")
        self.make_file("beta")
        self.make_file("alnoexec", mode=0o644)
        sp = SearchPath((self.tmp, "/definitely-not-real-xyz"))
        self.assertEqual(sorted(sp.executables("al")), ["alpha", "alpine"])


class TestExternals(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp)
        self.search = SearchPath.from_environ(os.environ)
        self.launcher = ProcessLauncher()
        self.out = os.path.join(self.tmp, "out.txt")
        self.err = os.path.join(self.tmp, "err.txt")

    def to_files(self, append=False):
        return Redirections(stdout=Redirect(self.out, append), stderr=Redirect(self.err, append))

    def test_argv_quoting(self):
        echo = self.search.resolve("echo")
        code = self.launcher.launch(echo, ["echo", "a b"], self.to_files())
        self.assertEqual(code, 0)
        self.assertEqual(read(self.out), "a b\n")

    def test_stderr_visible(self):
        ls = self.search.resolve("ls")
        code = self.launcher.launch(ls, ["ls", "/definitely-not-real-xyz"], self.to_files())
        self.assertNotEqual(code, 0)
        self.assertTrue(read(self.err).strip() != "")
        self.assertEqual(read(self.out), "")

    def test_append_redirection(self):
        echo = self.search.resolve("echo")
        self.launcher.launch(echo, ["echo", "one"], self.to_files())
        self.launcher.launch(echo, ["echo", "two"], self.to_files(append=True))
        self.assertEqual(read(self.out), "one\ntwo\n")

    def test_truncate_redirection(self):
        echo = self.search.resolve("echo")
        self.launcher.launch(echo, ["echo", "one"], self.to_files())
        self.launcher.launch(echo, ["echo", "two"], self.to_files())
        self.assertEqual(read(self.out), "two\n")

    def test_parent_descriptors_untouched(self):
        echo = self.search.resolve("echo")
        before = os.fstat(1)
        self.launcher.launch(echo, ["echo", "x"], self.to_files())
        after = os.fstat(1)
        self.assertEqual((before.st_dev, before.st_ino), (after.st_dev, after.st_ino))

    def test_permission_126_or_127(self):
        fname = os.path.join(self.tmp, "noexec.sh")
        with open(fname, "w") as f:
            f.write("#!/bin/sh\necho hi\n")
        os.chmod(fname, stat.S_IRUSR | stat.S_IWUSR)
        code = self.launcher.launch(fname, [fname], self.to_files())
        self.assertIn(code, (NOT_EXEC, NOT_FOUND))
        self.assertIn("noexec.sh", read(self.err))

    def test_vanished_executable_127(self):
        code = self.launcher.launch(os.path.join(self.tmp, "gone"), ["gone"], self.to_files())
        self.assertEqual(code, NOT_FOUND)
        self.assertIn("gone:", read(self.err))

    def test_shebang_exec(self):
        fname = os.path.join(self.tmp, "hello.sh")
        with open(fname, "w") as f:
            f.write("#!/bin/sh\necho hello\n")
        os.chmod(fname, stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR)
        code = self.launcher.launch(fname, [fname], self.to_files())
        self.assertEqual(code, 0)
        self.assertEqual(read(self.out), "hello\n")
        self.assertEqual(read(self.err), "")

    def test_exit_status_is_returned(self):
        sh = self.search.resolve("sh")
        self.assertEqual(self.launcher.launch(sh, ["sh", "-c", "exit 3"]), 3)

    def test_unopenable_redirect_fails_only_child(self):
        echo = self.search.resolve("echo")
        bad = Redirections(stderr=Redirect(os.path.join(self.tmp, "no", "such", "dir")))
        code = self.launcher.launch(echo, ["echo", "hi"], bad)
        self.assertEqual(code, 1)


class TestPipeline(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp)
        self.search = SearchPath.from_environ(os.environ)
        self.launcher = ProcessLauncher()
        self.out = os.path.join(self.tmp, "out.txt")

    def stage(self, *argv, redirections=Redirections()):
        return Stage(list(argv), redirections, path=self.search.resolve(argv[0]))

    def test_printf_into_cat(self):
        code = self.launcher.run_pipeline(
            self.stage("printf", "hello"),
            self.stage("cat", redirections=Redirections(stdout=Redirect(self.out))))
        self.assertEqual(code, 0)
        self.assertEqual(read(self.out), "hello")

    def test_large_output_no_deadlock(self):
        py = "import sys; sys.stdout.write('x'*50000)\n"
        code = self.launcher.run_pipeline(
            Stage([sys.executable, "-c", py], path=sys.executable),
            self.stage("wc", "-c", redirections=Redirections(stdout=Redirect(self.out))))
        self.assertEqual(code, 0)
        self.assertEqual(read(self.out).strip(), "50000")

    def test_returns_second_stage_status(self):
        code = self.launcher.run_pipeline(
            self.stage("printf", "x"),
            self.stage("sh", "-c", "cat >/dev/null; exit 4"))
        self.assertEqual(code, 4)

    def test_builtin_stage_writes_into_pipe(self):
        def fake_echo(argv):
            print(" ".join(argv[1:]))
            return 0
        code = self.launcher.run_pipeline(
            Stage(["echo", "from", "builtin"], builtin=fake_echo),
            self.stage("cat", redirections=Redirections(stdout=Redirect(self.out))))
        self.assertEqual(code, 0)
        self.assertEqual(read(self.out), "from builtin\n")

    def test_stage_redirect_wins_over_pipe(self):
        first_out = os.path.join(self.tmp, "first.txt")
        self.launcher.run_pipeline(
            self.stage("printf", "kept", redirections=Redirections(stdout=Redirect(first_out))),
            self.stage("cat", redirections=Redirections(stdout=Redirect(self.out))))
        self.assertEqual(read(first_out), "kept")
        self.assertEqual(read(self.out), "")

    def test_no_descriptor_leak(self):
        before = set(os.listdir("/proc/self/fd")) if os.path.isdir("/proc/self/fd") else None
        self.launcher.run_pipeline(
            self.stage("printf", "x"),
            self.stage("cat", redirections=Redirections(stdout=Redirect(self.out))))
        if before is not None:
            self.assertEqual(set(os.listdir("/proc/self/fd")), before)

    def test_upstream_killed_by_sigpipe_when_reader_exits(self):
        err = os.path.join(self.tmp, "yes.err")
        statuses = []
        real_wait = external_runner._wait

        def recording_wait(pid):
            statuses.append(real_wait(pid))
            return statuses[-1]

        with mock.patch.object(external_runner, "_wait", side_effect=recording_wait):
            code = self.launcher.run_pipeline(
                self.stage("yes", redirections=Redirections(stderr=Redirect(err))),
                self.stage("head", "-n", "1", redirections=Redirections(stdout=Redirect(self.out))))
        self.assertEqual(code, 0)
        self.assertEqual(read(self.out), "y\n")
        self.assertEqual(read(err), "")
        self.assertEqual(statuses[0], -signal.SIGPIPE)


def open_fds():
    return set(os.listdir("/proc/self/fd"))


@unittest.skipUnless(os.path.isdir("/proc/self/fd"), "needs /proc/self/fd")
class TestLaunchFailures(unittest.TestCase):
    def setUp(self):
        self.search = SearchPath.from_environ(os.environ)
        self.launcher = ProcessLauncher()
        self.err = io.StringIO()

    def stage(self, *argv):
        return Stage(list(argv), path=self.search.resolve(argv[0]))

    def eagain(self, *args):
        raise OSError(errno.EAGAIN, "Resource temporarily unavailable")

    def test_fork_failure_skips_command(self):
        with mock.patch("os.fork", side_effect=self.eagain), \
                contextlib.redirect_stderr(self.err):
            code = self.launcher.launch(self.search.resolve("true"), ["true"])
        self.assertEqual(code, 1)
        self.assertEqual(self.err.getvalue(), "fork: Resource temporarily unavailable\n")

    def test_pipe_failure(self):
        def emfile():
            raise OSError(errno.EMFILE, "Too many open files")
        with mock.patch("os.pipe", side_effect=emfile), \
                mock.patch("os.fork") as fork, \
                contextlib.redirect_stderr(self.err):
            code = self.launcher.run_pipeline(self.stage("printf", "x"), self.stage("cat"))
        self.assertEqual(code, 1)
        self.assertEqual(self.err.getvalue(), "pipe: Too many open files\n")
        fork.assert_not_called()

    def test_first_fork_failure_closes_pipe(self):
        before = open_fds()
        with mock.patch("os.fork", side_effect=self.eagain), \
                contextlib.redirect_stderr(self.err):
            code = self.launcher.run_pipeline(self.stage("printf", "x"), self.stage("cat"))
        self.assertEqual(code, 1)
        self.assertTrue(self.err.getvalue().startswith("fork: "))
        self.assertEqual(open_fds(), before)

    def test_second_fork_failure_reaps_first_child(self):
        real_fork = os.fork
        forks = []

        def fork_once():
            if forks:
                self.eagain()
            pid = real_fork()
            forks.append(pid)
            return pid

        waited = []
        real_wait = external_runner._wait

        def recording_wait(pid):
            waited.append(pid)
            return real_wait(pid)

        before = open_fds()
        with mock.patch("os.fork", side_effect=fork_once), \
                mock.patch.object(external_runner, "_wait", side_effect=recording_wait), \
                contextlib.redirect_stderr(self.err):
            code = self.launcher.run_pipeline(self.stage("printf", "x"), self.stage("cat"))
        self.assertEqual(code, 1)
        self.assertTrue(self.err.getvalue().startswith("fork: "))
        self.assertEqual(waited, forks)
        self.assertEqual(open_fds(), before)


if __name__ == "__main__":
    unittest.main(verbosity=2)
