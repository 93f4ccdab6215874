import logging
import os
import resource
import signal
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_TMP_DIR = "/tmp"
DEFAULT_LOGS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs")

POLL_INTERVAL = 1          # supervisor fill/reap/drain cycle
FAILURE_BACKOFF = 1        # pause after a work unit raised
LOOP_PAUSE = 0.0005        # pause between two work unit invocations
WORKER_EXIT_PAUSE = 0.001
RESTART_GRACE = 3
STOP_POLL_INTERVAL = 0.1
PROC_DIR = "/proc"

HANDLED_SIGNALS = [
    signal.SIGTERM,
    signal.SIGINT,
    signal.SIGHUP,
    signal.SIGUSR1,
    signal.SIGTSTP,
    signal.SIGTTOU,
]

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(process)d] %(message)s'


def setup_logging(stream=None):
    logging.basicConfig(
        stream=stream or sys.stderr,
        level=logging.INFO,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True,
    )


def log_event(event: str, **details):
    msg = event
    if details:
        kv = " ".join(f"{k}={v}" for k, v in details.items())
        msg = f"{event} | {kv}"
    logging.info(msg)


class Role(Enum):
    SUPERVISOR = "supervisor"
    WORKER = "worker"


class LoopResult(Enum):
    CONTINUE = "continue"
    STOP = "stop"
    FAILED = "failed"


def is_stop(result) -> bool:
    """False is accepted as the stop sentinel next to LoopResult.STOP."""
    return result is LoopResult.STOP or result is LoopResult.FAILED or result is False


@dataclass
class ProcessContext:
    """Per-process state: who we are, whether we are shutting down and our workers."""
    role: Role = Role.SUPERVISOR
    shutdown: bool = False
    workers: dict = field(default_factory=dict)  # pid -> pid

    def request_shutdown(self) -> bool:
        """Flip the shutdown flag. Returns True only for the first request."""
        if self.shutdown:
            return False
        self.shutdown = True
        return True


class ProcessRegistry:
    """Supervisor pids of one task, stored comma-joined in a pid file."""

    def __init__(self, path):
        self.path = path

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def _read_raw(self) -> str:
        try:
            with open(self.path, 'r') as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""

    def read(self) -> list:
        pids = []
        for part in self._read_raw().split(','):
            part = part.strip()
            if part.isdecimal() and int(part) > 0:
                pids.append(int(part))
        return pids

    def prepare(self):
        """Make sure the pid file can be written before anything is forked."""
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        if not os.access(directory, os.W_OK):
            raise PermissionError(f"{directory} is not writable")

    def append(self, pid: int):
        self.prepare()
        content = self._read_raw()
        content = f"{content},{pid}" if content else str(pid)
        with open(self.path, 'w') as f:
            f.write(content)

    def clear(self):
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


def handle_signal(ctx: ProcessContext, signum):
    """Mark the process as shutting down; a supervisor also relays the signal to its workers."""
    if ctx.request_shutdown():
        log_event("SHUTDOWN_SIGNAL_RECEIVED", signal=signal.Signals(signum).name, role=ctx.role.value)
    if ctx.role is not Role.SUPERVISOR:
        return
    for pid in list(ctx.workers):
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            # already gone, the next reap removes it
            pass


def install_signal_handlers(ctx: ProcessContext):
    def _handler(signum, frame):
        handle_signal(ctx, signum)

    for signum in dict.fromkeys(HANDLED_SIGNALS):
        signal.signal(signum, _handler)


def execute(task, ctx: ProcessContext, options) -> int:
    """Run the work unit until it asks to stop, fails, or shutdown is requested.

    Returns the number of invocations made.
    """
    invocations = 0
    while not ctx.shutdown:
        try:
            result = task.loop(options)
        except Exception as e:
            logging.exception(f"{task.cmd} work unit failed: {e}")
            result = LoopResult.FAILED
            time.sleep(FAILURE_BACKOFF)
        invocations += 1
        if is_stop(result):
            log_event("WORKER_LOOP_STOPPED", task=task.cmd, invocations=invocations,
                      failed=result is LoopResult.FAILED)
            break
        time.sleep(LOOP_PAUSE)
    return invocations


def run_worker(task, options):
    """Body of a forked worker. Never returns."""
    code = 0
    try:
        ctx = ProcessContext(role=Role.WORKER)
        task.context = ctx
        install_signal_handlers(ctx)
        signal.pthread_sigmask(signal.SIG_UNBLOCK, HANDLED_SIGNALS)
        task.init(options)
        execute(task, ctx, options)
        time.sleep(WORKER_EXIT_PAUSE)
    except Exception:
        logging.exception(f"{task.cmd} worker aborted")
        code = 1
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(code)


def spawn_worker(task, ctx: ProcessContext, options):
    """Fork one worker and track it. Returns the pid, or None if nothing was forked."""
    if ctx.shutdown:
        return None
    # keep signals out of the window between fork and registration
    signal.pthread_sigmask(signal.SIG_BLOCK, HANDLED_SIGNALS)
    try:
        try:
            pid = os.fork()
        except OSError as e:
            logging.error(f"Fork failed: {e}")
            return None
        if pid == 0:
            run_worker(task, options)
        ctx.workers[pid] = pid
    finally:
        signal.pthread_sigmask(signal.SIG_UNBLOCK, HANDLED_SIGNALS)
    log_event("WORKER_SPAWNED", pid=pid, pool=len(ctx.workers))
    return pid


def reap_one(ctx: ProcessContext):
    """Non-blocking reap of one exited child. Returns its pid or None."""
    try:
        pid, status = os.waitpid(-1, os.WNOHANG)
    except ChildProcessError:
        if ctx.workers:
            log_event("WORKER_POOL_LOST", pids=",".join(str(p) for p in ctx.workers))
            ctx.workers.clear()
        return None
    if pid <= 0:
        return None
    ctx.workers.pop(pid, None)
    log_event("WORKER_REAPED", pid=pid, exit_code=os.waitstatus_to_exitcode(status), pool=len(ctx.workers))
    return pid


def run_supervisor(task, ctx: ProcessContext, options):
    """Keep task.worker_count workers alive until shutdown, then wait for all of them."""
    log_event("SUPERVISOR_STARTED", task=task.cmd, workers=task.worker_count)
    while not ctx.shutdown:
        while len(ctx.workers) < task.worker_count and not ctx.shutdown:
            if spawn_worker(task, ctx, options) is None:
                break
        reap_one(ctx)
        time.sleep(POLL_INTERVAL)

    log_event("SUPERVISOR_DRAINING", task=task.cmd, workers=len(ctx.workers))
    while ctx.workers:
        if reap_one(ctx) is None:
            time.sleep(POLL_INTERVAL)
    log_event("SUPERVISOR_DRAINED", task=task.cmd)


def redirect_standard_streams(log_path):
    """Point stdin at /dev/null and stdout/stderr at the task log (append or create)."""
    os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
    sys.stdout.flush()
    sys.stderr.flush()
    devnull = os.open(os.devnull, os.O_RDONLY)
    logfd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    os.dup2(devnull, 0)
    os.dup2(logfd, 1)
    os.dup2(logfd, 2)
    os.close(devnull)
    os.close(logfd)
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)


def is_zombie(pid: int) -> bool:
    try:
        with open(os.path.join(PROC_DIR, str(pid), "stat"), "r") as f:
            stat = f.read()
    except OSError:
        return False
    # the state follows the parenthesised command name, which may itself hold spaces
    fields = stat.rpartition(")")[2].split()
    return bool(fields) and fields[0] == "Z"


def wait_for_exit(pid: int, poll=STOP_POLL_INTERVAL):
    """Block until pid is gone, reaping it when it is our own child."""
    try:
        os.waitpid(pid, 0)
        return
    except ChildProcessError:
        # detached supervisors belong to init, poll for them instead
        pass
    while True:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return
        except PermissionError:
            # pid was recycled by another user
            return
        if is_zombie(pid):
            # exited, but its new parent never reaps it
            return
        time.sleep(poll)


class MonitoredTask(ABC):
    """A repeatable unit of work run as a daemonized pool of worker processes.

    Subclasses implement loop(); arg_valid(), set_up() and init() are optional hooks.
    Returning LoopResult.STOP (or False) from loop() ends the calling worker;
    the supervisor forks a replacement on its next cycle unless it is shutting down.
    """

    worker_count = 2
    memory_limit = None    # MiB, applied to the daemon and inherited by workers
    options_help = {}

    def __init__(self, cmd, tmp_dir=DEFAULT_TMP_DIR, logs_dir=DEFAULT_LOGS_DIR):
        self.cmd = cmd
        self.tmp_dir = tmp_dir
        self.logs_dir = logs_dir
        self.context = ProcessContext()
        self.pidfile = os.path.join(tmp_dir, f".{self.pid_filename(cmd)}.pid")
        self.log_path = os.path.join(logs_dir, cmd.replace(':', '.') + '.log')
        self.registry = ProcessRegistry(self.pidfile)

    def pid_filename(self, cmd) -> str:
        return cmd.replace(':', '-')

    def arg_desc(self) -> str:
        return '<start|stop|restart|status|help>'

    def arg_valid(self, options) -> bool:
        return True

    def set_up(self, options):
        """Runs once in the daemon, before any worker is forked."""

    def init(self, options):
        """Runs once in each worker, before its first loop()."""

    @abstractmethod
    def loop(self, options):
        ...

    def set_max_memory(self, megabytes):
        limit = int(megabytes) * 1024 * 1024
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard != resource.RLIM_INFINITY:
            limit = min(limit, hard)
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))

    def error(self, msg):
        print(msg, file=sys.stderr)

    def usage(self) -> str:
        lines = [f"Usage: poolmasterctl.py {self.cmd} {self.arg_desc()} [-o KEY=VALUE ...]"]
        doc = (self.__class__.__doc__ or "").strip()
        if doc:
            lines.append("")
            lines.append(doc.splitlines()[0])
        if self.options_help:
            lines.append("")
            lines.append("Options:")
            width = max(len(k) for k in self.options_help)
            for key, desc in self.options_help.items():
                lines.append(f"  {key.ljust(width)}  {desc}")
        return "\n".join(lines)

    def help(self):
        print(self.usage())

    def run(self, op, options=None) -> int:
        if not hasattr(os, 'fork'):
            self.error('os.fork is not available on this platform, a POSIX host is required!')
            sys.exit(1)
        options = dict(options or {})
        if op == 'start':
            if not self.arg_valid(options):
                self.help()
                return 1
            if self.registry.exists():
                self.status()
                return 0
            return self.start(options)
        elif op == 'stop':
            self.stop()
        elif op == 'restart':
            if not self.arg_valid(options):
                self.help()
                sys.exit(1)
            self.stop()
            time.sleep(RESTART_GRACE)
            return self.start(options)
        elif op == 'help':
            self.help()
        else:
            self.status()
        return 0

    def start(self, options) -> int:
        try:
            self.registry.prepare()
        except OSError as e:
            self.error(f"[{self.cmd}] Cannot write pid file {self.pidfile}: {e}")
            return 1
        try:
            pid = os.fork()
        except OSError as e:
            self.error(f"[{self.cmd}] Fork failed: {e}")
            return 1
        if pid > 0:
            try:
                self.registry.append(pid)
            except OSError as e:
                # an unrecorded daemon could never be stopped
                self.error(f"[{self.cmd}] Cannot record pid {pid} in {self.pidfile}: {e}")
                os.kill(pid, signal.SIGTERM)
                return 1
            return 0
        self._run_daemon(options)

    def _run_daemon(self, options):
        """Daemon side of start(). Never returns."""
        code = 0
        try:
            os.umask(0)
            try:
                os.setsid()
            except OSError:
                self.error(f"[{self.cmd}] Could not detach session id.")
                code = 1
                return
            self.set_up(options)
            if self.memory_limit:
                self.set_max_memory(self.memory_limit)
            redirect_standard_streams(self.log_path)
            setup_logging()
            install_signal_handlers(self.context)
            run_supervisor(self, self.context, options)
        except Exception:
            logging.exception(f"{self.cmd} supervisor crashed")
            code = 1
        finally:
            sys.stdout.flush()
            sys.stderr.flush()
            os._exit(code)

    def stop(self):
        pids = self.registry.read()
        if not pids:
            self.error(f"{self.cmd} is not running")
            return
        self.registry.clear()
        for pid in pids:
            try:
                os.kill(pid, signal.SIGTERM)
            except OSError:
                self.error(f"Cannot stop {self.cmd} [{pid}], please kill it manually.")
                continue
            wait_for_exit(pid)

    def status(self):
        pids = self.registry.read()
        if not pids:
            print(f"{self.cmd} is not running")
            return
        print(f"{self.cmd} process:")
        for pid in pids:
            print(f"  |-- {pid} is Running")
