import shlex
import subprocess
import time

from poolmasterd import LoopResult, MonitoredTask, log_event


class HeartbeatTask(MonitoredTask):
    """Log a heartbeat from every worker at a fixed interval."""

    options_help = {
        'interval': 'seconds between two heartbeats (default: 1)',
        'beats': 'end the worker after this many heartbeats, it is then replaced (optional)',
    }

    def arg_valid(self, options):
        try:
            interval = float(options.get('interval', 1))
            beats = int(options.get('beats', 0))
        except (TypeError, ValueError):
            return False
        return interval > 0 and beats >= 0

    def init(self, options):
        self.beats = 0

    def loop(self, options):
        self.beats += 1
        log_event("HEARTBEAT", task=self.cmd, beat=self.beats)
        limit = int(options.get('beats', 0))
        if limit and self.beats >= limit:
            return LoopResult.STOP
        time.sleep(float(options.get('interval', 1)))
        return LoopResult.CONTINUE


class CommandTask(MonitoredTask):
    """Run a command over and over, one copy per worker."""

    options_help = {
        'command': 'command line to run (required)',
        'interval': 'seconds to wait after each run (default: 1)',
        'workingdir': 'working directory of the command (default: inherited)',
        'timeout': 'kill a run taking longer than this many seconds (optional)',
    }

    def arg_valid(self, options):
        command = options.get('command')
        if not command:
            return False
        try:
            if not shlex.split(str(command)):
                return False
            float(options.get('interval', 1))
            if options.get('timeout') is not None:
                float(options['timeout'])
        except ValueError:
            return False
        return True

    def init(self, options):
        self.argv = shlex.split(str(options['command']))

    def loop(self, options):
        timeout = options.get('timeout')
        result = subprocess.run(
            self.argv,
            cwd=options.get('workingdir') or None,
            timeout=float(timeout) if timeout is not None else None,
        )
        if result.returncode != 0:
            raise RuntimeError(f"{self.argv[0]} exited with code {result.returncode}")
        time.sleep(float(options.get('interval', 1)))
        return LoopResult.CONTINUE
