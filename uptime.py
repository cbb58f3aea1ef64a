# Standard library
import logging
import signal
import sys
import time

# Standard library "from" statements
from datetime import datetime
from enum import Enum
from typing import Optional

from echo import WAIT_SLICE, EchoProbe, ProbeOutcome, ProbeStatus
from errors import ProbeCancelled
from runconfig import RunConfig, format_duration
from samplelog import SampleLog, SampleRecord, sample_path


# Add another level to ensure startup messages are always included in logs
START = 100
logging.addLevelName(START, "START")
LOGGER = logging.getLogger("uptime")
LOGGER.setLevel(logging.INFO)

# Log time as a unix timestamp. Not supported directly, so we monkeypatch a logging.Formatter instance
formatter = logging.Formatter("[%(asctime)s]\t[%(levelname)s]:\t %(message)s")
formatter.formatTime = lambda record, datefmt=None: str(int(record.created))

# Format of the timestamps shown to the user in status lines
STATUS_TIME_FORMAT = "%m/%d/%Y %H:%M:%S"


# Attaches handlers for stdout and, optionally, a diagnostic log file
def configure_logging(stdout: bool = True, log_file: Optional[str] = None, verbose: bool = False) -> None:
    LOGGER.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Replace rather than stack handlers if we're configured twice
    for handler in list(LOGGER.handlers):
        LOGGER.removeHandler(handler)
        handler.close()

    if stdout:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setFormatter(formatter)
        LOGGER.addHandler(stdout_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        LOGGER.addHandler(file_handler)

# A human readable line describing one probe
def render_status(outcome: ProbeOutcome, config: RunConfig) -> str:
    when = outcome.timestamp.strftime(STATUS_TIME_FORMAT)
    if outcome.status == ProbeStatus.SUCCESS:
        return (
            f"[{when}] Reply from {outcome.responder}: bytes={config.num_bytes} "
            f"time={outcome.latency_ms}ms TTL={config.ttl} icmp_seq={outcome.sequence}"
        )
    if outcome.status == ProbeStatus.TIMEOUT:
        return f"[{when}] Request timed out. icmp_seq={outcome.sequence}"
    return f"[{when}] Ping failed: {outcome.reason}"


class RunState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"


# Stop request shared by the run loop and the probe. Setting it is a single attribute write,
# so it can be set from a signal handler while the main thread is waiting on it.
class StopFlag:
    def __init__(self):
        self._set = False

    def set(self) -> None:
        self._set = True

    def is_set(self) -> bool:
        return self._set

    # Sleeps until the flag is set or `timeout` seconds have passed, returning the flag
    def wait(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while not self._set:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(remaining, WAIT_SLICE))
        return self._set


# Pings the configured target every `delay` until asked to stop
class Monitor:
    def __init__(self, config: RunConfig, probe=None, stop=None):
        self.config = config
        self.probe = probe if probe is not None else EchoProbe(config.address)
        self.stop = stop if stop is not None else StopFlag()
        self.state = RunState.RUNNING
        self.sequence = 0
        self.log: Optional[SampleLog] = None
        self.successes = 0
        self.last_success: Optional[ProbeOutcome] = None
        self.last_failure: Optional[ProbeOutcome] = None
        self.stop_signal: Optional[int] = None

    # Safe to install directly as a SIGINT/SIGTERM handler
    def request_stop(self, signum=None, frame=None) -> None:
        self.stop_signal = signum
        self.stop.set()

    # Returns the open log for samples taken at `when`, moving to a new file when the day changes
    def _log_for(self, when: datetime) -> SampleLog:
        path = sample_path(self.config.output_dir, when)
        if self.log is None or self.log.path != path:
            if self.log is not None:
                self.log.close()
                LOGGER.info(f"Switching to sample log {path}")
            self.log = SampleLog(path).open()
        return self.log

    def _remember(self, outcome: ProbeOutcome) -> None:
        if outcome.status == ProbeStatus.SUCCESS:
            self.successes += 1
            self.last_success = outcome
            LOGGER.info(render_status(outcome, self.config))
        else:
            self.last_failure = outcome
            LOGGER.warning(render_status(outcome, self.config))

    # Sends one probe and records it
    def cycle(self) -> ProbeOutcome:
        self.sequence += 1
        outcome = self.probe.probe(self.config, self.sequence, self.stop)
        self._log_for(outcome.timestamp).append(SampleRecord.from_outcome(outcome))
        self._remember(outcome)
        return outcome

    def run(self, max_cycles: Optional[int] = None) -> None:
        delay = self.config.delay.total_seconds()

        # Log the startup message (important as it has the target and delay period) on high priority
        LOGGER.log(START, f"Beginning to monitor {self.config.address} every {format_duration(self.config.delay, 's')}")
        try:
            self._log_for(datetime.now().astimezone())
            while not self.stop.is_set():
                start_time = time.monotonic()
                try:
                    self.cycle()
                except ProbeCancelled:
                    break

                if max_cycles is not None and self.sequence >= max_cycles:
                    break

                # Wait until delay seconds after we started pinging the target, waking early if stopped
                elapsed = time.monotonic() - start_time
                self.stop.wait(max(delay - elapsed, 0))
        finally:
            self.state = RunState.STOPPED
            if self.stop_signal is not None:
                LOGGER.info(f"Received {signal.Signals(self.stop_signal).name}, stopping")
            if self.log is not None:
                self.log.close()
            self.probe.close()
            LOGGER.log(START, self.summary())

    def summary(self) -> str:
        def when(outcome: Optional[ProbeOutcome]) -> str:
            return "N/A" if outcome is None else outcome.timestamp.strftime(STATUS_TIME_FORMAT)

        last_success = when(self.last_success)
        if self.last_success is not None:
            last_success += f" ({self.last_success.latency_ms}ms)"
        return (
            f"Stopped monitoring {self.config.address} after {self.sequence} probes, {self.successes} replies. "
            f"Last successful ping: {last_success}. Last failed ping: {when(self.last_failure)}"
        )
