"""Supervision of long-running storage operations and their progress."""

import logging
import os
import signal
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .errors import ConflictError
from .models import OperationKind, OperationState, OperationStatus
from .progress import EffectiveProgress, ProgressParser, is_nothing_to_do
from .system_executor import CommandType, SystemCommandExecutor


logger = logging.getLogger(__name__)

ESTIMATE_INTERVAL_SECONDS = 0.5
ESTIMATE_STATUS_TEXT = "Initializing parity data..."

StatusCallback = Callable[[OperationStatus], None]


class OperationTracker:
    """
    Owner of the single OperationStatus for one operation kind.

    All reads and writes go through the lock, so the "already running"
    check and the transition to running happen as one step even when
    requests arrive concurrently. Reads return copies.
    """

    def __init__(self, kind: OperationKind):
        self.kind = kind
        self._lock = threading.Lock()
        self._status = OperationStatus(kind=kind)
        self._process = None
        self._done = threading.Event()
        self._done.set()

    def snapshot(self) -> OperationStatus:
        with self._lock:
            return self._status.copy()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._status.running

    def begin(self,
              status_text: str = "",
              step: str = "",
              launch: Optional[Callable[[], object]] = None) -> Tuple[OperationStatus, object]:
        """
        Move from idle or a terminal state to running.

        Args:
            status_text: Initial status text
            step: Initial step name (multi-step operations)
            launch: Called under the lock to spawn the process; an OSError
                from it fails the operation without it ever running

        Returns:
            Tuple of (status snapshot, launched process or None)

        Raises:
            ConflictError: If an operation of this kind is already running
        """
        with self._lock:
            if self._status.running:
                raise ConflictError(self.kind.value, self._status.progress)

            now = datetime.now()
            process = None
            if launch is not None:
                try:
                    process = launch()
                except OSError as exc:
                    logger.error(f"{self.kind.value} failed to start: {exc}")
                    self._status = OperationStatus(
                        kind=self.kind,
                        state=OperationState.FAILED,
                        status_text=f"{self.kind.value.capitalize()} failed to start",
                        start_time=now,
                        end_time=now,
                        error=str(exc),
                        step=step,
                    )
                    self._done.set()
                    return self._status.copy(), None

            self._status = OperationStatus(
                kind=self.kind,
                state=OperationState.RUNNING,
                status_text=status_text,
                start_time=now,
                step=step,
            )
            self._process = process
            self._done.clear()
            logger.info(f"{self.kind.value} operation started")
            return self._status.copy(), process

    def mutate(self, apply: Callable[[OperationStatus], None]) -> bool:
        """
        Apply a change to the live status while it is running.

        Returns:
            False if the operation is no longer running (the change is dropped)
        """
        with self._lock:
            if not self._status.running:
                return False
            apply(self._status)
            self._status.progress = max(0, min(100, int(self._status.progress)))
            return True

    def update(self,
               progress: Optional[int] = None,
               status_text: Optional[str] = None,
               step: Optional[str] = None) -> bool:
        def apply(status: OperationStatus) -> None:
            if progress is not None:
                status.progress = progress
            if status_text is not None:
                status.status_text = status_text
            if step is not None:
                status.step = step
        return self.mutate(apply)

    def finish(self,
               state: OperationState,
               progress: Optional[int] = None,
               status_text: Optional[str] = None,
               error: Optional[str] = None,
               exit_code: Optional[int] = None,
               step: Optional[str] = None) -> OperationStatus:
        """
        Move a running operation to a terminal state.

        A status that already left running (for example after cancel) is
        not overwritten.
        """
        with self._lock:
            if self._status.running:
                status = self._status
                status.state = state
                if progress is not None:
                    status.progress = max(0, min(100, int(progress)))
                if status_text is not None:
                    status.status_text = status_text
                if step is not None:
                    status.step = step
                status.error = error
                status.exit_code = exit_code
                status.end_time = datetime.now()
                self._process = None
                self._done.set()
                logger.info(f"{self.kind.value} operation {state.value}")
            return self._status.copy()

    def cancel(self) -> bool:
        """
        Cancel a running operation and signal its process group.

        Returns:
            True if something was running
        """
        with self._lock:
            if not self._status.running:
                return False
            process = self._process
            self._status.state = OperationState.CANCELLED
            self._status.status_text = "Cancelled"
            self._status.error = "Operation cancelled"
            self._status.end_time = datetime.now()
            self._process = None
            self._done.set()

        if process is not None and getattr(process, "pid", 0) > 0:
            try:
                os.killpg(os.getpgid(process.pid), signal.SIGTERM)
            except ProcessLookupError:
                logger.debug(f"{self.kind.value} process already exited")
        logger.info(f"{self.kind.value} operation cancelled")
        return True

    def wait(self, timeout: Optional[float] = None) -> OperationStatus:
        self._done.wait(timeout)
        return self.snapshot()


def classify_exit(returncode: int, output: str, label: str) -> Tuple[OperationState, Dict]:
    """
    Decide the terminal state of a finished process.

    Exit code 0 completes at 100%. A nonzero exit whose output says there
    was nothing to do is a successful no-op. Anything else fails with the
    exit code in the error.

    Returns:
        Tuple of (state, keyword arguments for OperationTracker.finish)
    """
    if returncode == 0:
        return OperationState.COMPLETED, {
            "progress": 100,
            "status_text": f"{label} completed successfully",
            "exit_code": 0,
        }
    if is_nothing_to_do(output):
        return OperationState.COMPLETED, {
            "progress": 100,
            "status_text": "Already in sync (nothing to do)",
            "exit_code": returncode,
        }
    return OperationState.FAILED, {
        "status_text": f"{label} failed",
        "error": f"{label} exited with code {returncode}",
        "exit_code": returncode,
    }


class OperationSupervisor:
    """Runs external tools as tracked operations, one per kind at a time."""

    def __init__(self,
                 executor: SystemCommandExecutor,
                 estimate_interval: float = ESTIMATE_INTERVAL_SECONDS,
                 progress_factory: Callable[[], EffectiveProgress] = EffectiveProgress):
        """
        Args:
            executor: Command executor used to spawn processes
            estimate_interval: Seconds between synthetic progress ticks
            progress_factory: Builds the progress reducer for each run
        """
        self.executor = executor
        self.estimate_interval = estimate_interval
        self._progress_factory = progress_factory
        self._trackers = {kind: OperationTracker(kind) for kind in OperationKind}

    def tracker(self, kind: OperationKind) -> OperationTracker:
        return self._trackers[kind]

    def status(self, kind: OperationKind) -> OperationStatus:
        """Read-only snapshot of an operation's status."""
        return self._trackers[kind].snapshot()

    def wait(self, kind: OperationKind, timeout: Optional[float] = None) -> OperationStatus:
        return self._trackers[kind].wait(timeout)

    def cancel(self, kind: OperationKind) -> bool:
        return self._trackers[kind].cancel()

    def start(self,
              kind: OperationKind,
              command_type: CommandType,
              args: List[str],
              label: Optional[str] = None,
              estimate: bool = True,
              on_progress: Optional[StatusCallback] = None,
              on_exit: Optional[StatusCallback] = None) -> OperationStatus:
        """
        Spawn a tool as a background operation.

        Returns immediately. Output is parsed line by line on a reader
        thread; failures after this point are recorded in the status only.

        Args:
            kind: Operation kind (one running instance at a time)
            command_type: Allow-listed command to run
            args: Command arguments
            label: Human-readable name used in status text
            estimate: Run the synthetic progress estimator
            on_progress: Called with a snapshot after each progress change
            on_exit: Called with the final snapshot

        Returns:
            Status snapshot: running, or failed if the process could not start

        Raises:
            ConflictError: If this kind is already running (nothing is spawned)
        """
        label = label or kind.value.capitalize()
        tracker = self._trackers[kind]
        status, process = tracker.begin(
            status_text=f"Starting {label.lower()}...",
            launch=lambda: self.executor.spawn(command_type, args),
        )
        if process is None:
            if on_exit:
                on_exit(status)
            return status

        reducer = self._progress_factory()
        stop = threading.Event()
        if estimate:
            threading.Thread(
                target=self._estimate,
                args=(tracker, reducer, stop),
                name=f"{kind.value}-estimator",
                daemon=True
            ).start()

        threading.Thread(
            target=self._watch,
            args=(tracker, process, reducer, stop, label, on_progress, on_exit),
            name=f"{kind.value}-watcher",
            daemon=True
        ).start()

        return status

    def run_blocking(self,
                     kind: OperationKind,
                     command_type: CommandType,
                     args: List[str],
                     timeout: Optional[int] = None,
                     label: Optional[str] = None) -> OperationStatus:
        """
        Run a tool to completion in the caller's thread.

        The same conflict rule applies, and the outcome is recorded in the
        kind's status as well as returned.

        Raises:
            ConflictError: If this kind is already running
        """
        label = label or kind.value.capitalize()
        tracker = self._trackers[kind]
        tracker.begin(status_text=f"Running {label.lower()}...")

        try:
            success, stdout, stderr = self.executor.run(command_type, args, timeout=timeout)
        except ValueError as exc:
            return tracker.finish(OperationState.FAILED, status_text=f"{label} failed", error=str(exc))

        if success:
            return tracker.finish(OperationState.COMPLETED, progress=100,
                                  status_text=f"{label} completed successfully", exit_code=0)
        if is_nothing_to_do(stdout + stderr):
            return tracker.finish(OperationState.COMPLETED, progress=100,
                                  status_text="Already in sync (nothing to do)")
        return tracker.finish(OperationState.FAILED, status_text=f"{label} failed",
                              error=stderr.strip() or f"{label} failed")

    def _watch(self, tracker: OperationTracker, process, reducer: EffectiveProgress,
               stop: threading.Event, label: str,
               on_progress: Optional[StatusCallback],
               on_exit: Optional[StatusCallback]) -> None:
        parser = ProgressParser(label)
        output: List[str] = []

        try:
            for line in iter(process.stdout.readline, ""):
                output.append(line)
                update = parser.parse_line(line)
                if update.empty:
                    continue

                def apply(status: OperationStatus) -> None:
                    if update.completed:
                        reducer.complete()
                    elif update.progress is not None:
                        reducer.observe(update.progress)
                    status.progress = reducer.value
                    if update.status_text:
                        status.status_text = update.status_text

                if tracker.mutate(apply) and on_progress:
                    on_progress(tracker.snapshot())

            returncode = process.wait()
        except (OSError, ValueError) as exc:
            stop.set()
            logger.error(f"{label} output stream failed: {exc}")
            final = tracker.finish(OperationState.FAILED, status_text=f"{label} failed", error=str(exc))
        else:
            stop.set()
            state, fields = classify_exit(returncode, "".join(output), label)
            if state == OperationState.FAILED:
                logger.error(fields["error"])
            final = tracker.finish(state, **fields)

        if on_exit:
            on_exit(final)

    def _estimate(self, tracker: OperationTracker, reducer: EffectiveProgress,
                  stop: threading.Event) -> None:
        def apply(status: OperationStatus) -> None:
            if not reducer.estimating:
                return
            before = status.progress
            status.progress = reducer.tick()
            if status.progress > before:
                status.status_text = ESTIMATE_STATUS_TEXT

        while not stop.wait(self.estimate_interval):
            if not tracker.mutate(apply):
                break
