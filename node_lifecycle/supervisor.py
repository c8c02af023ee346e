"""
Supervision of node processes driven by their standard output.

A run spawns the node binary, reads its stdout line by line in arrival
order, echoes every line unmodified and evaluates the run's marker table
against it. A ``STOP`` marker kills the process; a ``READY`` marker runs the
operator's shell command once per run. The supervisor always waits for the
process to exit before returning.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence

from . import markers as node_markers
from .errors import CallbackError, OperationCancelled, SpawnError
from .models import Marker, MarkerAction, RunOutcome, RunState, Settings

logger = logging.getLogger(__name__)

EchoSink = Callable[[str], None]
CallbackRunner = Callable[[str], None]


def echo_line(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def resolve_binary(binary: str) -> str:
    """
    Return the executable path for ``binary`` or raise ``SpawnError``.
    """
    resolved = shutil.which(str(binary))
    if resolved is None:
        raise SpawnError(f"{binary} not found in PATH", context={"binary": str(binary)})
    return resolved


def run_callback(command: str) -> None:
    """
    Run ``command`` with the default shell and block until it finishes.
    """
    logger.info("Running ready command: %s", command)
    try:
        result = subprocess.run(command, shell=True)
    except OSError as exc:
        raise SpawnError(f"Failed to launch ready command {command!r}: {exc}") from exc
    if result.returncode != 0:
        raise CallbackError(command, result.returncode)
    logger.info("Ready command finished")


class NodeHandle:
    """One running node process and the reader attached to its stdout."""

    def __init__(self, binary: str, args: Sequence[str], process: subprocess.Popen) -> None:
        self.binary = binary
        self.args = tuple(args)
        self.process = process

    @classmethod
    def spawn(cls, binary: str, args: Sequence[str]) -> "NodeHandle":
        cmd = [str(binary), *args]
        logger.info("[RUN] %s", " ".join(repr(a) if a == "" else a for a in cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise SpawnError(f"Failed to start {binary}: {exc}", context={"binary": str(binary)}) from exc
        return cls(str(binary), args, process)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.poll() is None

    def lines(self) -> Iterator[str]:
        stdout = self.process.stdout
        if stdout is None:
            return
        for raw in stdout:
            yield raw.rstrip("\r\n")

    def kill(self) -> None:
        if self.alive:
            logger.info("Killing %s (pid %d)", self.binary, self.pid)
            self.process.kill()

    def wait(self) -> int:
        returncode = self.process.wait()
        if self.process.stdout is not None:
            self.process.stdout.close()
        return returncode


@dataclass(slots=True)
class _RunFlags:
    on_ready: Optional[str]
    ready_fired: bool = False


class NodeSupervisor:
    def __init__(
        self,
        echo: Optional[EchoSink] = None,
        callback_runner: Optional[CallbackRunner] = None,
    ) -> None:
        self.echo = echo or echo_line
        self.callback_runner = callback_runner or run_callback

    def _evaluate(self, line: str, table: Sequence[Marker], flags: _RunFlags) -> Optional[Marker]:
        for marker in table:
            if not marker.matches(line):
                continue
            if marker.action is MarkerAction.READY:
                if flags.on_ready and not flags.ready_fired:
                    self.callback_runner(flags.on_ready)
                    flags.ready_fired = True
            elif marker.action is MarkerAction.STOP:
                return marker
            else:
                logger.info("Observed %s: %s", marker.name, line)
        return None

    def run(
        self,
        binary: str,
        args: Sequence[str],
        table: Sequence[Marker],
        on_ready: Optional[str] = None,
    ) -> RunOutcome:
        """
        Spawn ``binary`` with ``args`` and supervise it until it stops.
        """
        outcome = RunOutcome(binary=str(binary), args=tuple(args), state=RunState.STARTING)
        handle = NodeHandle.spawn(binary, args)
        outcome.state = RunState.RUNNING
        flags = _RunFlags(on_ready=on_ready)

        try:
            for line in handle.lines():
                outcome.lines_seen += 1
                self.echo(line)
                marker = self._evaluate(line, table, flags)
                if marker is not None:
                    logger.info("Matched %r, stopping %s", marker.pattern, handle.binary)
                    handle.kill()
                    outcome.state = RunState.STOPPED_KILLED
                    outcome.stopped_by = marker.name
                    break
        except KeyboardInterrupt:
            handle.kill()
            outcome.returncode = handle.wait()
            outcome.state = RunState.CANCELLED
            outcome.ready_fired = flags.ready_fired
            raise OperationCancelled(f"Interrupted while running {handle.binary}") from None
        except BaseException:
            handle.kill()
            handle.wait()
            raise

        outcome.returncode = handle.wait()
        outcome.ready_fired = flags.ready_fired
        if outcome.state is RunState.RUNNING:
            if outcome.returncode == 0:
                outcome.state = RunState.STOPPED_NORMAL
            else:
                outcome.state = RunState.STOPPED_CRASHED
                logger.warning("%s exited with status %s", handle.binary, outcome.returncode)
        logger.info("%s stopped: %s", handle.binary, outcome.state.value)
        return outcome

    def run_testnet(
        self,
        settings: Settings,
        upgrade_handler: Optional[str] = None,
        new_binary: Optional[str] = None,
        on_ready: Optional[str] = None,
    ) -> List[RunOutcome]:
        """
        Run the in-place testnet and, when an upgrade is configured, hand off
        to the replacement binary once the first process has stopped.

        With an upgrade handler the ready command is deferred to the
        post-upgrade run.
        """
        if new_binary and not upgrade_handler:
            logger.warning("Ignoring replacement binary %s: no upgrade handler set", new_binary)
            new_binary = None
        if upgrade_handler and not new_binary and on_ready:
            logger.warning("Upgrade handler set without a replacement binary; ready command will not run")

        pre_upgrade_ready = on_ready if not upgrade_handler else None
        outcomes = [
            self.run(
                settings.binary,
                node_markers.in_place_testnet_args(settings, upgrade_handler),
                node_markers.testnet_markers(settings, with_ready=pre_upgrade_ready is not None),
                on_ready=pre_upgrade_ready,
            )
        ]

        if new_binary:
            logger.info("Handing off to %s", new_binary)
            outcomes.append(
                self.run(
                    new_binary,
                    node_markers.isolated_start_args(settings.home),
                    node_markers.standalone_markers(settings, with_ready=on_ready is not None),
                    on_ready=on_ready,
                )
            )
        return outcomes
