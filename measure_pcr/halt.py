"""Stop the boot when the measured state cannot be trusted.

The actual halt is done by the init process. The validator only asks systemd
to show the console (SIGRTMIN+21), gives the operator a few seconds to read
the reason, and then asks it to halt the machine (SIGRTMIN+20).
"""

import os
import select
import sys
import termios
import time
import tty
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, TextIO

from measure_pcr import measure_logging
from measure_pcr.config import ValidatorConfig

logger = measure_logging.init_logging("halt")

WHITE = "\033[1;37m"
LIGHT_BLUE = "\033[1;34m"
END = "\033[m"

BANNER_WIDTH = 69
HALT_PROMPT = "*** The system will be halted. Press any key ..."


class AlertChannel(ABC):
    """Hand over the console to the operator and request the halt."""

    @abstractmethod
    def start_alert(self) -> None:
        pass

    @abstractmethod
    def resolve_and_halt(self) -> None:
        pass


class InitSignalChannel(AlertChannel):
    def __init__(self, pid: int, start_alert_signal: int, halt_signal: int):
        self.pid = pid
        self.start_alert_signal = start_alert_signal
        self.halt_signal = halt_signal

    @classmethod
    def from_config(cls, cfg: ValidatorConfig) -> "InitSignalChannel":
        return cls(cfg.init_pid, cfg.start_alert_signal, cfg.halt_signal)

    def _send(self, signum: int) -> None:
        try:
            os.kill(self.pid, signum)
        except OSError as e:
            # The failed exit status of the unit still holds back the volumes
            logger.error("Unable to send signal %d to PID %d: %s", signum, self.pid, e)

    def start_alert(self) -> None:
        self._send(self.start_alert_signal)

    def resolve_and_halt(self) -> None:
        self._send(self.halt_signal)


class LoggingAlertChannel(AlertChannel):
    """Only report the requests, used when the halt is disabled."""

    def start_alert(self) -> None:
        logger.info("Not signaling init to start the alert")

    def resolve_and_halt(self) -> None:
        logger.info("Not signaling init to halt the system")


class Console:
    def __init__(self, output: Optional[TextIO] = None, input_: Optional[TextIO] = None, colors: bool = True):
        self.output = output if output is not None else sys.stdout
        self.input = input_ if input_ is not None else sys.stdin
        self.colors = colors

    def _color(self, color: str, text: str) -> str:
        if not self.colors:
            return text
        return f"{color}{text}{END}"

    def write(self, text: str) -> None:
        self.output.write(text)
        self.output.flush()

    def banner_lines(self, reason: str, ignore_parameter: str) -> List[str]:
        border = self._color(WHITE, "*" * BANNER_WIDTH)
        return [
            border,
            self._color(WHITE, f"ERROR: {reason}"),
            self._color(WHITE, "Use")
            + " '"
            + self._color(LIGHT_BLUE, f"{ignore_parameter}=yes")
            + "' "
            + self._color(WHITE, "in cmdline to bypass the check"),
            border,
        ]

    def show_banner(self, reason: str, ignore_parameter: str) -> None:
        self.write("\n\n\a")
        self.write("\n".join(self.banner_lines(reason, ignore_parameter)) + "\n\n")

    def wait_for_key(self, timeout: float) -> bool:
        """Wait up to timeout seconds for a key press.

        Returns True if a key was read. An input that is closed or is not a
        terminal ends the wait as soon as there is nothing left to read.
        """
        self.write(self._color(WHITE, HALT_PROMPT))
        try:
            fd = self.input.fileno()
        except (AttributeError, OSError, ValueError):
            self.write("\n")
            return False

        old_attrs = None
        if os.isatty(fd):
            try:
                old_attrs = termios.tcgetattr(fd)
                tty.setcbreak(fd)
            except termios.error as e:
                logger.debug("Unable to set the terminal in cbreak mode: %s", e)

        try:
            ready, _, _ = select.select([fd], [], [], timeout)
            pressed = bool(ready) and len(os.read(fd, 1)) > 0
        except OSError as e:
            logger.debug("Unable to wait for a key press: %s", e)
            pressed = False
        finally:
            if old_attrs is not None:
                termios.tcsetattr(fd, termios.TCSADRAIN, old_attrs)

        self.write("\n")
        return pressed


class HaltSequencer:
    def __init__(
        self,
        channel: AlertChannel,
        console: Console,
        ignore_parameter: str,
        timeout: float,
        pause: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if timeout <= 0:
            raise ValueError("The operator read window needs a timeout")

        self.channel = channel
        self.console = console
        self.ignore_parameter = ignore_parameter
        self.timeout = timeout
        self.pause = pause
        self.sleep = sleep

    @classmethod
    def from_config(cls, cfg: ValidatorConfig, channel: AlertChannel, console: Console) -> "HaltSequencer":
        return cls(channel, console, cfg.ignore_parameter, cfg.read_timeout, cfg.alert_pause)

    def execute(self, reason: str) -> int:
        """Show the reason to the operator and request the halt.

        A key press only shortens the wait, the halt is always requested.
        Returns the exit status of the validator.
        """
        logger.error("The validation of the PCR failed: %s", reason)

        self.channel.start_alert()
        if self.pause > 0:
            self.sleep(self.pause)

        self.console.show_banner(reason, self.ignore_parameter)
        self.console.wait_for_key(self.timeout)

        self.channel.resolve_and_halt()
        return 1
