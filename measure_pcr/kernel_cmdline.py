"""Access to the boot parameters given to the kernel.

The lookup follows the rules of dracut's getarg/getargbool helpers, so a
parameter behaves the same as it did for the shell based validator:

* the last occurrence of a parameter wins;
* ``name`` without a value counts as set;
* for booleans, ``0``, ``no`` and ``off`` (case sensitive) are false and
  anything else is true.
"""

import shlex
from typing import List, Optional

from measure_pcr import config, measure_logging

logger = measure_logging.init_logging("kernel_cmdline")

FALSE_VALUES = ("0", "no", "off")


def read_cmdline(cmdline_file: Optional[str] = None) -> List[str]:
    """Return the kernel parameters, honouring shell style quoting."""
    if cmdline_file is None:
        cmdline_file = config.DEFAULT_CMDLINE_FILE

    try:
        with open(cmdline_file, "r", encoding="utf-8") as f:
            cmdline = f.read()
    except OSError as e:
        logger.warning("Unable to read the kernel command line from %s: %s", cmdline_file, e)
        return []

    try:
        return shlex.split(cmdline)
    except ValueError:
        # Unbalanced quotes. The kernel itself does not care, so neither do we.
        return cmdline.split()


def getarg(name: str, cmdline_file: Optional[str] = None) -> Optional[str]:
    """Return the value of the last occurrence of ``name``.

    ``None`` means the parameter is not present and an empty string means it
    was given without a value.
    """
    value: Optional[str] = None
    for param in read_cmdline(cmdline_file):
        key, sep, val = param.partition("=")
        if key != name:
            continue
        value = val if sep else ""

    return value


def getargbool(name: str, default: bool, cmdline_file: Optional[str] = None) -> bool:
    value = getarg(name, cmdline_file=cmdline_file)
    if value is None:
        return default

    result = value not in FALSE_VALUES
    logger.debug("Kernel parameter %s=%s evaluates to %s", name, value, result)
    return result
