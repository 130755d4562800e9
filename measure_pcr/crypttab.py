from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from measure_pcr import config, measure_logging

logger = measure_logging.init_logging("crypttab")

MEASURE_PCR_OPTION = "tpm2-measure-pcr"

TRUE_VALUES = ("yes", "true", "on", "1", "y", "t")
MAX_PCR_INDEX = 23


@dataclass(frozen=True)
class CrypttabEntry:
    name: str
    device: str
    keyfile: str = "none"
    options: Tuple[str, ...] = ()

    def get_option(self, option: str) -> Optional[str]:
        """Return the value of the last occurrence of an option.

        Options given without a value return an empty string.
        """
        value: Optional[str] = None
        for opt in self.options:
            key, sep, val = opt.partition("=")
            if key == option:
                value = val if sep else ""
        return value

    @property
    def measures_pcr(self) -> bool:
        """Whether the volume asks for its key to be measured into a PCR.

        systemd-cryptsetup accepts a boolean or the index of the PCR to use.
        """
        value = self.get_option(MEASURE_PCR_OPTION)
        if value is None:
            return False
        if value.isascii() and value.isdigit():
            return int(value) <= MAX_PCR_INDEX
        return value.lower() in TRUE_VALUES


def parse_line(line: str) -> Optional[CrypttabEntry]:
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    fields = line.split()
    if len(fields) < 2:
        logger.debug("Ignoring malformed crypttab line: %s", line)
        return None

    keyfile = fields[2] if len(fields) > 2 else "none"
    options = tuple(o for o in fields[3].split(",") if o) if len(fields) > 3 else ()
    return CrypttabEntry(fields[0], fields[1], keyfile, options)


def read_crypttab(path: str) -> List[CrypttabEntry]:
    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f.readlines():
            entry = parse_line(line)
            if entry is not None:
                entries.append(entry)
    return entries


@dataclass(frozen=True)
class GateResult:
    applicable: bool
    volumes: Tuple[str, ...] = field(default_factory=tuple)


class PolicyGate:
    """Decide if the PCR validation applies to the current boot.

    The validation is only requested when at least one encrypted volume sets
    ``tpm2-measure-pcr`` in crypttab.
    """

    def __init__(self, crypttab: str = config.DEFAULT_CRYPTTAB):
        self.crypttab = crypttab

    def evaluate(self) -> GateResult:
        try:
            entries = read_crypttab(self.crypttab)
        except FileNotFoundError:
            logger.debug("%s not found", self.crypttab)
            return GateResult(False)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Unable to read %s: %s", self.crypttab, e)
            return GateResult(False)

        volumes = tuple(e.name for e in entries if e.measures_pcr)
        if not volumes:
            return GateResult(False)

        logger.debug("PCR validation requested by %s", ", ".join(volumes))
        return GateResult(True, volumes)
