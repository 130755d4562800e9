import os
from dataclasses import dataclass
from typing import Optional, Sequence

from measure_pcr import config, measure_logging
from measure_pcr.common.algorithms import PCR_BANK_PRIORITY, Hash
from measure_pcr.common.exception import TpmAbsent

logger = measure_logging.init_logging("pcr")


@dataclass(frozen=True)
class PcrValue:
    algorithm: Hash
    index: int
    value: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.index}={self.value}"


class PCRReader:
    """Read a PCR from the sysfs interface of the kernel TPM driver.

    Each active bank is exposed as ``<tpm_dir>/pcr-<alg>/<index>``, holding
    the value as a single hex line.
    """

    def __init__(
        self,
        tpm_dir: str = config.DEFAULT_TPM_DIR,
        index: int = config.DEFAULT_PCR_INDEX,
        banks: Sequence[Hash] = PCR_BANK_PRIORITY,
    ):
        self.tpm_dir = tpm_dir
        self.index = index
        self.banks = tuple(banks)

    def register_path(self, bank: Hash) -> str:
        return os.path.join(self.tpm_dir, f"pcr-{bank.value}", str(self.index))

    def _read_register(self, bank: Hash) -> Optional[str]:
        path = self.register_path(bank)
        try:
            with open(path, "r", encoding="ascii") as f:
                value = f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            # A bank that cannot be read now is as good as a missing one
            logger.debug("Unable to read %s: %s", path, e)
            return None

        if value.endswith("\n"):
            value = value[:-1]
        if not value:
            logger.debug("%s is empty", path)
            return None

        if len(value) != bank.get_hex_size():
            logger.debug("Unexpected length %d for a %s digest in %s", len(value), bank, path)

        return value

    def read_current(self) -> PcrValue:
        """Return the PCR value of the first available bank.

        Raises TpmAbsent if there is no TPM or none of the banks can be read.
        """
        if not os.path.isdir(self.tpm_dir):
            raise TpmAbsent(path=self.tpm_dir)

        for bank in self.banks:
            value = self._read_register(bank)
            if value is None:
                continue
            logger.debug("Using PCR %d from the %s bank", self.index, bank)
            return PcrValue(bank, self.index, value)

        raise TpmAbsent(f"No readable PCR {self.index} bank found in {self.tpm_dir}")
