from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MeasurementPrediction:
    """Allow-list of PCR values, one hex digest per line.

    Each line is the value the PCR is expected to hold for one known good
    boot configuration (e.g. one kernel and initrd pair).
    """

    raw: bytes
    lines: Tuple[str, ...]

    @classmethod
    def from_bytes(cls, raw: bytes) -> "MeasurementPrediction":
        text = raw.decode("utf-8", errors="replace")
        if text.endswith("\n"):
            text = text[:-1]
        lines = tuple(text.split("\n")) if text else ()
        return cls(raw, lines)

    def __len__(self) -> int:
        return len(self.lines)


def is_accepted(current: str, prediction: MeasurementPrediction) -> bool:
    """Check if the current PCR value is one of the predicted values.

    Only whole lines match, and the comparison is exact: no case folding and
    no whitespace stripping.
    """
    return current in prediction.lines
