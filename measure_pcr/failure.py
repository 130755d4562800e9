"""Outcomes of the validation checks and how failures are resolved.

Every check yields one of the tagged outcomes below. The checks run in order
and the first outcome that is not a ``Pass`` decides the result of the boot:

* ``Pass``: the check succeeded, go on with the next one;
* ``Skip``: the validation does not apply, stop and succeed;
* ``Warn``: a failure the operator chose to ignore, stop and succeed;
* ``Fail``: stop and halt the system.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, Union

from measure_pcr import measure_logging
from measure_pcr.common.exception import ValidationError
from measure_pcr.crypttab import PolicyGate

logger = measure_logging.init_logging("failure")


@dataclass(frozen=True)
class Pass:
    pass


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Warn:
    reason: str


@dataclass(frozen=True)
class Fail:
    reason: str
    suppressible: bool = False

    @classmethod
    def from_error(cls, error: ValidationError) -> "Fail":
        return cls(error.reason, error.suppressible)


Outcome = Union[Pass, Skip, Warn, Fail]
Check = Callable[[], Outcome]

PASS = Pass()


def run_check(check: Check) -> Outcome:
    """Run a check, turning a validation error into a failure."""
    try:
        return check()
    except ValidationError as e:
        return Fail.from_error(e)


def fold_checks(checks: Iterable[Check]) -> Outcome:
    """Run the checks from left to right until one does not pass."""
    outcome: Outcome = PASS
    for check in checks:
        outcome = run_check(check)
        if not isinstance(outcome, Pass):
            break
    return outcome


class FailurePolicyEngine:
    """Resolve a failed check against the operator override.

    The override (``measure-pcr-validator.ignore`` on the kernel command line)
    only tolerates missing artifacts or a PCR mismatch. An invalid signature
    or a missing TPM always halt.
    """

    def __init__(self, gate: PolicyGate, ignore: bool):
        self.gate = gate
        self.ignore = ignore

    def resolve(self, outcome: Outcome) -> Outcome:
        if not isinstance(outcome, Fail):
            return outcome

        if not self.gate.evaluate().applicable:
            return Skip("No PCR validation")

        if self.ignore and outcome.suppressible:
            return Warn(outcome.reason)

        if self.ignore:
            logger.error("The failure cannot be ignored: %s", outcome.reason)

        return outcome
