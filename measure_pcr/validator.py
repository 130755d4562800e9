from typing import List, Optional

from measure_pcr import measure_logging, signing
from measure_pcr.common.exception import (
    MissingPredictionArtifacts,
    PcrMismatch,
    SignatureInvalid,
    SignatureMissing,
)
from measure_pcr.config import ValidatorConfig
from measure_pcr.crypttab import PolicyGate
from measure_pcr.failure import PASS, Check, Fail, FailurePolicyEngine, Outcome, Pass, Skip, Warn, fold_checks
from measure_pcr.halt import AlertChannel, Console, HaltSequencer, InitSignalChannel
from measure_pcr.prediction import MeasurementPrediction, is_accepted
from measure_pcr.tpm.pcr import PCRReader, PcrValue

logger = measure_logging.init_logging("validator")

NO_VALIDATION = "No PCR validation"


class Validator:
    """Check the measured boot state before the encrypted volumes are opened.

    The checks run in this order, stopping at the first one that does not pass:

    1. some crypttab entry requests the validation
    2. the prediction file exists
    3. the signature and the public key exist
    4. the signature of the prediction is valid
    5. the PCR can be read from the TPM
    6. the PCR value is one of the predicted ones
    """

    def __init__(
        self,
        cfg: ValidatorConfig,
        channel: Optional[AlertChannel] = None,
        console: Optional[Console] = None,
        gate: Optional[PolicyGate] = None,
        reader: Optional[PCRReader] = None,
    ):
        self.cfg = cfg
        self.gate = gate if gate is not None else PolicyGate(cfg.crypttab)
        self.reader = reader if reader is not None else PCRReader(cfg.tpm_dir, cfg.pcr_index, cfg.pcr_banks)
        self.policy = FailurePolicyEngine(self.gate, cfg.ignore)

        if channel is None:
            channel = InitSignalChannel.from_config(cfg)
        if console is None:
            console = Console(colors=cfg.console_colors)
        self.halt = HaltSequencer.from_config(cfg, channel, console)

        self._prediction: Optional[MeasurementPrediction] = None
        self._current: Optional[PcrValue] = None

    def check_policy(self) -> Outcome:
        if not self.gate.evaluate().applicable:
            return Skip(NO_VALIDATION)
        return PASS

    def check_prediction(self) -> Outcome:
        if signing.read_file(self.cfg.prediction_file) is None:
            raise MissingPredictionArtifacts(path=self.cfg.prediction_file)
        return PASS

    def check_signature_present(self) -> Outcome:
        if signing.read_file(self.cfg.signature_file) is None:
            raise SignatureMissing(path=self.cfg.signature_file)

        if signing.read_file(self.cfg.public_key_file) is None:
            raise SignatureMissing(f"Missing public key file {self.cfg.public_key_file}")

        return PASS

    def check_signature(self) -> Outcome:
        status, body = signing.verify_signature_from_file(
            self.cfg.public_key_file, self.cfg.prediction_file, self.cfg.signature_file
        )
        if status == signing.SignatureStatus.MISSING:
            raise SignatureMissing(path=self.cfg.signature_file)
        if status != signing.SignatureStatus.VALID:
            raise SignatureInvalid(path=self.cfg.prediction_file)

        assert body is not None
        self._prediction = MeasurementPrediction.from_bytes(body)
        logger.debug("Loaded %d predicted values from %s", len(self._prediction), self.cfg.prediction_file)
        return PASS

    def check_tpm(self) -> Outcome:
        self._current = self.reader.read_current()
        return PASS

    def check_measurement(self) -> Outcome:
        assert self._prediction is not None
        assert self._current is not None

        if not is_accepted(self._current.value, self._prediction):
            logger.debug("%s is not in %s", self._current, self.cfg.prediction_file)
            raise PcrMismatch(index=self._current.index)

        logger.debug("%s matches the prediction", self._current)
        return PASS

    def checks(self) -> List[Check]:
        return [
            self.check_policy,
            self.check_prediction,
            self.check_signature_present,
            self.check_signature,
            self.check_tpm,
            self.check_measurement,
        ]

    def evaluate(self) -> Outcome:
        """Run the checks and resolve a failure against the override.

        An unexpected error is a failure that cannot be ignored.
        """
        try:
            outcome = fold_checks(self.checks())
        except Exception as e:
            logger.exception("Unexpected error during the PCR validation")
            outcome = Fail(f"Unexpected error during the PCR validation: {e}")

        return self.policy.resolve(outcome)

    def run(self) -> int:
        """Validate the boot and return the exit status of the validator."""
        return self.finish(self.evaluate())

    def abort(self, reason: str) -> int:
        """Fail the validation without running the checks.

        Used when the validator cannot even be set up. The failure cannot be
        ignored, but it still does not apply to a boot that did not request
        the validation.
        """
        return self.finish(self.policy.resolve(Fail(reason)))

    def finish(self, outcome: Outcome) -> int:
        if isinstance(outcome, Pass):
            return 0

        if isinstance(outcome, Skip):
            logger.info(outcome.reason)
            return 0

        if isinstance(outcome, Warn):
            logger.warning("The validation of PCR %d failed", self.cfg.pcr_index)
            logger.warning(outcome.reason)
            return 0

        if isinstance(outcome, Fail):
            return self.halt.execute(outcome.reason)

        raise TypeError(f"Unknown outcome {outcome!r}")
