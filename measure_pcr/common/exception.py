from typing import Any, Optional


class ValidatorException(Exception):
    """Base class for all validator exceptions"""

    _msg_fmt = "An unknown exception occurred."

    def __init__(self, message: Optional[str] = None, **kwargs: Any):
        if not message:
            message = self._msg_fmt % kwargs

        super().__init__(message)


class ValidationError(ValidatorException):
    """A check that failed. The message is shown verbatim to the operator.

    When ``suppressible`` is set the failure is downgraded to a warning if the
    operator asked to ignore the validation from the kernel command line.
    """

    _msg_fmt = "PCR validation failed."
    suppressible = False

    @property
    def reason(self) -> str:
        return str(self)


class MissingPredictionArtifacts(ValidationError):
    _msg_fmt = "Missing prediction file %(path)s"
    suppressible = True


class SignatureMissing(ValidationError):
    _msg_fmt = "Missing signature file %(path)s"
    suppressible = True


class SignatureInvalid(ValidationError):
    _msg_fmt = "Signature for the prediction file %(path)s is not valid"


class TpmAbsent(ValidationError):
    _msg_fmt = "TPM2 not found in %(path)s"


class PcrMismatch(ValidationError):
    _msg_fmt = "PCR %(index)s mismatch. Encrypted devices compromised"
    suppressible = True
