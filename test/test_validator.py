import io
import os
import tempfile
import unittest
from unittest.mock import patch

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from measure_pcr.config import ValidatorConfig
from measure_pcr.failure import Fail, Pass, Skip, Warn
from measure_pcr.halt import AlertChannel, Console
from measure_pcr.validator import Validator

CURRENT = "9b2d1cbf8e3a4d6f0c5e7a8b1d2f3e4c5b6a7980f1e2d3c4b5a6978876543210"
OTHER_A = "a" * 64
OTHER_B = "b" * 64

CRYPTTAB_ON = "cr_root UUID=1234 none x-initrd.attach,tpm2-device=auto,tpm2-measure-pcr=yes\n"
CRYPTTAB_OFF = "cr_root UUID=1234 none x-initrd.attach,tpm2-device=auto\n"


class RecordingChannel(AlertChannel):
    def __init__(self):
        self.events = []

    def start_alert(self):
        self.events.append("start_alert")

    def resolve_and_halt(self):
        self.events.append("resolve_and_halt")


class TestValidator(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.key = ec.generate_private_key(ec.SECP256R1())

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = self.tmpdir.name
        self.channel = RecordingChannel()
        self.output = io.StringIO()

        self.crypttab = self._path("crypttab")
        self.prediction = self._path("measure-pcr-prediction")
        self.signature = self._path("measure-pcr-prediction.sha256")
        self.public_key = self._path("measure-pcr-public.pem")
        self.tpm_dir = self._path("tpm0")

    def tearDown(self):
        self.tmpdir.cleanup()

    def _path(self, name):
        return os.path.join(self.root, name)

    def _write(self, path, data):
        mode = "wb" if isinstance(data, bytes) else "w"
        with open(path, mode) as f:
            f.write(data)

    def _setup(self, crypttab=CRYPTTAB_ON, lines=(OTHER_A, CURRENT), sign=True, key=True, pcr=CURRENT, bank="sha256"):
        if crypttab is not None:
            self._write(self.crypttab, crypttab)

        body = None
        if lines is not None:
            body = "".join(f"{line}\n" for line in lines).encode()
            self._write(self.prediction, body)

        if sign and body is not None:
            self._write(self.signature, self.key.sign(body, ec.ECDSA(hashes.SHA256())))
        if key:
            self._write(
                self.public_key,
                self.key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo),
            )

        if pcr is not None:
            os.makedirs(os.path.join(self.tpm_dir, f"pcr-{bank}"))
            self._write(os.path.join(self.tpm_dir, f"pcr-{bank}", "15"), pcr + "\n")

    def _validator(self, ignore=False):
        cfg = ValidatorConfig(
            prediction_file=self.prediction,
            signature_file=self.signature,
            public_key_file=self.public_key,
            crypttab=self.crypttab,
            tpm_dir=self.tpm_dir,
            ignore=ignore,
            read_timeout=0.01,
            alert_pause=0,
            console_colors=False,
        )
        console = Console(output=self.output, input_=io.StringIO(), colors=False)
        return Validator(cfg, channel=self.channel, console=console)

    def _assert_halted(self, status, reason):
        self.assertEqual(status, 1)
        self.assertEqual(self.channel.events, ["start_alert", "resolve_and_halt"])
        self.assertIn(f"ERROR: {reason}", self.output.getvalue())

    def _assert_not_halted(self, status):
        self.assertEqual(status, 0)
        self.assertEqual(self.channel.events, [])
        self.assertEqual(self.output.getvalue(), "")

    def test_no_gating_attribute(self):
        """Scenario A: no volume requests the validation."""
        self._setup(crypttab=CRYPTTAB_OFF)
        with self.assertLogs("measure_pcr.validator", level="INFO") as cm:
            status = self._validator().run()
        self._assert_not_halted(status)
        self.assertIn("No PCR validation", "\n".join(cm.output))

    def test_no_gating_attribute_ignores_everything_else(self):
        for ignore in (False, True):
            with self.subTest(ignore=ignore):
                self._write(self.crypttab, CRYPTTAB_OFF)
                self.assertEqual(self._validator(ignore=ignore).run(), 0)
                self.assertEqual(self.channel.events, [])

    def test_no_crypttab(self):
        self._setup(crypttab=None)
        self._assert_not_halted(self._validator().run())

    def test_missing_prediction(self):
        """Scenario B: gating present but no prediction file."""
        self._setup(lines=None, sign=False)
        self._assert_halted(self._validator().run(), f"Missing prediction file {self.prediction}")

    def test_missing_prediction_ignored(self):
        self._setup(lines=None, sign=False)
        with self.assertLogs("measure_pcr.validator", level="WARNING") as cm:
            status = self._validator(ignore=True).run()
        self._assert_not_halted(status)
        self.assertIn("Missing prediction file", "\n".join(cm.output))

    def test_accepted(self):
        """Scenario C: the PCR is one of the predicted values."""
        self._setup()
        with patch("measure_pcr.validator.logger") as logger_mock:
            status = self._validator().run()
        self._assert_not_halted(status)
        logger_mock.info.assert_not_called()
        logger_mock.warning.assert_not_called()

    def test_accepted_evaluate(self):
        self._setup()
        self.assertIsInstance(self._validator().evaluate(), Pass)

    def test_accepted_sha1_bank(self):
        self._setup(pcr="f" * 40, lines=("f" * 40,), bank="sha1")
        self.assertEqual(self._validator().run(), 0)

    def test_mismatch(self):
        """Scenario D: the PCR is not in the prediction."""
        self._setup(lines=(OTHER_B,))
        self._assert_halted(self._validator().run(), "PCR 15 mismatch. Encrypted devices compromised")

    def test_mismatch_ignored(self):
        """Scenario E: as D, but the operator asked to ignore the failure."""
        self._setup(lines=(OTHER_B,))
        validator = self._validator(ignore=True)
        self.assertEqual(validator.evaluate(), Warn("PCR 15 mismatch. Encrypted devices compromised"))
        with self.assertLogs("measure_pcr.validator", level="WARNING") as cm:
            status = validator.run()
        self._assert_not_halted(status)
        self.assertIn("The validation of PCR 15 failed", "\n".join(cm.output))

    def test_mismatch_case(self):
        self._setup(lines=(CURRENT.upper(),))
        self.assertEqual(self._validator().run(), 1)

    def test_missing_signature(self):
        self._setup(sign=False)
        self._assert_halted(self._validator().run(), f"Missing signature file {self.signature}")

    def test_missing_signature_ignored(self):
        self._setup(sign=False)
        self.assertEqual(self._validator(ignore=True).run(), 0)
        self.assertEqual(self.channel.events, [])

    def test_missing_public_key(self):
        self._setup(key=False)
        self._assert_halted(self._validator().run(), f"Missing public key file {self.public_key}")

    def test_invalid_signature(self):
        self._setup()
        self._write(self.prediction, f"{OTHER_A}\n{CURRENT}\n{OTHER_B}\n")
        self._assert_halted(
            self._validator().run(), f"Signature for the prediction file {self.prediction} is not valid"
        )

    def test_invalid_signature_not_ignored(self):
        self._setup()
        self._write(self.prediction, f"{OTHER_A}\n{CURRENT}\n{OTHER_B}\n")
        self.assertEqual(self._validator(ignore=True).run(), 1)
        self.assertEqual(self.channel.events, ["start_alert", "resolve_and_halt"])

    def test_signature_from_other_key(self):
        self._setup()
        other = ec.generate_private_key(ec.SECP256R1())
        self._write(
            self.public_key, other.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
        )
        self.assertEqual(self._validator(ignore=True).run(), 1)

    def test_no_tpm(self):
        self._setup(pcr=None)
        for ignore in (False, True):
            with self.subTest(ignore=ignore):
                self.channel.events = []
                self._assert_halted(self._validator(ignore=ignore).run(), f"TPM2 not found in {self.tpm_dir}")

    def test_no_readable_bank(self):
        self._setup(pcr=None)
        os.makedirs(os.path.join(self.tpm_dir, "pcr-sha256"))
        for ignore in (False, True):
            with self.subTest(ignore=ignore):
                self.channel.events = []
                self.assertEqual(self._validator(ignore=ignore).run(), 1)
                self.assertEqual(self.channel.events, ["start_alert", "resolve_and_halt"])

    def test_signature_checked_before_tpm(self):
        self._setup(pcr=None)
        self._write(self.signature, b"garbage")
        self.assertEqual(
            self._validator().evaluate(), Fail(f"Signature for the prediction file {self.prediction} is not valid")
        )

    def test_unexpected_error_halts(self):
        self._setup()
        validator = self._validator(ignore=True)
        with patch.object(validator.reader, "read_current", side_effect=RuntimeError("boom")):
            with self.assertLogs("measure_pcr.validator", level="ERROR"):
                status = validator.run()
        self._assert_halted(status, "Unexpected error during the PCR validation: boom")

    def test_abort_halts(self):
        self._setup()
        for ignore in (False, True):
            with self.subTest(ignore=ignore):
                self.channel.events = []
                status = self._validator(ignore=ignore).abort("Invalid configuration")
                self._assert_halted(status, "Invalid configuration")

    def test_abort_without_gating_attribute(self):
        self._setup(crypttab=CRYPTTAB_OFF)
        self._assert_not_halted(self._validator().abort("Invalid configuration"))

    def test_policy_rechecked_on_failure(self):
        self._setup(lines=(OTHER_B,))
        validator = self._validator()
        with patch.object(validator, "check_policy", return_value=validator.check_policy()):
            self._write(self.crypttab, CRYPTTAB_OFF)
            self.assertIsInstance(validator.evaluate(), Skip)

    def test_inputs_not_modified(self):
        self._setup()
        paths = [self.crypttab, self.prediction, self.signature, self.public_key]
        before = {}
        for p in paths:
            with open(p, "rb") as f:
                before[p] = f.read()
        self._validator().run()
        self._validator().run()
        for p in paths:
            with open(p, "rb") as f:
                self.assertEqual(f.read(), before[p])


if __name__ == "__main__":
    unittest.main()
