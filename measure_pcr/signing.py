import enum
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from measure_pcr import measure_logging
from measure_pcr.types import PathLike_str

logger = measure_logging.init_logging("signing")


class SignatureStatus(enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"


def verify(body: bytes, sig: Optional[bytes], key: Optional[bytes]) -> SignatureStatus:
    """
    Verify the detached signature (sig) of body using a PEM public key (key).

    The signature is expected in the format produced by
    ``openssl dgst -sha256 -sign``: ECDSA (DER encoded) for EC keys and
    PKCS#1 v1.5 for RSA keys, both over SHA-256.
    """
    if sig is None or key is None:
        return SignatureStatus.MISSING

    if verify_signature(key, sig, body):
        logger.debug("Prediction passed signature verification")
        return SignatureStatus.VALID

    return SignatureStatus.INVALID


def verify_signature(key: bytes, sig: bytes, body: bytes) -> bool:
    verified = False

    try:
        pubkey = load_pem_public_key(key)

        if isinstance(pubkey, ec.EllipticCurvePublicKey):
            logger.debug("EC public key successfully imported, verifying signature...")
            pubkey.verify(sig, body, ec.ECDSA(hashes.SHA256()))
        elif isinstance(pubkey, rsa.RSAPublicKey):
            logger.debug("RSA public key successfully imported, verifying signature...")
            pubkey.verify(sig, body, padding.PKCS1v15(), hashes.SHA256())
        else:
            raise UnsupportedAlgorithm(f"Unsupported public key algorithm: {type(pubkey)}")

        verified = True
    except InvalidSignature:
        logger.debug("Signature does not match the public key")
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        logger.warning("Unable to verify signature: %s", e)

    return verified


def read_file(path: Union[str, PathLike_str]) -> Optional[bytes]:
    """Return the content of path, or None if it cannot be read."""
    try:
        with open(path, "rb") as fd:
            return fd.read()
    except OSError as e:
        logger.debug("Unable to read %s: %s", path, e)
        return None


def verify_signature_from_file(
    key_file: Union[str, PathLike_str],
    filename: Union[str, PathLike_str],
    sig_file: Union[str, PathLike_str],
) -> Tuple[SignatureStatus, Optional[bytes]]:
    """
    Verify the file signature on disk (sig_file) using a public key on disk
    (key_file) with the file on disk (filename).

    Returns the status and the content of filename that was verified, so the
    caller only ever uses the bytes the signature covers. A file that cannot
    be read counts as missing.
    """
    body = read_file(filename)
    if body is None:
        return SignatureStatus.MISSING, None

    status = verify(body, read_file(sig_file), read_file(key_file))
    if status != SignatureStatus.VALID:
        logger.debug('Verification of "%s" against "%s" using "%s": %s', filename, sig_file, key_file, status.value)
        return status, None

    return status, body
