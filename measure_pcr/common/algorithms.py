import enum
import hashlib
from typing import Any, Tuple, cast


class Hash(str, enum.Enum):
    # Names used by the kernel for the sysfs PCR banks (pcr-<name>)
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"

    @staticmethod
    def is_recognized(algorithm: str) -> bool:
        try:
            Hash(algorithm).get_size()
        except ValueError:
            return False
        return True

    def __hashfn(self, data: bytes) -> Any:
        return hashlib.new(self.value, data)

    def get_size(self) -> int:
        return cast(int, self.__hashfn(b"").digest_size * 8)

    def get_hex_size(self) -> int:
        return len(self.__hashfn(b"").hexdigest())

    def __str__(self) -> str:
        return self.value


# Order in which the PCR banks are consulted. The same measurement is extended
# into every active bank, so the first bank found is enough.
PCR_BANK_PRIORITY: Tuple[Hash, ...] = (Hash.SHA1, Hash.SHA256, Hash.SHA384, Hash.SHA512)
