import configparser
import logging
import os
import os.path
import signal
from configparser import RawConfigParser
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from measure_pcr.common.algorithms import PCR_BANK_PRIORITY, Hash

logging.basicConfig(level=logging.INFO)
base_logger = logging.getLogger("measure_pcr.config")


# Default locations of the artifacts produced by sdbootutil
DEFAULT_WORK_DIR = "/var/lib/sdbootutil"
WORK_DIR = os.getenv("MEASURE_PCR_DIR", DEFAULT_WORK_DIR)

DEFAULT_PREDICTION_FILE = os.path.join(WORK_DIR, "measure-pcr-prediction")
DEFAULT_SIGNATURE_FILE = os.path.join(WORK_DIR, "measure-pcr-prediction.sha256")
DEFAULT_PUBLIC_KEY_FILE = os.path.join(WORK_DIR, "measure-pcr-public.pem")
DEFAULT_CRYPTTAB = "/etc/crypttab"
DEFAULT_TPM_DIR = "/sys/class/tpm/tpm0"
DEFAULT_PCR_INDEX = 15
DEFAULT_CMDLINE_FILE = "/proc/cmdline"
DEFAULT_IGNORE_PARAMETER = "measure-pcr-validator.ignore"
DEFAULT_INIT_PID = 1
DEFAULT_READ_TIMEOUT = 10.0
DEFAULT_ALERT_PAUSE = 1.0

# systemd reacts to SIGRTMIN+21 by switching the console to show status
# messages, and to SIGRTMIN+20 by halting the machine.
SIGNAL_START_ALERT_OFFSET = 21
SIGNAL_HALT_OFFSET = 20

# Possible paths for base configuration files
CONFIG_FILES = {
    "validator": ["/etc/measure-pcr-validator/validator.conf", "/usr/etc/measure-pcr-validator/validator.conf"],
    "logging": ["/etc/measure-pcr-validator/logging.conf", "/usr/etc/measure-pcr-validator/logging.conf"],
}

# Paths to directories in which options can be overriden using configuration
# snippets
CONFIG_SNIPPETS_DIRS = {
    "validator": ["/usr/etc/measure-pcr-validator/validator.conf.d", "/etc/measure-pcr-validator/validator.conf.d"],
    "logging": ["/usr/etc/measure-pcr-validator/logging.conf.d", "/etc/measure-pcr-validator/logging.conf.d"],
}

CONFIG_ENV = {
    "validator": "",
    "logging": "",
}

# Add files from environment variables, if set
if "MEASURE_PCR_VALIDATOR_CONFIG" in os.environ:
    CONFIG_ENV["validator"] = os.environ["MEASURE_PCR_VALIDATOR_CONFIG"]
if "MEASURE_PCR_LOGGING_CONFIG" in os.environ:
    CONFIG_ENV["logging"] = os.environ["MEASURE_PCR_LOGGING_CONFIG"]

# Single instance
_config: Optional[Dict[str, RawConfigParser]] = None


def _validate_config_files(component: str, file_paths: List[str], files_read: List[str]) -> None:
    """Log the configuration files that exist but could not be parsed.

    Args:
        component: The component name (e.g., 'validator', 'logging')
        file_paths: List of file paths that were attempted to be read
        files_read: List of files that ConfigParser successfully read
    """
    for file_path in file_paths:
        if not os.path.exists(file_path):
            continue

        if not os.access(file_path, os.R_OK):
            base_logger.error("Config file %s for %s exists but is not readable", file_path, component)
            continue

        if file_path not in files_read:
            base_logger.error("Config file %s for %s exists but failed to parse", file_path, component)


def set_config_file(component: str, path: str) -> None:
    """Use a single configuration file for the component, dropping any
    configuration previously loaded for it."""
    if component not in CONFIG_ENV:
        raise Exception(f"Invalid component '{component}'")

    CONFIG_ENV[component] = path
    if _config and component in _config:
        del _config[component]


def get_config(component: str) -> RawConfigParser:
    """Find the configuration file to use for the given component and apply the
    overrides defined by configuration snippets.

    Configuration files are expected to be installed by the distribution on
    /usr/etc/measure-pcr-validator or /etc/measure-pcr-validator. If a
    configuration file is found in /etc, the one in /usr/etc is ignored.

    If a configuration file path is set through a MEASURE_PCR_*_CONFIG
    environment variable (or the command line), all configuration from other
    files for that component are ignored.

    Unlike long running services, the validator runs in the initrd where the
    configuration is optional: every option has a built-in default, so a
    missing file only yields an empty configuration.
    """

    global _config

    if not _config:
        _config = {}

    if not component:
        raise Exception("No component provided to get_config")

    if component not in _config:
        _config[component] = RawConfigParser()
        try:
            _read_config(component)
        except Exception:
            # Do not keep a partially read configuration around
            del _config[component]
            raise

    return _config[component]


def _read_config(component: str) -> None:
    assert _config is not None
    parser = _config[component]

    if not CONFIG_ENV or not isinstance(CONFIG_ENV, dict):
        raise Exception("Invalid CONFIG_ENV")

    if not component in CONFIG_ENV:
        raise Exception(f"Invalid component '{component}'")

    if CONFIG_ENV[component]:
        if os.path.isfile(CONFIG_ENV[component]):
            config_files = parser.read(CONFIG_ENV[component])
            _validate_config_files(component, [CONFIG_ENV[component]], config_files)
            base_logger.debug("Reading configuration from %s", config_files)
            return

        base_logger.warning(
            "Configuration file %s for %s not found, falling back to installed configuration",
            CONFIG_ENV[component],
            component,
        )

    if not CONFIG_FILES or not isinstance(CONFIG_FILES, dict):
        raise Exception("Invalid CONFIG_FILES")

    if not component in CONFIG_FILES:
        raise Exception(f"Invalid component {component}")

    for c in CONFIG_FILES[component]:
        # The first base configuration file found is used, the others are
        # ignored
        config_file = parser.read(c)
        _validate_config_files(component, [c], config_file)

        if config_file:
            base_logger.debug("Reading configuration from %s", config_file)

            if not CONFIG_SNIPPETS_DIRS or not isinstance(CONFIG_SNIPPETS_DIRS, dict):
                raise Exception("Invalid CONFIG_SNIPPETS_DIRS")

            for d in (x for x in CONFIG_SNIPPETS_DIRS.get(component, []) if os.path.isdir(x)):
                snippets = sorted(
                    [os.path.join(d, f) for f in os.listdir(d) if f and os.path.isfile(os.path.join(d, f))]
                )
                applied_snippets = parser.read(snippets)
                _validate_config_files(component, snippets, applied_snippets)

                if applied_snippets:
                    base_logger.debug("Applied configuration snippets from %s", d)

            break


def _get_env(component: str, option: str, section: Optional[str]) -> Optional[str]:
    opt_section = f"_{section.upper()}" if section else ""
    env_name = f"MEASURE_PCR_{component.upper()}{opt_section}_{option.upper()}"
    env_value = os.environ.get(env_name, None)
    if env_value is not None:
        log_msg = f'option "{option}" on section {section} for component {component}.conf was overriden by environment variable {env_name}'
        base_logger.debug(log_msg.replace("on section None ", ""))

    return env_value


def get(component: str, option: str, section: Optional[str] = None, fallback: str = "") -> str:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return env_value.strip('" ')

    return get_config(component).get(section, option, fallback=fallback).strip('" ')


def getint(component: str, option: str, section: Optional[str] = None, fallback: int = -1) -> int:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return int(env_value)

    return get_config(component).getint(section, option, fallback=fallback)


def getboolean(component: str, option: str, section: Optional[str] = None, fallback: bool = False) -> bool:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        env_value_lower = env_value.lower().strip('" ')
        if env_value_lower not in RawConfigParser.BOOLEAN_STATES:
            return fallback
        return RawConfigParser.BOOLEAN_STATES[env_value_lower]

    return get_config(component).getboolean(section, option, fallback=fallback)


def getfloat(component: str, option: str, section: Optional[str] = None, fallback: float = -1.0) -> float:
    env_value = _get_env(component, option, section)
    if not section:
        section = component

    if env_value is not None:
        return float(env_value)

    return get_config(component).getfloat(section, option, fallback=fallback)


def get_banks(component: str, option: str, section: Optional[str] = None) -> Tuple[Hash, ...]:
    """Parse a comma separated list of PCR banks, keeping the given order."""
    read = get(component, option, section=section)
    if not read:
        return PCR_BANK_PRIORITY

    banks = []
    for name in (x.strip().lower() for x in read.split(",")):
        if not name:
            continue
        if not Hash.is_recognized(name):
            raise ValueError(f"Unsupported PCR bank '{name}' in option '{option}' of component '{component}'")
        banks.append(Hash(name))

    return tuple(banks)


@dataclass(frozen=True)
class ValidatorConfig:
    """All the settings of one validator run.

    Built once per invocation so every check sees the same values, including
    the override flag taken from the kernel command line.
    """

    prediction_file: str = DEFAULT_PREDICTION_FILE
    signature_file: str = DEFAULT_SIGNATURE_FILE
    public_key_file: str = DEFAULT_PUBLIC_KEY_FILE
    crypttab: str = DEFAULT_CRYPTTAB
    tpm_dir: str = DEFAULT_TPM_DIR
    pcr_index: int = DEFAULT_PCR_INDEX
    pcr_banks: Tuple[Hash, ...] = PCR_BANK_PRIORITY
    ignore_parameter: str = DEFAULT_IGNORE_PARAMETER
    ignore: bool = False
    init_pid: int = DEFAULT_INIT_PID
    start_alert_signal: int = 0
    halt_signal: int = 0
    read_timeout: float = DEFAULT_READ_TIMEOUT
    alert_pause: float = DEFAULT_ALERT_PAUSE
    console_colors: bool = True

    def __post_init__(self) -> None:
        # Real-time signal numbers are only known at runtime
        if not self.start_alert_signal:
            object.__setattr__(self, "start_alert_signal", signal.SIGRTMIN + SIGNAL_START_ALERT_OFFSET)
        if not self.halt_signal:
            object.__setattr__(self, "halt_signal", signal.SIGRTMIN + SIGNAL_HALT_OFFSET)
        if self.read_timeout <= 0:
            raise ValueError("read_timeout must be a positive number of seconds")
        if self.pcr_index < 0:
            raise ValueError("pcr_index must not be negative")
        if not self.pcr_banks:
            raise ValueError("At least one PCR bank is required")

    @classmethod
    def load(cls, cmdline_file: Optional[str] = None) -> "ValidatorConfig":
        """Read the validator configuration and the override flag."""
        # pylint: disable=import-outside-toplevel
        from measure_pcr import kernel_cmdline

        component = "validator"
        ignore_parameter = get(component, "ignore_parameter", fallback=DEFAULT_IGNORE_PARAMETER)
        if cmdline_file is None:
            cmdline_file = get(component, "cmdline_file", fallback=DEFAULT_CMDLINE_FILE)

        return cls(
            prediction_file=get(component, "prediction_file", fallback=DEFAULT_PREDICTION_FILE),
            signature_file=get(component, "signature_file", fallback=DEFAULT_SIGNATURE_FILE),
            public_key_file=get(component, "public_key_file", fallback=DEFAULT_PUBLIC_KEY_FILE),
            crypttab=get(component, "crypttab", fallback=DEFAULT_CRYPTTAB),
            tpm_dir=get(component, "tpm_dir", fallback=DEFAULT_TPM_DIR),
            pcr_index=getint(component, "pcr_index", fallback=DEFAULT_PCR_INDEX),
            pcr_banks=get_banks(component, "pcr_banks"),
            ignore_parameter=ignore_parameter,
            ignore=kernel_cmdline.getargbool(ignore_parameter, False, cmdline_file=cmdline_file),
            init_pid=getint(component, "init_pid", fallback=DEFAULT_INIT_PID),
            read_timeout=getfloat(component, "read_timeout", fallback=DEFAULT_READ_TIMEOUT),
            alert_pause=getfloat(component, "alert_pause", fallback=DEFAULT_ALERT_PAUSE),
            console_colors=getboolean(component, "console_colors", fallback=True),
        )

    @classmethod
    def fallback(cls, cmdline_file: Optional[str] = None) -> "ValidatorConfig":
        """Settings used when the configuration cannot be loaded.

        Only the options needed to decide whether the validation applies and
        to halt the system are read. Any of them that cannot be read keeps its
        default value.
        """
        # pylint: disable=import-outside-toplevel
        from measure_pcr import kernel_cmdline

        component = "validator"

        def _read(getter: Callable[..., Any], option: str, default: Any) -> Any:
            try:
                return getter(component, option, fallback=default)
            except (configparser.Error, ValueError) as e:
                base_logger.warning("Using the default value of %s: %s", option, e)
                return default

        ignore_parameter = _read(get, "ignore_parameter", DEFAULT_IGNORE_PARAMETER) or DEFAULT_IGNORE_PARAMETER
        if cmdline_file is None:
            cmdline_file = _read(get, "cmdline_file", DEFAULT_CMDLINE_FILE) or DEFAULT_CMDLINE_FILE

        read_timeout = _read(getfloat, "read_timeout", DEFAULT_READ_TIMEOUT)
        if read_timeout <= 0:
            read_timeout = DEFAULT_READ_TIMEOUT

        return cls(
            crypttab=_read(get, "crypttab", DEFAULT_CRYPTTAB) or DEFAULT_CRYPTTAB,
            ignore_parameter=ignore_parameter,
            ignore=kernel_cmdline.getargbool(ignore_parameter, False, cmdline_file=cmdline_file),
            init_pid=_read(getint, "init_pid", DEFAULT_INIT_PID),
            read_timeout=read_timeout,
            alert_pause=_read(getfloat, "alert_pause", DEFAULT_ALERT_PAUSE),
            console_colors=_read(getboolean, "console_colors", True),
        )
