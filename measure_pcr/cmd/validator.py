#!/usr/bin/env python3

"""
Check the PCR measured during the boot against the signed prediction before
the TPM2 protected volumes are unlocked.

Exits with 0 when the boot can go on and with 1 when it must stop. In the
latter case init has already been asked to halt the system.
"""

import argparse
import sys
from typing import List, NoReturn, Optional

from measure_pcr import config, measure_logging
from measure_pcr.halt import AlertChannel, InitSignalChannel, LoggingAlertChannel
from measure_pcr.validator import Validator

logger = measure_logging.init_logging("measure-pcr-validator")


class ValidatorParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        sys.stderr.write(f"error: {message}\n")
        self.print_help(sys.stderr)
        sys.exit(2)


def get_arg_parser() -> argparse.ArgumentParser:
    parser = ValidatorParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument(
        "-c",
        "--config",
        dest="config",
        required=False,
        help="Use only this configuration file",
        default="",
    )
    parser.add_argument(
        "--cmdline",
        dest="cmdline",
        required=False,
        help="Read the kernel parameters from this file instead of the configured one",
        default=None,
    )
    parser.add_argument(
        "--no-halt",
        dest="no_halt",
        action="store_true",
        help="Do not signal init, only report the result",
    )
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true", help="Show debug messages")
    return parser


def _get_channel(cfg: config.ValidatorConfig, no_halt: bool) -> AlertChannel:
    if no_halt:
        return LoggingAlertChannel()
    return InitSignalChannel.from_config(cfg)


def main(argv: Optional[List[str]] = None) -> None:
    args = get_arg_parser().parse_args(argv)

    measure_logging.set_verbose(args.verbose)
    if args.config:
        config.set_config_file("validator", args.config)

    try:
        cfg = config.ValidatorConfig.load(cmdline_file=args.cmdline)
    except Exception as e:
        logger.exception("Unable to load the configuration")
        cfg = config.ValidatorConfig.fallback(cmdline_file=args.cmdline)
        sys.exit(Validator(cfg, channel=_get_channel(cfg, args.no_halt)).abort(f"Invalid configuration: {e}"))

    sys.exit(Validator(cfg, channel=_get_channel(cfg, args.no_halt)).run())


if __name__ == "__main__":
    main()
