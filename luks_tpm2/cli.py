#!/usr/bin/env python3
"""
LUKS-TPM2 command line tool

Manages a TPM2-sealed key in a LUKS key slot.

Usage:
  luks-tpm2 init       # Seal a new key into the TPM slot (asks for an existing passphrase)
  luks-tpm2 temp       # Add a temporary passphrase to the reset slot
  luks-tpm2 reset      # Rotate the TPM key and clear the reset slot
  luks-tpm2 replace    # Rotate the TPM key using the sealed key, no passphrase

Typical workflow before a firmware or kernel update that changes PCRs:
  1. luks-tpm2 temp      -> unlock with the temporary passphrase after rebooting
  2. luks-tpm2 reset     -> new key sealed to the new PCR values

Exit status is the outcome code (see ExitCode in orchestrator.py).
"""

import argparse
import os
import sys
from typing import List, Optional

from . import __version__
from .config import DEFAULT_CONFIG_FILE, PCRPolicy, load_config
from .errors import ConfigError, TrustModuleError
from .logger import Logger
from .orchestrator import Action, ExitCode, KeyLifecycleOrchestrator
from .prompt import Prompter
from .sealing import create_sealing_adapter
from .slots import SlotManager
from .tpm2_module import TPM2Module


def _int(value: str) -> int:
    try:
        return int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")


def _pcrs(value: str) -> PCRPolicy:
    try:
        return PCRPolicy.parse(value)
    except ConfigError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='luks-tpm2',
        description='Manage a TPM2-sealed LUKS key',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Actions:
  init     Generate a key, add it to the TPM slot and seal it
  temp     Add a temporary passphrase to the reset slot
  reset    Replace the TPM slot key, seal it and clear the reset slot
  replace  Replace the TPM slot key using the sealed key and seal the new one

Exit codes:
  0 success            1 aborted, nothing changed
  2 slot failed        3 seal failed          4 slot and seal failed
  5 unseal failed      6-8 reset failed, temporary passphrase still valid
  9 reset slot not cleared                    10 slot changed, key NOT sealed
        '''
    )

    parser.add_argument('action', choices=[a.value for a in Action], help='Action to perform')

    parser.add_argument('-c', '--config', metavar='FILE',
                        help=f'Config file (default: {DEFAULT_CONFIG_FILE} if present)')
    parser.add_argument('-d', '--device', help='LUKS block device')
    parser.add_argument('-m', '--keystore-dir', metavar='DIR', help='Base directory for the ephemeral keystore')
    parser.add_argument('--no-mount', dest='mount_keystore', action='store_false', default=None,
                        help='Do not mount a ramfs for the keystore (directory must be on tmpfs)')
    parser.add_argument('-s', '--key-size', type=_int, metavar='BYTES', help='Size of generated keys')
    parser.add_argument('-t', '--tpm-slot', type=_int, metavar='SLOT', help='LUKS slot for the TPM key')
    parser.add_argument('-r', '--reset-slot', type=_int, metavar='SLOT', help='LUKS slot for the temporary passphrase')
    parser.add_argument('-H', '--parent-handle', type=_int, metavar='HANDLE', help='Persistent parent key handle')
    parser.add_argument('-p', '--public', dest='sealed_public', metavar='FILE', help='Sealed object public blob')
    parser.add_argument('-P', '--private', dest='sealed_private', metavar='FILE', help='Sealed object private blob')
    parser.add_argument('-x', '--nv-index', type=_int, metavar='INDEX', help='Seal into this NV index instead of blobs')
    parser.add_argument('-L', '--seal-pcrs', dest='seal_policy', type=_pcrs, metavar='PCRS',
                        help='PCR selection for sealing, e.g. sha1:0,2,4,7')
    parser.add_argument('-l', '--unseal-pcrs', dest='unseal_policy', type=_pcrs, metavar='PCRS',
                        help='PCR selection for unsealing (default: seal PCRs)')
    parser.add_argument('-T', '--tcti', help='TPM2 TCTI, e.g. device:/dev/tpmrm0')
    parser.add_argument('-k', '--keyfile', metavar='FILE', help='Existing LUKS key file instead of a passphrase')
    parser.add_argument('-y', '--yes', action='store_true', help='Do not ask for confirmation')
    parser.add_argument('-v', '--verbose', action='store_true', help='Show debug output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Outcome code of the requested action
    """
    args = build_parser().parse_args(argv)
    Logger.verbose = args.verbose

    try:
        config = load_config(
            args.config,
            device=args.device,
            keystore_dir=args.keystore_dir,
            mount_keystore=args.mount_keystore,
            key_size=args.key_size,
            tpm_slot=args.tpm_slot,
            reset_slot=args.reset_slot,
            parent_handle=args.parent_handle,
            sealed_public=args.sealed_public,
            sealed_private=args.sealed_private,
            nv_index=args.nv_index,
            seal_policy=args.seal_policy,
            unseal_policy=args.unseal_policy,
            tcti=args.tcti,
            keyfile=args.keyfile,
        )
    except ConfigError as e:
        Logger.error(f"Configuration error: {e}")
        return ExitCode.FATAL

    if os.geteuid() != 0:
        Logger.error("Must be run as root")
        return ExitCode.FATAL

    try:
        tpm = TPM2Module(config.tcti)
    except TrustModuleError as e:
        Logger.error(f"Failed to initialize TPM2: {e}")
        Logger.error("Is TPM2 available on this system?")
        return ExitCode.FATAL

    prompter = Prompter(assume_yes=args.yes)
    try:
        orchestrator = KeyLifecycleOrchestrator(
            config,
            SlotManager(config.device),
            create_sealing_adapter(config, tpm, prompter),
            prompter,
        )
        outcome = orchestrator.run(Action(args.action))
    finally:
        tpm.close()

    return int(outcome.code)


if __name__ == '__main__':
    sys.exit(main())
