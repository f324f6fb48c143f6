#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
sign android app bundles (.aab) without moving the signing key

bundlesigner signs the APKs that bundletool builds from an app bundle in two
phases, so the private key never has to be on the machine that has the bundle
(or vice versa):

1. genbin (has the key): builds the split & universal APK Sets, computes and
   signs the digests of every APK variant, and writes them to a transfer
   (.bin) file.

2. signbundle (no key needed): rebuilds the same APK Sets from the same
   bundle, and embeds the signatures from the transfer file into every APK
   variant.

Both phases need bundletool (and keytool, to create the throwaway key that
bundletool signs with); verify needs apksigner.


CLI
===

$ bundlesigner genbin --bundle AAB --bin DIR (--key PRIVKEY --cert CERT | --ks KEYSTORE)
                      [--v2-signing-enabled BOOL] [--v3-signing-enabled BOOL] [...]
$ bundlesigner signbundle --bundle AAB --bin BIN --out DIR
$ bundlesigner verify [--print-certs] [-Werr] [--in APK | APK]
$ bundlesigner help [COMMAND]
$ bundlesigner version


API
===

NB: every CLI command maps to an API function: e.g. genbin to do_genbin().

#>> import bundlesigner
#>> bundlesigner.do_genbin(bundle, bin_dir, key=key_file, cert=cert_file,
...                        v2_signing_enabled=True)
#>> bundlesigner.do_signbundle(bundle, bin_file, output_dir)
#>> bundlesigner.do_verify(apk, print_certs=True)


Parameters
----------

>>> import bundlesigner as bs
>>> bs.__version__
'0.1.0'
>>> try:
...     bs.do_genbin("", "/tmp", key="key.pk8", cert="cert.der")
... except bs.ParameterError as e:
...     print(e)
Missing input Bundle file path
>>> try:
...     bs.do_genbin("app.aab", "/tmp")
... except bs.ParameterError as e:
...     print(e)
At least one signer must be specified
>>> try:
...     bs.do_genbin("app.aab", "/tmp", key="key.pk8", cert="cert.der",
...                  min_sdk_version=28, max_sdk_version=24)
... except bs.ParameterError as e:
...     print(e)
Min API Level (28) > max API Level (24)
>>> try:
...     bs.do_signbundle("app.aab", "app.bin", "")
... except bs.ParameterError as e:
...     print(e)
Missing output path
>>> bs.verify_args("app.apk", min_sdk_version=24, print_certs=True, werr=True)
['--min-sdk-version', '24', '--print-certs', '-Werr', 'app.apk']

"""

import os
import shlex
import signal
import subprocess
import sys
import zipfile

from typing import Any, List, Optional, Tuple

from apksigcopier import APKSigCopierError, VERIFY_CMD

from .bundletool import BundleExpander, BundleTool, bundle_base_name
from .errors import (BundleSignerError, CorrelationError, ParameterError, TransferFileError,
                     VerificationError, WorkspaceError, _err, exit_code_for)
from .pipeline import DigestRecorder, SignatureApplier, Workspace
from .signer import APKSigner, Signer, load_signer_config
from .transfer import SchemeFlags, TransferFile

__version__ = "0.1.0"
NAME = "bundlesigner"

__all__ = [
    "BundleSignerError", "CorrelationError", "ParameterError", "TransferFileError",
    "VerificationError", "WorkspaceError", "do_genbin", "do_signbundle", "do_verify",
    "main", "verify_args",
]


def do_genbin(bundle: str, bin_dir: str, *, key: Optional[str] = None,
              cert: Optional[str] = None, keystore: Optional[str] = None,
              password: Optional[str] = None, v1_signer_name: Optional[str] = None,
              min_sdk_version: Optional[int] = None, max_sdk_version: Optional[int] = None,
              v2_signing_enabled: bool = False, v3_signing_enabled: bool = False,
              debuggable_apk_permitted: bool = True, verbose: bool = False,
              signer: Optional[Signer] = None,
              expander: Optional[BundleExpander] = None) -> Tuple[str, TransferFile]:
    """
    Build the APK Sets for bundle and record the signed digests of all APK
    variants in <bin_dir>/<bundle base name>.bin.

    Returns the path of the transfer file and its contents.
    """
    if not bundle:
        raise ParameterError("Missing input Bundle file path")
    if not bin_dir:
        raise ParameterError("Missing output Bin file path")
    if signer is None and not (key or cert or keystore):
        raise ParameterError("At least one signer must be specified")
    if min_sdk_version is not None and max_sdk_version is not None \
            and min_sdk_version > max_sdk_version:
        raise ParameterError(f"Min API Level ({min_sdk_version}) > "
                             f"max API Level ({max_sdk_version})")
    if not os.path.isfile(bundle):
        raise ParameterError("Input bundle file does not exist")
    if not os.path.isdir(bin_dir):
        raise ParameterError(f"Output directory does not exist: {bin_dir}")
    if signer is None:
        config = load_signer_config(key=key, cert=cert, keystore=keystore,
                                    password=password, name=v1_signer_name)
        signer = APKSigner((config,), min_sdk=min_sdk_version, max_sdk=max_sdk_version,
                           debuggable_apk_permitted=debuggable_apk_permitted)
    if expander is None:
        expander = BundleTool(verbose=verbose)
    flags = SchemeFlags(v2=v2_signing_enabled, v3=v3_signing_enabled)
    output = os.path.join(bin_dir, bundle_base_name(bundle) + ".bin")
    with Workspace() as workspace:
        recorder = DigestRecorder(signer, expander, verbose=verbose)
        transfer_file = recorder.generate(bundle, flags, output, workspace)
    return output, transfer_file


def do_signbundle(bundle: str, bin_file: str, output_dir: str, *,
                  verbose: bool = False, signer: Optional[Signer] = None,
                  expander: Optional[BundleExpander] = None) -> List[str]:
    """
    Rebuild the APK Sets for bundle and sign all APK variants using the
    signatures in bin_file; saves the signed APKs in output_dir.

    Returns the paths of the signed APKs.
    """
    if not bundle:
        raise ParameterError("Missing bundle file")
    if not bin_file:
        raise ParameterError("Missing bin file")
    if not output_dir:
        raise ParameterError("Missing output path")
    if signer is None:
        signer = APKSigner()
    if expander is None:
        expander = BundleTool(verbose=verbose)
    with Workspace() as workspace:
        applier = SignatureApplier(signer, expander, verbose=verbose)
        return applier.apply(bundle, bin_file, output_dir, workspace)


def do_verify(apk: str, *, min_sdk_version: Optional[int] = None,
              max_sdk_version: Optional[int] = None, print_certs: bool = False,
              verbose: bool = False, werr: bool = False) -> None:
    """
    Verify APK using the external verifier (apksigner verify, or
    $BUNDLESIGNER_VERIFY_CMD); its output is passed through.

    Raises VerificationError when it fails.
    """
    if not apk:
        raise ParameterError("Missing APK")
    env = os.environ.get("BUNDLESIGNER_VERIFY_CMD")
    command = tuple(shlex.split(env)) if env else VERIFY_CMD
    args = list(command) + verify_args(
        apk, min_sdk_version=min_sdk_version, max_sdk_version=max_sdk_version,
        print_certs=print_certs, verbose=verbose, werr=werr)
    try:
        result = subprocess.run(args, check=False)
    except FileNotFoundError as e:
        raise BundleSignerError(f"Could not run {command[0]}: {e}") from e
    if result.returncode != 0:
        raise VerificationError(f"Failed to verify {apk}")


def verify_args(apk: str, *, min_sdk_version: Optional[int] = None,
                max_sdk_version: Optional[int] = None, print_certs: bool = False,
                verbose: bool = False, werr: bool = False) -> List[str]:
    """Verifier arguments (apksigner verify style)."""
    args = []
    if min_sdk_version is not None:
        args += ["--min-sdk-version", str(min_sdk_version)]
    if max_sdk_version is not None:
        args += ["--max-sdk-version", str(max_sdk_version)]
    if print_certs:
        args.append("--print-certs")
    if verbose:
        args.append("-v")
    if werr:
        args.append("-Werr")
    return args + [apk]


def main() -> None:
    """CLI; requires click."""

    import click

    # unwind (and remove the workspace) on SIGTERM too
    signal.signal(signal.SIGTERM, lambda signum, _frame: sys.exit(128 + signum))

    context_settings = dict(help_option_names=["-h", "--help"])

    @click.group(context_settings=context_settings, help="""
        bundlesigner - sign android app bundles without moving the signing key
    """)
    @click.version_option(__version__, "--version")
    def cli() -> None:
        pass

    @cli.command(help="""
        Build the split & universal APK Sets for BUNDLE and save the signed
        digests of all APK variants in <BIN>/<bundle base name>.bin.
    """)
    @click.option("--bundle", metavar="BUNDLE", help="Input bundle (.aab).")
    @click.option("--bin", "bin_dir", metavar="DIR", help="Output directory for the .bin file.")
    @click.option("--cert", "--certificate", metavar="CERT",
                  type=click.Path(exists=True, dir_okay=False), help="Certificate (DER or PEM).")
    @click.option("--key", "--private-key", metavar="PRIVKEY",
                  type=click.Path(exists=True, dir_okay=False),
                  help="Private key (PKCS #8, DER or PEM).")
    @click.option("--ks", "keystore", metavar="KEYSTORE",
                  type=click.Path(exists=True, dir_okay=False), help="Keystore (PKCS #12).")
    @click.option("--v1-signer-name", metavar="NAME",
                  help="Base name of the v1 signature files (default: from key file name).")
    @click.option("--prompt", "--password-prompt", is_flag=True,
                  help="Private key/keystore is encrypted; prompt for password.")
    @click.option("--min-sdk-version", type=click.INT, metavar="N",
                  help="Minimum API Level (default: from APK manifest).")
    @click.option("--max-sdk-version", type=click.INT, metavar="N", help="Maximum API Level.")
    @click.option("--v2-signing-enabled", type=click.BOOL, default=False, show_default=True,
                  metavar="BOOL", help="Sign using APK Signature Scheme v2.")
    @click.option("--v3-signing-enabled", type=click.BOOL, default=False, show_default=True,
                  metavar="BOOL", help="Sign using APK Signature Scheme v3.")
    @click.option("--debuggable-apk-permitted", type=click.BOOL, default=True,
                  show_default=True, metavar="BOOL", help="Permit signing debuggable APKs.")
    @click.option("-v", "--verbose", is_flag=True, help="Be verbose.")
    def genbin(bundle: Optional[str], bin_dir: Optional[str], prompt: bool,
               **kwargs: Any) -> None:
        if prompt:
            password = click.prompt("Password", hide_input=True)
        else:
            password = os.environ.get("BUNDLESIGNER_PRIVKEY_PASSWORD")
        output, _ = do_genbin(bundle or "", bin_dir or "", password=password or None, **kwargs)
        print(output)

    @cli.command(help="""
        Rebuild the APK Sets for BUNDLE and save the APK variants, signed using
        the signatures in BIN, in OUT.
    """)
    @click.option("--bundle", metavar="BUNDLE", help="Input bundle (.aab).")
    @click.option("--bin", "bin_file", metavar="BIN", help="Transfer file (from genbin).")
    @click.option("--out", "output_dir", metavar="DIR", help="Output directory.")
    @click.option("-v", "--verbose", is_flag=True, help="Be verbose.")
    def signbundle(bundle: Optional[str], bin_file: Optional[str],
                   output_dir: Optional[str], verbose: bool) -> None:
        signed = do_signbundle(bundle or "", bin_file or "", output_dir or "", verbose=verbose)
        if verbose:
            for path in signed:
                print(path)

    @cli.command(help="""
        Verify APK signatures using apksigner (or $BUNDLESIGNER_VERIFY_CMD).
    """)
    @click.option("--min-sdk-version", type=click.INT, metavar="N", help="Minimum API Level.")
    @click.option("--max-sdk-version", type=click.INT, metavar="N", help="Maximum API Level.")
    @click.option("--print-certs", is_flag=True, help="Show signer certificate(s).")
    @click.option("-v", "--verbose", is_flag=True, help="Be verbose.")
    @click.option("-Werr", "werr", is_flag=True, help="Treat warnings as errors.")
    @click.option("--in", "input_apk", metavar="APK", help="APK to verify.")
    @click.argument("apks", nargs=-1, metavar="[APK]")
    def verify(input_apk: Optional[str], apks: Tuple[str, ...], **kwargs: Any) -> None:
        if (input_apk and apks) or len(apks) > 1:
            raise ParameterError("Unexpected parameter(s) after APK")
        apk = input_apk or (apks[0] if apks else None)
        if not apk:
            raise ParameterError("Missing APK")
        try:
            do_verify(apk, **kwargs)
        except VerificationError as e:
            _err(f"{e}.")
            sys.exit(e.exit_code)

    @cli.command("help", help="Show help (for COMMAND).")
    @click.argument("command", required=False)
    @click.pass_context
    def help_(ctx: click.Context, command: Optional[str]) -> None:
        parent = ctx.parent
        assert parent is not None
        if command is None:
            click.echo(cli.get_help(parent))
            return
        cmd = cli.get_command(parent, command)
        if cmd is None:
            raise click.exceptions.UsageError(f"No such command: {command}", ctx)
        with click.Context(cmd, info_name=command, parent=parent) as sub_ctx:
            click.echo(cmd.get_help(sub_ctx))

    @cli.command(help="Show version.")
    def version() -> None:
        click.echo(f"{NAME}, version {__version__}")

    try:
        cli(prog_name=NAME)
    except (BundleSignerError, APKSigCopierError, zipfile.BadZipFile, OSError) as e:
        _err(f"Error: {e}.")
        sys.exit(exit_code_for(e))


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
