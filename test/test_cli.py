#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

import os
import sys

import pytest

import bundlesigner


def _main(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["bundlesigner", *args])
    with pytest.raises(SystemExit) as e:
        bundlesigner.main()
    return e.value.code


def test_version(monkeypatch, capsys):
    assert _main(monkeypatch, "version") == 0
    assert capsys.readouterr().out == f"bundlesigner, version {bundlesigner.__version__}\n"
    assert _main(monkeypatch, "--version") == 0
    assert bundlesigner.__version__ in capsys.readouterr().out


def test_help(monkeypatch, capsys):
    assert _main(monkeypatch, "help") == 0
    out = capsys.readouterr().out
    assert "genbin" in out and "signbundle" in out
    assert _main(monkeypatch, "help", "genbin") == 0
    assert "--v2-signing-enabled" in capsys.readouterr().out
    assert _main(monkeypatch, "signbundle", "-h") == 0
    assert "--out" in capsys.readouterr().out
    assert _main(monkeypatch, "help", "nope") == 2


def test_genbin_no_signer(monkeypatch, capsys, bundle, dirs):
    assert _main(monkeypatch, "genbin", "--bundle", bundle, "--bin", dirs["bin"]) == 2
    assert capsys.readouterr().err == "Error: At least one signer must be specified.\n"


def test_genbin_missing_bundle(monkeypatch, capsys, bundle, dirs):
    assert _main(monkeypatch, "genbin", "--bin", dirs["bin"], "--key", bundle,
                 "--cert", bundle) == 2
    assert capsys.readouterr().err == "Error: Missing input Bundle file path.\n"


def test_genbin_min_max_sdk(monkeypatch, capsys, bundle, dirs):
    assert _main(monkeypatch, "genbin", "--bundle", bundle, "--bin", dirs["bin"],
                 "--key", bundle, "--cert", bundle, "--min-sdk-version", "30",
                 "--max-sdk-version", "21") == 2
    assert "Min API Level (30) > max API Level (21)" in capsys.readouterr().err


def test_signbundle_missing_out(monkeypatch, capsys, bundle):
    assert _main(monkeypatch, "signbundle", "--bundle", bundle, "--bin", bundle) == 2
    assert capsys.readouterr().err == "Error: Missing output path.\n"


def test_signbundle_malformed_bin(monkeypatch, capsys, bundle, dirs):
    bin_file = os.path.join(dirs["bin"], "app.bin")
    with open(bin_file, "w", encoding="utf-8") as fh:
        fh.write("version: 0.2.0\nv2:true,v3:false\nuniversal.apk\nAAAA\n")
    assert _main(monkeypatch, "signbundle", "--bundle", bundle, "--bin", bin_file,
                 "--out", dirs["out"]) == 4
    assert "missing v2/v3 digest" in capsys.readouterr().err
    assert os.listdir(dirs["out"]) == []


def test_signbundle_invalid_utf8_bin(monkeypatch, capsys, bundle, dirs):
    bin_file = os.path.join(dirs["bin"], "app.bin")
    with open(bin_file, "wb") as fh:
        fh.write(b"version: 0.2.0\nv2:false,v3:false\nuniversal.apk\n\xff\xfe\n")
    assert _main(monkeypatch, "signbundle", "--bundle", bundle, "--bin", bin_file,
                 "--out", dirs["out"]) == 4
    assert capsys.readouterr().err == "Error: Line 4: invalid UTF-8.\n"
    assert os.listdir(dirs["out"]) == []


def test_verify(monkeypatch, capsys, bundle):
    monkeypatch.setenv("BUNDLESIGNER_VERIFY_CMD", "true")
    assert _main(monkeypatch, "verify", bundle) == 0
    assert _main(monkeypatch, "verify", "--in", bundle, "-Werr") == 0
    monkeypatch.setenv("BUNDLESIGNER_VERIFY_CMD", "false")
    assert _main(monkeypatch, "verify", "--print-certs", bundle) == 1
    assert capsys.readouterr().err == f"Failed to verify {bundle}.\n"


def test_verify_parameters(monkeypatch, capsys, bundle):
    monkeypatch.setenv("BUNDLESIGNER_VERIFY_CMD", "true")
    assert _main(monkeypatch, "verify") == 2
    assert capsys.readouterr().err == "Error: Missing APK.\n"
    assert _main(monkeypatch, "verify", "--in", bundle, bundle) == 2
    assert capsys.readouterr().err == "Error: Unexpected parameter(s) after APK.\n"


def test_verify_command_not_found(monkeypatch, capsys, bundle):
    monkeypatch.setenv("BUNDLESIGNER_VERIFY_CMD", "/nonexistent/apksigner verify")
    assert _main(monkeypatch, "verify", bundle) == 4
    assert "Could not run /nonexistent/apksigner" in capsys.readouterr().err

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
