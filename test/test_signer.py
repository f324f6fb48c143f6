#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

import datetime
import struct
import zipfile

from hashlib import sha256

import apksigcopier
import pytest

from asn1crypto import cms                                         # type: ignore[import-untyped]
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from bundlesigner.errors import (CorrelationError, MinSdkVersionError, SigningError,
                                 TransferFileError)
from bundlesigner.signer import (APK_SIG_BLOCK_MAGIC, ATTR_DEBUGGABLE, ATTR_MIN_SDK_VERSION,
                                 RES_XML_RESOURCE_MAP_TYPE, RES_XML_START_ELEMENT_TYPE,
                                 RES_XML_TYPE, TYPE_INT_BOOLEAN, TYPE_INT_DEC, APKSigner,
                                 apk_digest_chunked, dump_payload, is_debuggable,
                                 is_v1_meta_file, load_payload, load_signer_config,
                                 min_sdk_version)
from bundlesigner.transfer import SchemeFlags


def _manifest(min_sdk=None, debuggable=False):
    ids = (ATTR_MIN_SDK_VERSION, ATTR_DEBUGGABLE)
    resmap = struct.pack("<HHL", RES_XML_RESOURCE_MAP_TYPE, 8, 8 + 4 * len(ids))
    resmap += struct.pack("<LL", *ids)
    attrs = []
    if min_sdk is not None:
        attrs.append(struct.pack("<LLLHBBL", 0, 0, 0xffffffff, 8, 0, TYPE_INT_DEC, min_sdk))
    if debuggable:
        attrs.append(struct.pack("<LLLHBBL", 0, 1, 0xffffffff, 8, 0, TYPE_INT_BOOLEAN,
                                 0xffffffff))
    ext = struct.pack("<LLHHHHHH", 0, 0, 20, 20, len(attrs), 0, 0, 0)
    elem = struct.pack("<HHLLL", RES_XML_START_ELEMENT_TYPE, 16, 16 + 20 + 20 * len(attrs),
                       1, 0xffffffff) + ext + b"".join(attrs)
    return struct.pack("<HHL", RES_XML_TYPE, 8, 8 + len(resmap) + len(elem)) + resmap + elem


def _apk(path, manifest=b"manifest", dex=b"dex" * 1000):
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("AndroidManifest.xml", manifest, compress_type=zipfile.ZIP_DEFLATED)
        zf.writestr("classes.dex", dex, compress_type=zipfile.ZIP_DEFLATED)
        zf.writestr("resources.arsc", b"arsc", compress_type=zipfile.ZIP_STORED)
        zf.writestr("META-INF/BNDLTOOL.SF", b"throwaway")
    return str(path)


@pytest.fixture(scope="module")
def keypair(tmp_path_factory):
    tmp = tmp_path_factory.mktemp("keys")
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "bundlesigner test")])
    cert = (x509.CertificateBuilder()
            .subject_name(name).issuer_name(name).public_key(key.public_key())
            .serial_number(1)
            .not_valid_before(datetime.datetime(2024, 1, 1))
            .not_valid_after(datetime.datetime(2050, 1, 1))
            .sign(key, hashes.SHA256()))
    key_file, cert_file = tmp / "release.pem", tmp / "release.crt"
    key_file.write_bytes(key.private_bytes(serialization.Encoding.PEM,
                                           serialization.PrivateFormat.PKCS8,
                                           serialization.NoEncryption()))
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.DER))
    return str(key_file), str(cert_file), cert


@pytest.fixture
def config(keypair):
    key_file, cert_file, _ = keypair
    return load_signer_config(key=key_file, cert=cert_file)


def test_load_signer_config(config):
    assert config.name == "RELEASE"
    assert config.key_type == "RSA"
    assert config.signature_algorithm_id == 0x0103


def test_load_signer_config_mismatch(keypair, tmp_path):
    _, cert_file, _ = keypair
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    key_file = tmp_path / "other.der"
    key_file.write_bytes(other.private_bytes(serialization.Encoding.DER,
                                             serialization.PrivateFormat.PKCS8,
                                             serialization.NoEncryption()))
    with pytest.raises(SigningError, match="does not match"):
        load_signer_config(key=str(key_file), cert=cert_file)


def test_v1_sign(config, keypair, tmp_path):
    _, _, cert = keypair
    apk = _apk(tmp_path / "base.apk")
    payload = APKSigner((config,), min_sdk=24).v1_digest(apk, SchemeFlags(v2=True))
    assert ".apk" not in payload
    assert load_payload(payload)["hash_algo"] == "SHA256"
    out = str(tmp_path / "signed.apk")
    APKSigner().apply_v1(apk, payload, out)
    with zipfile.ZipFile(out) as zf:
        names = zf.namelist()
        sf = zf.read("META-INF/RELEASE.SF")
        block = zf.read("META-INF/RELEASE.RSA")
        mf = zf.read("META-INF/MANIFEST.MF")
    assert names == ["AndroidManifest.xml", "classes.dex", "resources.arsc",
                     "META-INF/RELEASE.SF", "META-INF/RELEASE.RSA", "META-INF/MANIFEST.MF"]
    assert b"X-Android-APK-Signed: 2\r\n" in sf
    assert b"Name: classes.dex\r\nSHA-256-Digest: " in mf
    assert b"BNDLTOOL" not in mf
    signer_info = cms.ContentInfo.load(block)["content"]["signer_infos"][0]
    cert.public_key().verify(signer_info["signature"].native, sf,
                             padding.PKCS1v15(), hashes.SHA256())


def test_v1_sign_sha1_for_old_min_sdk(config, tmp_path):
    apk = _apk(tmp_path / "base.apk", manifest=_manifest(min_sdk=14))
    assert min_sdk_version(apk) == 14
    payload = APKSigner((config,)).v1_digest(apk, SchemeFlags())
    assert load_payload(payload)["hash_algo"] == "SHA1"
    out = str(tmp_path / "signed.apk")
    APKSigner().apply_v1(apk, payload, out)
    with zipfile.ZipFile(out) as zf:
        assert b"SHA1-Digest: " in zf.read("META-INF/MANIFEST.MF")
        assert b"X-Android-APK-Signed" not in zf.read("META-INF/RELEASE.SF")


def test_v1_apply_different_apk(config, tmp_path):
    apk = _apk(tmp_path / "base.apk")
    payload = APKSigner((config,), min_sdk=24).v1_digest(apk, SchemeFlags())
    other = _apk(tmp_path / "other.apk", dex=b"other")
    with pytest.raises(CorrelationError, match="v1 digest does not match other.apk"):
        APKSigner().apply_v1(other, payload, str(tmp_path / "signed.apk"))


def test_v1_apply_invalid_payload(tmp_path):
    apk = _apk(tmp_path / "base.apk")
    with pytest.raises(TransferFileError):
        APKSigner().apply_v1(apk, "not base64!", str(tmp_path / "signed.apk"))
    with pytest.raises(TransferFileError):
        APKSigner().apply_v1(apk, "e30=", str(tmp_path / "signed.apk"))     # {}


def test_v1_apply_nested_meta_file(config, tmp_path):
    apk = _apk(tmp_path / "base.apk")
    data = load_payload(APKSigner((config,), min_sdk=24).v1_digest(apk, SchemeFlags()))
    data["files"][1][0] = "META-INF/sub/RELEASE.RSA"
    with pytest.raises(TransferFileError, match="Invalid v1 payload"):
        APKSigner().apply_v1(apk, dump_payload(data), str(tmp_path / "signed.apk"))


def test_is_v1_meta_file(monkeypatch):
    calls = []
    def is_meta(filename):
        calls.append(filename)
        return filename.startswith("META-INF/")
    monkeypatch.setattr(apksigcopier, "is_meta", is_meta)
    assert is_v1_meta_file("META-INF/RELEASE.SF")
    assert is_v1_meta_file("META-INF/MANIFEST.MF")
    assert not is_v1_meta_file("META-INF/sub/RELEASE.RSA")
    assert not is_v1_meta_file("META-INF/RELEASE.TXT")
    assert not is_v1_meta_file("classes.dex")
    assert calls[:2] == ["META-INF/RELEASE.SF", "META-INF/MANIFEST.MF"]


@pytest.mark.parametrize("flags", [SchemeFlags(v2=True), SchemeFlags(v3=True),
                                   SchemeFlags(v2=True, v3=True)])
def test_v2v3_sign(config, tmp_path, flags):
    apk = _apk(tmp_path / "base.apk")
    signer = APKSigner((config,), min_sdk=24)
    v1_payload = signer.v1_digest(apk, flags)
    v1_signed = str(tmp_path / "v1.apk")
    signer.apply_v1(apk, v1_payload, v1_signed)
    payload = signer.v2v3_digest(v1_signed, flags)
    data = load_payload(payload)
    # phase 2 starts from a fresh copy
    v1_again = str(tmp_path / "v1-again.apk")
    APKSigner().apply_v1(apk, v1_payload, v1_again)
    out = str(tmp_path / "signed.apk")
    APKSigner().apply_v2v3(v1_again, payload, out)
    sb_offset, block = apksigcopier.extract_v2_sig(out)
    assert sb_offset == data["offset"]
    assert block.endswith(APK_SIG_BLOCK_MAGIC)
    ids = [0x7109871a] * flags.v2 + [0xf05368c0] * flags.v3
    assert [struct.unpack("<L", block[p + 8:p + 12])[0] for p in _pair_offsets(block)] == ids
    assert apk_digest_chunked(out, sb_offset, sha256).hex() == data["digests"]["259"]
    with zipfile.ZipFile(out) as zf:
        assert zf.read("classes.dex") == b"dex" * 1000


def test_v2v3_apply_different_apk(config, tmp_path):
    flags = SchemeFlags(v2=True)
    signer = APKSigner((config,), min_sdk=24)
    apk = _apk(tmp_path / "base.apk")
    v1_signed = str(tmp_path / "v1.apk")
    signer.apply_v1(apk, signer.v1_digest(apk, flags), v1_signed)
    payload = signer.v2v3_digest(v1_signed, flags)
    other = _apk(tmp_path / "other.apk", dex=b"other")
    other_signed = str(tmp_path / "other-v1.apk")
    signer.apply_v1(other, signer.v1_digest(other, flags), other_signed)
    with pytest.raises(CorrelationError, match="v2/v3 digest does not match"):
        APKSigner().apply_v2v3(other_signed, payload, str(tmp_path / "signed.apk"))


def test_min_sdk_version_unknown(config, tmp_path):
    apk = _apk(tmp_path / "base.apk", manifest=b"garbage")
    with pytest.raises(MinSdkVersionError):
        APKSigner((config,)).v1_digest(apk, SchemeFlags())


def test_debuggable(config, tmp_path):
    apk = _apk(tmp_path / "base.apk", manifest=_manifest(min_sdk=21, debuggable=True))
    assert is_debuggable(apk)
    with pytest.raises(SigningError, match="debuggable"):
        APKSigner((config,), debuggable_apk_permitted=False).v1_digest(apk, SchemeFlags())
    assert APKSigner((config,)).v1_digest(apk, SchemeFlags())


def _pair_offsets(block):
    pos, end = 8, len(block) - 24
    while pos < end:
        size, = struct.unpack("<Q", block[pos:pos + 8])
        yield pos
        pos += 8 + size

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
