#!/usr/bin/env python3
# coding: utf-8
import io
import os
import shutil
import hashlib
import datetime
import tempfile
import sysconfig
import unittest
import contextlib

from pyasn1.codec.der import decoder
from pyasn1_modules import rfc8017

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, utils

from ppksign import hsm, pdf, signer
from ppksign.__main__ import main
from ppksign.errors import AuthenticationFailed, NoSuchKey, TokenError

import test_cert
import pdfgen

try:
    import PyKCS11
except ImportError:
    PyKCS11 = None


def softhsm_library():
    candidates = (
        os.environ.get("SOFTHSM2_LIB"),
        os.path.join(sysconfig.get_config_var("LIBDIR") or "", "softhsm/libsofthsm2.so"),
        "/usr/lib/softhsm/libsofthsm2.so",
        "/usr/lib/x86_64-linux-gnu/softhsm/libsofthsm2.so",
        "/usr/lib/aarch64-linux-gnu/softhsm/libsofthsm2.so",
        "/usr/lib64/pkcs11/libsofthsm2.so",
        "/usr/local/lib/softhsm/libsofthsm2.so",
        "/opt/homebrew/lib/softhsm/libsofthsm2.so",
    )
    for path in candidates:
        if path and os.path.exists(path):
            return path
    return None


dllpath = softhsm_library()


class KeyHSMTests(unittest.TestCase):
    def setUp(self):
        self.ca = test_cert.CA()

    def test_base(self):
        base = hsm.BaseHSM()
        with self.assertRaises(NotImplementedError):
            base.certificate()
        with self.assertRaises(NotImplementedError):
            base.sign(b"\x01", b"\x00" * 32, "sha256")
        self.assertEqual(tuple(base.chain()), ())

    def test_sign(self):
        token = hsm.KeyHSM(self.ca.user_key, self.ca.user_cert)
        keyid, cert = token.certificate()
        self.assertEqual(cert, self.ca.der(self.ca.user_cert))
        md = hashlib.sha256(b"message").digest()
        sig = token.sign(keyid, md, "sha256")
        self.assertEqual(len(sig), 256)
        self.ca.user_key.public_key().verify(
            sig, md, padding.PKCS1v15(), utils.Prehashed(hashes.SHA256())
        )

    def test_unknown_keyid(self):
        token = hsm.KeyHSM(self.ca.user_key, self.ca.user_cert)
        with self.assertRaises(NoSuchKey):
            token.sign(b"\x66\x66\x90", b"\x00" * 32, "sha256")

    def test_ec_key_rejected(self):
        key = self.ca.key_create_ec()
        with self.assertRaises(NoSuchKey):
            hsm.KeyHSM(key, self.ca.user_create(key, "EC User"))

    def test_pkcs12(self):
        token = hsm.KeyHSM.from_pkcs12(self.ca.p12(), test_cert.P12_PASSWORD)
        self.assertEqual(token.certificate()[1], self.ca.der(self.ca.user_cert))
        self.assertEqual(token.chain(), (self.ca.der(self.ca.sub_cert),))

    def test_pkcs12_wrong_password(self):
        with self.assertRaises(AuthenticationFailed):
            hsm.KeyHSM.from_pkcs12(self.ca.p12(), "4321")
        # token errors share one base class
        with self.assertRaises(TokenError):
            hsm.KeyHSM.from_pkcs12(b"not a pkcs12 file", "1234")


@unittest.skipUnless(PyKCS11 is not None, "PyKCS11 is not installed")
class PKCS11Tests(unittest.TestCase):
    def test_digest_info(self):
        from ppksign import pkcs11

        md = hashlib.sha256(b"message").digest()
        data = pkcs11.digest_info(md, "sha256")
        info, rest = decoder.decode(data, asn1Spec=rfc8017.DigestInfo())
        self.assertEqual(rest, b"")
        self.assertEqual(
            info["digestAlgorithm"]["algorithm"], signer.ALGORITHMS["sha256"][0]
        )
        self.assertEqual(bytes(info["digest"]), md)
        # the fixed prefix of RFC 8017 section 9.2, note 1
        self.assertEqual(
            data[:19], bytes.fromhex("3031300d060960864801650304020105000420")
        )

    def test_error_mapping(self):
        from ppksign import pkcs11
        from ppksign.errors import TokenLocked, TokenNotPresent

        cases = (
            (PyKCS11.CKR_PIN_INCORRECT, AuthenticationFailed),
            (PyKCS11.CKR_PIN_LOCKED, TokenLocked),
            (PyKCS11.CKR_TOKEN_NOT_PRESENT, TokenNotPresent),
            (PyKCS11.CKR_KEY_HANDLE_INVALID, NoSuchKey),
            (PyKCS11.CKR_GENERAL_ERROR, TokenError),
        )
        for value, cls in cases:
            ex = pkcs11.token_error(PyKCS11.PyKCS11Error(value), "login")
            self.assertIs(type(ex), cls)
            self.assertTrue(str(ex).startswith("login failed"))

    def test_missing_module(self):
        from ppksign import pkcs11

        with self.assertRaises(TokenError):
            pkcs11.HSM("/nonexistent/libpkcs11.so")


@unittest.skipUnless(
    PyKCS11 is not None and dllpath is not None, "PyKCS11 and SoftHSM2 are required"
)
class SoftHSMTests(unittest.TestCase):
    label = "ppksign"
    pin = "secret1"
    sopin = "secret2"
    keyid = bytes((0x66, 0x66, 0x90))

    @classmethod
    def setUpClass(cls):
        from ppksign import pkcs11

        cls.tmp = tempfile.mkdtemp(prefix="ppksign-softhsm-")
        os.makedirs(os.path.join(cls.tmp, "tokens"))
        conf = os.path.join(cls.tmp, "softhsm2.conf")
        with open(conf, "wt") as fp:
            fp.write('''\
log.level = INFO
directories.tokendir = %s/tokens/
objectstore.backend = file
slots.removable = false
''' % cls.tmp)
        cls.saved_conf = os.environ.get("SOFTHSM2_CONF")
        os.environ["SOFTHSM2_CONF"] = conf

        cls.ca = test_cert.CA()
        token = pkcs11.HSM(dllpath)
        token.create(cls.label, cls.pin, cls.sopin)
        with token:
            token.login(cls.label, cls.pin)
            token.key_save(cls.ca.user_key, "ppksign user", cls.keyid)
            token.cert_save(cls.ca.der(cls.ca.user_cert), "ppksign user", cls.keyid)

    @classmethod
    def tearDownClass(cls):
        if cls.saved_conf is None:
            os.environ.pop("SOFTHSM2_CONF", None)
        else:
            os.environ["SOFTHSM2_CONF"] = cls.saved_conf
        shutil.rmtree(cls.tmp)

    def token(self):
        from ppksign import pkcs11

        token = pkcs11.HSM(dllpath)
        self.addCleanup(token.logout)
        return token

    def test_slots(self):
        labels = [info["label"] for info in self.token().slots()]
        self.assertIn(self.label, labels)

    def test_login(self):
        from ppksign.errors import TokenNotPresent

        token = self.token()
        with self.assertRaises(AuthenticationFailed):
            token.login(self.label, "0000")
        self.assertIsNone(token.session)
        with self.assertRaises(TokenNotPresent):
            token.login("no such token", self.pin)
        token.login(self.label, self.pin)
        self.assertIsNotNone(token.session)

    def test_certificate(self):
        token = self.token()
        token.login(self.label, self.pin)
        keyid, cert = token.certificate()
        self.assertEqual(keyid, self.keyid)
        self.assertEqual(cert, self.ca.der(self.ca.user_cert))
        self.assertEqual(token.certificate(self.keyid), (self.keyid, cert))
        self.assertEqual(token.cert_load(self.keyid), cert)
        with self.assertRaises(NoSuchKey):
            token.certificate(b"\x01")

    def test_sign(self):
        token = self.token()
        token.login(self.label, self.pin)
        md = hashlib.sha256(b"message").digest()
        sig = token.sign(self.keyid, md, "sha256")
        self.assertEqual(len(sig), 256)
        self.ca.user_key.public_key().verify(
            sig, md, padding.PKCS1v15(), utils.Prehashed(hashes.SHA256())
        )
        with self.assertRaises(NoSuchKey):
            token.sign(b"\x01", md, "sha256")

    def test_cert_export(self):
        token = self.token()
        token.login(self.label, self.pin)
        fname = os.path.join(self.tmp, "cert-hsm-user1")
        der_bytes = token.cert_export(fname, self.keyid)
        self.assertEqual(der_bytes, self.ca.der(self.ca.user_cert))
        with open(fname + ".pem", "rb") as fp:
            self.assertEqual(fp.read(), self.ca.pem(self.ca.user_cert))

    def test_logout_on_exit(self):
        token = self.token()
        with token:
            token.login(self.label, self.pin)
            self.assertIsNotNone(token.session)
        self.assertIsNone(token.session)
        with self.assertRaises(TokenError):
            token.certificate()

    def test_sign_pdf(self):
        datau = pdfgen.make_pdf()
        with self.token() as token:
            token.login(self.label, self.pin)
            datas = pdf.cms.sign(
                datau, {"reason": "hsm"}, token,
                clock=lambda: datetime.datetime(2024, 1, 2, tzinfo=datetime.timezone.utc),
            )
        results = pdf.verify(datas, [self.ca.pem(self.ca.root_cert)])
        self.assertEqual(len(results), 1)
        for (hashok, signatureok, certok) in results:
            assert signatureok and hashok

    def run_main(self, *argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            rc = main(list(argv))
        return rc, out.getvalue()

    def test_cli(self):
        rc, out = self.run_main("tokens", "--lib", dllpath)
        self.assertEqual(rc, 0)
        self.assertIn(self.label, out)

        login = ("--lib", dllpath, "--label", self.label, "--pin", self.pin)
        fname = os.path.join(self.tmp, "cli-cert")
        rc, _ = self.run_main("export-cert", *login, "--keyid", self.keyid.hex(), fname)
        self.assertEqual(rc, 0)
        with open(fname + ".der", "rb") as fp:
            self.assertEqual(fp.read(), self.ca.der(self.ca.user_cert))

        infile = os.path.join(self.tmp, "in.pdf")
        outfile = os.path.join(self.tmp, "out.pdf")
        with open(infile, "wb") as fp:
            fp.write(pdfgen.make_pdf())
        rc, _ = self.run_main("sign", *login, "--reason", "hsm", infile, outfile)
        self.assertEqual(rc, 0)
        rc, out = self.run_main("verify", outfile)
        self.assertEqual(rc, 0)
        self.assertIn("signature ok? True", out)

        rc, _ = self.run_main("sign", "--lib", dllpath, "--label", self.label,
                              "--pin", "0000", infile, outfile + ".bad")
        self.assertEqual(rc, 1)
        self.assertFalse(os.path.exists(outfile + ".bad"))


if __name__ == '__main__':
    unittest.main()
