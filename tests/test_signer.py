#!/usr/bin/env python3
# *-* coding: utf-8 *-*
import unittest
import datetime
import hashlib

from pyasn1.codec.der import encoder, decoder
from pyasn1_modules import rfc5652

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from ppksign import der, hsm, signer, verifier
from ppksign.errors import EncodingError, SignatureSizeMismatch

import test_cert

SIGNING_TIME = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)


def clock():
    return SIGNING_TIME


class SignerTests(unittest.TestCase):
    def setUp(self):
        self.ca = test_cert.CA()
        self.cert = self.ca.der(self.ca.user_cert)
        self.token = hsm.KeyHSM(self.ca.user_key, self.ca.user_cert)
        self.datau = b"%PDF-1.5 pretend these are the byte ranges"
        self.md = hashlib.sha256(self.datau).digest()

    def sign_fn(self, hashalgo="sha256"):
        keyid, _ = self.token.certificate()
        return lambda digest: self.token.sign(keyid, digest, hashalgo)

    def decode(self, datas):
        ci, rest = decoder.decode(datas, asn1Spec=rfc5652.ContentInfo())
        self.assertEqual(rest, b"")
        self.assertEqual(ci["contentType"], rfc5652.id_signedData)
        sd, rest = decoder.decode(ci["content"], asn1Spec=rfc5652.SignedData())
        self.assertEqual(rest, b"")
        return ci, sd

    def test_structure(self):
        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=clock)
        der.check_der(datas)
        ci, sd = self.decode(datas)
        self.assertEqual(sd["version"], 1)
        self.assertEqual(len(sd["digestAlgorithms"]), 1)
        self.assertEqual(sd["digestAlgorithms"][0]["algorithm"], signer.ALGORITHMS["sha256"][0])
        self.assertEqual(sd["encapContentInfo"]["eContentType"], rfc5652.id_data)
        self.assertFalse(sd["encapContentInfo"]["eContent"].isValue)
        self.assertEqual(len(sd["certificates"]), 1)
        self.assertEqual(encoder.encode(sd["certificates"][0]["certificate"]), self.cert)

        self.assertEqual(len(sd["signerInfos"]), 1)
        si = sd["signerInfos"][0]
        self.assertEqual(si["version"], 1)
        sid = si["sid"]["issuerAndSerialNumber"]
        self.assertEqual(int(sid["serialNumber"]), self.ca.user_cert.serial_number)
        self.assertEqual(si["signatureAlgorithm"]["algorithm"], signer.ALGORITHMS["sha256"][1])
        self.assertEqual(len(si["signature"]), 256)

    def test_reencoding_is_stable(self):
        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=clock)
        ci, sd = self.decode(datas)
        self.assertEqual(encoder.encode(ci), datas)

    def test_signed_attributes_order(self):
        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=clock)
        _, sd = self.decode(datas)
        types = [attr["attrType"] for attr in sd["signerInfos"][0]["signedAttrs"]]
        # DER order by encoding: the 30 18, 30 1C and 30 2F headers
        self.assertEqual(
            types,
            [rfc5652.id_contentType, rfc5652.id_signingTime, rfc5652.id_messageDigest],
        )
        attrs = signer.signed_attributes(self.md, SIGNING_TIME)
        self.assertTrue(der.is_canonical_set(attrs))
        self.assertIn(b"\xa0" + attrs[1:], datas)

    def test_verify_reordered_attributes(self):
        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=clock)
        attrs = signer.signed_attributes(self.md, SIGNING_TIME)
        _, _, cstart, cend = der.read_tlv(attrs)
        members = list(der.children(attrs, cstart, cend))
        reordered = b"\xa0" + attrs[1:cstart] + b"".join(reversed(members))
        datas = datas.replace(b"\xa0" + attrs[1:], reordered)
        with self.assertLogs("ppksign.verifier", "WARNING") as logs:
            hashok, signatureok, _ = verifier.verify(datas, self.datau)
        self.assertTrue(hashok)
        self.assertFalse(signatureok)
        self.assertTrue(any("not in DER order" in line for line in logs.output))

    def test_signature_covers_attributes(self):
        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=clock)
        _, sd = self.decode(datas)
        signature = bytes(sd["signerInfos"][0]["signature"])
        attrs = signer.signed_attributes(self.md, SIGNING_TIME)
        self.ca.user_key.public_key().verify(
            signature, attrs, padding.PKCS1v15(), hashes.SHA256()
        )
        self.assertEqual(
            signer.attributes_digest(self.md, SIGNING_TIME),
            hashlib.sha256(attrs).digest(),
        )

    def test_sign_fn_receives_attributes_digest(self):
        seen = []

        def sign_fn(digest):
            seen.append(digest)
            return self.sign_fn()(digest)

        signer.build(self.md, self.cert, sign_fn, clock=clock)
        self.assertEqual(seen, [signer.attributes_digest(self.md, SIGNING_TIME)])
        self.assertNotEqual(seen[0], self.md)

    def test_verify(self):
        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=clock)
        hashok, signatureok, certok = verifier.verify(datas, self.datau)
        self.assertTrue(hashok)
        self.assertTrue(signatureok)
        hashok, signatureok, certok = verifier.verify(datas, self.datau + b"x")
        self.assertFalse(hashok)
        self.assertTrue(signatureok)

    def test_signing_time(self):
        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=clock)
        self.assertIn(b"\x17\x0d240102030405Z", datas)

        def late():
            return datetime.datetime(2051, 6, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)

        datas = signer.build(self.md, self.cert, self.sign_fn(), clock=late)
        self.assertIn(b"\x18\x0f20510601120000Z", datas)

    def test_naive_clock_is_utc(self):
        naive = SIGNING_TIME.replace(tzinfo=None)
        self.assertEqual(
            signer.signed_attributes(self.md, naive),
            signer.signed_attributes(self.md, SIGNING_TIME),
        )

    def test_chain(self):
        datas = signer.build(
            self.md, self.cert, self.sign_fn(),
            othercerts=[self.ca.der(self.ca.sub_cert)], clock=clock,
        )
        _, sd = self.decode(datas)
        self.assertEqual(len(sd["certificates"]), 2)
        # SET OF: DER orders the members by encoding, not by insertion
        self.assertEqual(
            {encoder.encode(c["certificate"]) for c in sd["certificates"]},
            {self.cert, self.ca.der(self.ca.sub_cert)},
        )
        hashok, signatureok, _ = verifier.verify(datas, self.datau)
        self.assertTrue(hashok and signatureok)

    def test_other_digests(self):
        for hashalgo in ("sha384", "sha512"):
            md = hashlib.new(hashalgo, self.datau).digest()
            datas = signer.build(
                md, self.cert, self.sign_fn(hashalgo), hashalgo=hashalgo, clock=clock
            )
            hashok, signatureok, _ = verifier.verify(datas, self.datau)
            self.assertTrue(hashok and signatureok, hashalgo)

    def test_signature_size_mismatch(self):
        with self.assertRaises(SignatureSizeMismatch):
            signer.build(self.md, self.cert, lambda digest: b"\x01" * 255, clock=clock)
        with self.assertRaises(EncodingError):
            signer.build(self.md, self.cert, lambda digest: b"\x01" * 512, clock=clock)

    def test_bad_digest(self):
        with self.assertRaises(EncodingError):
            signer.build(self.md[:20], self.cert, self.sign_fn(), clock=clock)
        with self.assertRaises(EncodingError):
            signer.build(self.md, self.cert, self.sign_fn(), hashalgo="md5", clock=clock)

    def test_malformed_certificate(self):
        self.assertEqual(self.cert[1], 0x82)
        for bad in (
            b"\x30\x03\x02\x01\x01",
            self.cert + b"\x00",
            self.cert[:-1],
            # BER: same certificate with a non minimal outer length
            b"\x30\x83\x00" + self.cert[2:],
        ):
            with self.assertRaises(EncodingError):
                signer.build(self.md, bad, self.sign_fn(), clock=clock)

    def test_ec_certificate_rejected(self):
        key = self.ca.key_create_ec()
        cert = self.ca.der(self.ca.user_create(key, "EC User"))
        with self.assertRaises(EncodingError):
            signer.build(self.md, cert, lambda digest: b"\x01" * 64, clock=clock)

    def test_certificate_info(self):
        info = signer.certificate_info(self.cert)
        self.assertIn("CN=Test User 1", info["subject"])
        self.assertIn("CN=ppksign Test Intermediate CA", info["issuer"])
        self.assertEqual(info["serial_number"], self.ca.user_cert.serial_number)
        self.assertLess(info["not_before"], info["not_after"])


if __name__ == '__main__':
    unittest.main()
