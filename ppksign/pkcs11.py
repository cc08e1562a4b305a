# *-* coding: utf-8 *-*
"""
PKCS#11 token backend.

Needs the optional PyKCS11 binding (``pip install ppksign[pkcs11]``) and
the vendor module of the token, e.g. ``/usr/lib/libeToken.so`` or
``/usr/lib/softhsm/libsofthsm2.so``.
"""
import logging

import PyKCS11

from pyasn1.type import univ
from pyasn1.codec.der import encoder
from pyasn1_modules import rfc5280, rfc8017

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ppksign import der
from ppksign.hsm import BaseHSM, HASHES
from ppksign.signer import ALGORITHMS
from ppksign.errors import (
    TokenError,
    TokenNotPresent,
    AuthenticationFailed,
    TokenLocked,
    NoSuchKey,
)

logger = logging.getLogger(__name__)

_ERRORS = {
    PyKCS11.CKR_PIN_INCORRECT: AuthenticationFailed,
    PyKCS11.CKR_PIN_INVALID: AuthenticationFailed,
    PyKCS11.CKR_PIN_LEN_RANGE: AuthenticationFailed,
    PyKCS11.CKR_PIN_EXPIRED: AuthenticationFailed,
    PyKCS11.CKR_PIN_LOCKED: TokenLocked,
    PyKCS11.CKR_TOKEN_NOT_PRESENT: TokenNotPresent,
    PyKCS11.CKR_TOKEN_NOT_RECOGNIZED: TokenNotPresent,
    PyKCS11.CKR_DEVICE_REMOVED: TokenNotPresent,
    PyKCS11.CKR_SLOT_ID_INVALID: TokenNotPresent,
    PyKCS11.CKR_KEY_HANDLE_INVALID: NoSuchKey,
    PyKCS11.CKR_OBJECT_HANDLE_INVALID: NoSuchKey,
    PyKCS11.CKR_KEY_TYPE_INCONSISTENT: NoSuchKey,
}


def token_error(ex, action):
    """Translate a PyKCS11Error into the ppksign token error hierarchy."""
    cls = _ERRORS.get(getattr(ex, "value", None), TokenError)
    return cls("%s failed: %s" % (action, ex))


def _label(value):
    return value.split("\0")[0].strip()


def digest_info(digest, hashalgo):
    """DER DigestInfo, the input of a raw CKM_RSA_PKCS signature."""
    algo = rfc5280.AlgorithmIdentifier()
    algo["algorithm"] = ALGORITHMS[hashalgo][0]
    algo["parameters"] = der.null()
    info = rfc8017.DigestInfo()
    info["digestAlgorithm"] = algo
    info["digest"] = univ.OctetString(digest)
    return encoder.encode(info)


class HSM(BaseHSM):
    def __init__(self, dllpath):
        self.pkcs11 = PyKCS11.PyKCS11Lib()
        try:
            self.pkcs11.load(dllpath)
        except PyKCS11.PyKCS11Error as ex:
            raise TokenError("cannot load PKCS#11 module %s: %s" % (dllpath, ex))
        self.session = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.logout()

    def slots(self):
        """
        List the slots holding a token.

        :return: list of dicts with slot, label, manufacturer, model, serial
        """
        result = []
        try:
            for slot in self.pkcs11.getSlotList(tokenPresent=True):
                info = self.pkcs11.getTokenInfo(slot)
                result.append({
                    "slot": slot,
                    "label": _label(info.label),
                    "manufacturer": _label(info.manufacturerID),
                    "model": _label(info.model),
                    "serial": _label(info.serialNumber),
                })
        except PyKCS11.PyKCS11Error as ex:
            raise token_error(ex, "slot listing")
        return result

    def getSlot(self, label):
        for info in self.slots():
            if info["label"] == label:
                return info["slot"]
        raise TokenNotPresent("no token labelled %r" % label)

    def create(self, label, pin, sopin):
        """
        Initialize the last present token as `label` with a user PIN,
        unless a token with that label exists already.
        """
        if label in [info["label"] for info in self.slots()]:
            return
        try:
            slots = self.pkcs11.getSlotList(tokenPresent=True)
            if not slots:
                raise TokenNotPresent("no token to initialize")
            slot = slots[-1]
            self.pkcs11.initToken(slot, sopin, label)
            session = self.pkcs11.openSession(
                slot, PyKCS11.CKF_SERIAL_SESSION | PyKCS11.CKF_RW_SESSION
            )
            session.login(sopin, user_type=PyKCS11.CKU_SO)
            session.initPin(pin)
            session.logout()
            session.closeSession()
        except PyKCS11.PyKCS11Error as ex:
            raise token_error(ex, "token initialization")
        logger.info("initialized token %r in slot %s", label, slot)

    def login(self, label, pin):
        slot = self.getSlot(label)
        logger.debug("opening session on slot %s (%s)", slot, label)
        try:
            self.session = self.pkcs11.openSession(
                slot, PyKCS11.CKF_SERIAL_SESSION | PyKCS11.CKF_RW_SESSION
            )
        except PyKCS11.PyKCS11Error as ex:
            raise token_error(ex, "open session")
        try:
            self.session.login(pin)
        except PyKCS11.PyKCS11Error as ex:
            self.session.closeSession()
            self.session = None
            raise token_error(ex, "login")

    def logout(self):
        if self.session is not None:
            try:
                self.session.logout()
                self.session.closeSession()
            except PyKCS11.PyKCS11Error as ex:
                raise token_error(ex, "logout")
            finally:
                self.session = None

    def _session(self):
        if self.session is None:
            raise TokenError("not logged in")
        return self.session

    def _find(self, template):
        try:
            return self._session().findObjects(template)
        except PyKCS11.PyKCS11Error as ex:
            raise token_error(ex, "object search")

    def _private_key(self, keyid):
        keys = self._find([
            (PyKCS11.CKA_CLASS, PyKCS11.CKO_PRIVATE_KEY),
            (PyKCS11.CKA_ID, keyid),
        ])
        if not keys:
            raise NoSuchKey("no private key with id %s" % bytes(keyid).hex())
        return keys[0]

    def _create(self, template, action):
        try:
            return self._session().createObject(template)
        except PyKCS11.PyKCS11Error as ex:
            raise token_error(ex, action)

    def key_save(self, key, label, keyid):
        """Import an RSA private key (cryptography object) as a signing key."""
        numbers = key.private_numbers()

        def octets(n):
            return n.to_bytes((n.bit_length() + 7) // 8, "big")

        self._create([
            (PyKCS11.CKA_CLASS, PyKCS11.CKO_PRIVATE_KEY),
            (PyKCS11.CKA_KEY_TYPE, PyKCS11.CKK_RSA),
            (PyKCS11.CKA_TOKEN, PyKCS11.CK_TRUE),
            (PyKCS11.CKA_PRIVATE, PyKCS11.CK_TRUE),
            (PyKCS11.CKA_SENSITIVE, PyKCS11.CK_TRUE),
            (PyKCS11.CKA_SIGN, PyKCS11.CK_TRUE),
            (PyKCS11.CKA_LABEL, label),
            (PyKCS11.CKA_ID, keyid),
            (PyKCS11.CKA_MODULUS, octets(numbers.public_numbers.n)),
            (PyKCS11.CKA_PUBLIC_EXPONENT, octets(numbers.public_numbers.e)),
            (PyKCS11.CKA_PRIVATE_EXPONENT, octets(numbers.d)),
            (PyKCS11.CKA_PRIME_1, octets(numbers.p)),
            (PyKCS11.CKA_PRIME_2, octets(numbers.q)),
            (PyKCS11.CKA_EXPONENT_1, octets(numbers.dmp1)),
            (PyKCS11.CKA_EXPONENT_2, octets(numbers.dmq1)),
            (PyKCS11.CKA_COEFFICIENT, octets(numbers.iqmp)),
        ], "key import")

    def cert_save(self, cert_der, label, keyid):
        """Store a DER certificate next to the key with the same CKA_ID."""
        subject = x509.load_der_x509_certificate(cert_der).subject.public_bytes()
        self._create([
            (PyKCS11.CKA_CLASS, PyKCS11.CKO_CERTIFICATE),
            (PyKCS11.CKA_CERTIFICATE_TYPE, PyKCS11.CKC_X_509),
            (PyKCS11.CKA_TOKEN, PyKCS11.CK_TRUE),
            (PyKCS11.CKA_LABEL, label),
            # CKA_ID and CKA_SUBJECT must be set, see the X.509 certificate object attributes
            (PyKCS11.CKA_ID, keyid),
            (PyKCS11.CKA_SUBJECT, subject),
            (PyKCS11.CKA_VALUE, cert_der),
        ], "certificate import")

    def cert_load(self, keyid):
        rec = self._find([
            (PyKCS11.CKA_CLASS, PyKCS11.CKO_CERTIFICATE),
            (PyKCS11.CKA_ID, keyid),
        ])
        if len(rec) == 0:
            raise NoSuchKey("no certificate with id %s" % bytes(keyid).hex())
        return bytes(rec[0].to_dict()["CKA_VALUE"])

    def cert_export(self, fname, keyid=None):
        """Write <fname>.der and <fname>.pem; returns the DER bytes."""
        if keyid is None:
            keyid, der_bytes = self.certificate()
        else:
            der_bytes = self.cert_load(keyid)
        pem_bytes = x509.load_der_x509_certificate(der_bytes).public_bytes(
            serialization.Encoding.PEM
        )
        with open(fname + ".der", "wb") as fp:
            fp.write(der_bytes)
        with open(fname + ".pem", "wb") as fp:
            fp.write(pem_bytes)
        return der_bytes

    def certificate(self, keyid=None):
        """
        Locate the signing certificate: the first one whose CKA_ID also
        names a private key, or the one with the given keyid.

        :return: keyid, certificate-in-der
        """
        if keyid is not None:
            self._private_key(keyid)
            return keyid, self.cert_load(keyid)
        session = self._session()
        attributes = [PyKCS11.CKA_VALUE, PyKCS11.CKA_ID]
        for obj in self._find([(PyKCS11.CKA_CLASS, PyKCS11.CKO_CERTIFICATE)]):
            try:
                value, objid = session.getAttributeValue(obj, attributes)
            except PyKCS11.PyKCS11Error:
                continue
            objid = bytes(objid)
            if self._find([
                (PyKCS11.CKA_CLASS, PyKCS11.CKO_PRIVATE_KEY),
                (PyKCS11.CKA_ID, objid),
            ]):
                logger.debug("signing certificate id %s", objid.hex())
                return objid, bytes(value)
        raise NoSuchKey("no certificate with a matching private key")

    def sign(self, keyid, digest, hashalgo):
        if hashalgo not in HASHES:
            raise TokenError("unsupported digest algorithm %r" % hashalgo)
        key = self._private_key(keyid)
        data = digest_info(digest, hashalgo)
        try:
            sig = self._session().sign(
                key, data, PyKCS11.Mechanism(PyKCS11.CKM_RSA_PKCS, None)
            )
        except PyKCS11.PyKCS11Error as ex:
            raise token_error(ex, "signing")
        logger.debug("token returned a %d byte signature", len(sig))
        return bytes(sig)
