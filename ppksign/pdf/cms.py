# *-* coding: utf-8 *-*
import datetime
import logging

from cryptography import x509
from cryptography.x509.oid import NameOID

from ppksign import signer
from ppksign.pdf import ppklite

logger = logging.getLogger(__name__)


def _common_name(certificate_der):
    cert = x509.load_der_x509_certificate(certificate_der)
    names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return names[0].value if names else None


class SignedData(object):
    def sign(self, datau, udct, hsm, othercerts, hashalgo, clock):
        datau = bytes(datau)
        udct = dict(udct or {})

        keyid, cert = hsm.certificate()
        chain = list(othercerts)
        for c in hsm.chain():
            if c not in chain:
                chain.append(c)

        signed_time = clock() if clock is not None else datetime.datetime.now(
            tz=datetime.timezone.utc
        )
        udct.setdefault("signingdate", signed_time)
        if "name" not in udct:
            udct["name"] = _common_name(cert)

        placeholder = ppklite.reserve(datau, udct.get("aligned", 8192), udct)
        logger.debug(
            "reserved %d bytes for signature object %d",
            placeholder.size, placeholder.sigid,
        )
        md = ppklite.digest(placeholder.data, placeholder.byterange, hashalgo)

        def sign_fn(attrs_digest):
            return hsm.sign(keyid, attrs_digest, hashalgo)

        contents = signer.build(
            md, cert, sign_fn, chain, hashalgo, clock=lambda: signed_time
        )
        gap_start, gap_end = placeholder.gap
        datas = ppklite.embed(placeholder.data, gap_start, gap_end, contents)
        logger.debug("signed document is %d bytes", len(datas))
        return datas


def sign(datau, udct, hsm, othercerts=(), hashalgo="sha256", clock=None):
    """
    Sign a PDF with an invisible Adobe.PPKLite signature.

    parameters:
        datau: pdf bytes being signed
        udct: dictionary with signing parameters
            aligned: int bytes reserved for the signature, default 8192
            sigflags: int /SigFlags of the AcroForm, default 3
            sigflagsft: int /F of the signature widget, default 132
            sigfield: string name of the signature field, default Signature1
            auto_sigfield: bool pick Signature1_1, _2, ... when the name is taken
            sigpage: int page the widget points at, default 0
            name: string /Name, default the signer common name
            contact: string /ContactInfo
            location: string /Location
            reason: string /Reason
            signingdate: datetime or PDF date string for /M, default now
        hsm: BaseHSM providing certificate() and sign()
        othercerts: list of DER certificates embedded next to the signer
        hashalgo: sha256, sha384 or sha512
        clock: callable returning the signing time
    returns: the complete signed pdf
    """
    cls = SignedData()
    return cls.sign(datau, udct, hsm, othercerts, hashalgo, clock)
